from __future__ import annotations

from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Mapping
import logging

import click
from flask import Flask, jsonify, request

from . import auth, two_factor
from .admission import (
    JOIN_ALREADY_CONFIRMED,
    JOIN_CONFIRMED,
    JOIN_ORGANIZER,
    AdmissionError,
    ReservationAdmissionController,
    ReservationProposal,
    ValidationError,
)
from .booking import Role, validate_limits
from .mailer import Mailer, SmtpMailer, SmtpSettings
from .notifications import PERMISSION_GRANTED, EmailDispatcher, NotificationWriter
from .yaml_store import (
    REQUEST_PENDING,
    NotificationRecord,
    ReservationRecord,
    ReservationRequestRecord,
    ReservationStorageError,
    ReservationYamlRepository,
    RoomRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: dict[str, Any] = {
    "SECRET_KEY": "change-me-in-production",
    "SESSION_COOKIE_NAME": "queueforroom_session",
    "SESSION_COOKIE_HTTPONLY": True,
    "SESSION_COOKIE_SAMESITE": "Lax",
    "PERMANENT_SESSION_LIFETIME": timedelta(days=30),
    "BASE_URL": "http://127.0.0.1:5000",
    "SMTP_HOST": "localhost",
    "SMTP_PORT": 587,
    "SMTP_USE_TLS": True,
    "MAIL_FROM": "noreply@queueforroom.local",
    "MAIL_ENABLED": False,
}

JOIN_MESSAGES = {
    JOIN_CONFIRMED: "Attendance confirmed",
    JOIN_ALREADY_CONFIRMED: "Already confirmed",
    JOIN_ORGANIZER: "You are the organizer",
}


@dataclass
class AppServices:
    repository: ReservationYamlRepository
    controller: ReservationAdmissionController
    notifications: NotificationWriter
    mailer: Mailer
    dispatcher: EmailDispatcher
    clock: Callable[[], datetime]


def create_app(
    data_dir: str | Path = "data",
    now_provider: Callable[[], datetime] | None = None,
    config: Mapping[str, Any] | None = None,
    mailer: Mailer | None = None,
    email_executor: Executor | None = None,
) -> Flask:
    app = Flask(__name__)
    app.config.from_mapping(DEFAULT_CONFIG)
    app.config.from_prefixed_env("ROOM_RESERVATION")
    if config:
        app.config.from_mapping(config)

    repository = ReservationYamlRepository(data_dir)
    clock: Callable[[], datetime] = now_provider or datetime.now
    mail = mailer or SmtpMailer(SmtpSettings.from_config(app.config))
    dispatcher = EmailDispatcher(executor=email_executor)
    base_url = str(app.config["BASE_URL"]).rstrip("/")
    controller = ReservationAdmissionController(
        repository,
        mail,
        dispatcher,
        share_url_builder=lambda token: f"{base_url}/reservations/join/{token}",
    )
    services = AppServices(
        repository=repository,
        controller=controller,
        notifications=NotificationWriter(repository),
        mailer=mail,
        dispatcher=dispatcher,
        clock=clock,
    )
    app.extensions["room_reservation"] = services

    @app.errorhandler(AdmissionError)
    def handle_admission_error(error: AdmissionError) -> Any:
        return _error(error.message, error.status_code)

    @app.errorhandler(ReservationStorageError)
    def handle_storage_error(error: ReservationStorageError) -> Any:
        logger.error("Store failure while handling %s %s", request.method, request.path, exc_info=error)
        return _error("An unexpected error occurred", 500)

    # Accounts

    @app.post("/auth/register")
    def register() -> Any:
        payload = _payload()
        try:
            user = auth.register(
                repository,
                email=str(payload.get("email", "")),
                password=str(payload.get("password", "")),
                first_name=str(payload.get("firstName", "")),
                last_name=str(payload.get("lastName", "")),
                now=clock(),
            )
        except ValueError as error:
            return _error(str(error), 400)
        auth.start_session(user)
        return jsonify({"success": True, "user": _serialize_user(user)}), 201

    @app.post("/auth/login")
    def login() -> Any:
        payload = _payload()
        email = str(payload.get("email", ""))
        try:
            result = auth.login(repository, email, str(payload.get("password", "")), now=clock())
        except auth.AccountLockedError as error:
            return _error(str(error), 423)
        except ValueError as error:
            return _error(str(error), 400)

        if result is None:
            return _error("Invalid email or password", 401)
        if result.requires_two_factor:
            return jsonify(
                {
                    "success": True,
                    "requires2FA": True,
                    "userId": result.user.user_id,
                    "method": result.user.two_factor_method,
                }
            )
        auth.start_session(result.user)
        return jsonify({"success": True, "user": _serialize_user(result.user)})

    @app.post("/auth/logout")
    def logout() -> Any:
        auth.end_session()
        return jsonify({"success": True})

    @app.get("/api/2fa")
    @auth.login_required
    def two_factor_setup() -> Any:
        user = auth.current_user()
        return jsonify(two_factor.generate_setup(user.email).to_dict())

    @app.post("/api/2fa")
    @auth.login_required
    def two_factor_update() -> Any:
        user = auth.current_user()
        payload = _payload()
        intent = str(payload.get("intent", ""))

        if intent == "enable-authenticator":
            secret = str(payload.get("secret", "")).strip()
            code = str(payload.get("code", "")).strip()
            if not secret or not code:
                return _error("Missing secret or verification code", 400)
            try:
                two_factor.enable_authenticator(repository, user.user_id, secret, code)
            except ValueError as error:
                return _error(str(error), 400)
            return jsonify({"success": True, "message": "2FA enabled successfully"})
        if intent == "enable-email":
            two_factor.enable_email(repository, user.user_id)
            return jsonify({"success": True, "message": "Email 2FA enabled successfully"})
        if intent == "disable":
            two_factor.disable(repository, user.user_id)
            return jsonify({"success": True, "message": "2FA disabled successfully"})
        return _error("Invalid intent", 400)

    @app.post("/api/2fa-verify")
    def two_factor_verify() -> Any:
        payload = _payload()
        intent = str(payload.get("intent", ""))
        user_id = _int_or_none(payload.get("userId"))
        if user_id is None:
            return _error("Missing user ID", 400)

        user = repository.get_user(user_id)
        if user is None or not user.two_factor_enabled:
            return _error("User not found", 404)

        if intent == "send-code":
            code = two_factor.issue_email_code(repository, user.user_id, now=clock())
            dispatcher.dispatch(f"2fa code for user {user.user_id}", mail.send_two_factor_code, user.email, code)
            return jsonify({"success": True, "message": "Code sent"})

        if intent == "verify":
            code = str(payload.get("code", "")).strip()
            method = str(payload.get("method") or user.two_factor_method or "")
            if not code:
                return _error("Missing verification code", 400)
            try:
                valid = two_factor.verify_code(repository, user, code, method, now=clock())
            except ValueError as error:
                return _error(str(error), 400)
            if not valid:
                return _error("Invalid verification code", 400)
            auth.start_session(user)
            return jsonify({"success": True, "redirectTo": "/"})

        return _error("Invalid intent", 400)

    # Rooms

    @app.get("/api/rooms")
    @auth.login_required
    def list_rooms() -> Any:
        return jsonify({"rooms": [_serialize_room(room) for room in repository.list_rooms()]})

    # Reservations

    @app.post("/api/reservations")
    @auth.login_required
    def create_reservation() -> Any:
        user = auth.current_user()
        proposal = _proposal_from_payload(_payload())
        result = controller.admit(user, proposal, repository.get_reservation_limits(), now=clock())
        return jsonify(
            {
                "success": True,
                "reservation": _serialize_reservation(result.reservation, result.room),
                "overridden": [record.reservation_id for record in result.overridden],
            }
        )

    @app.get("/api/reservations")
    @auth.login_required
    def list_my_reservations() -> Any:
        user = auth.current_user()
        upcoming = str(request.args.get("upcoming", "")).lower() == "true"
        records = repository.list_user_reservations(user.user_id, upcoming_after=clock() if upcoming else None)
        rooms = {room.room_id: room for room in repository.list_rooms(available_only=False)}
        return jsonify(
            {
                "success": True,
                "reservations": [_serialize_reservation(record, rooms.get(record.room_id)) for record in records],
            }
        )

    @app.post("/api/reservations/<int:reservation_id>/cancel")
    @auth.login_required
    def cancel_reservation(reservation_id: int) -> Any:
        cancelled = controller.cancel(auth.current_user(), reservation_id, now=clock())
        return jsonify({"success": True, "reservation": _serialize_reservation(cancelled)})

    @app.post("/api/reservations/<int:reservation_id>/update")
    @auth.login_required
    def update_reservation(reservation_id: int) -> Any:
        payload = _payload()
        start, end = _interval_from_payload(payload)
        purpose = payload.get("purpose")
        updated = controller.update(
            auth.current_user(),
            reservation_id,
            start,
            end,
            repository.get_reservation_limits(),
            purpose=str(purpose).strip() if purpose is not None else None,
            attendees=_attendees_from_payload(payload),
            now=clock(),
        )
        room = repository.get_room(updated.room_id)
        return jsonify({"success": True, "reservation": _serialize_reservation(updated, room)})

    @app.post("/api/reservations/<int:reservation_id>/invite")
    @auth.login_required
    def invite_to_reservation(reservation_id: int) -> Any:
        user_ids = _user_ids_from_payload(_payload())
        if not user_ids:
            return _error("User IDs are required", 400)
        invitees = controller.invite(auth.current_user(), reservation_id, user_ids, now=clock())
        return jsonify(
            {
                "success": True,
                "message": f"Invited {len(invitees)} user(s)",
                "invited": [invitee.user_id for invitee in invitees],
            }
        )

    @app.get("/api/reservations/join/<token>")
    def reservation_by_token(token: str) -> Any:
        record = repository.get_reservation_by_share_token(token)
        if record is None:
            return _error("Reservation not found", 404)
        room = repository.get_room(record.room_id)
        owner = repository.get_user(record.user_id)
        payload = _serialize_reservation(record, room, include_token=False)
        payload["ownerName"] = owner.display_name if owner else None
        payload["attendeeCount"] = len(repository.list_attendees(record.reservation_id))
        return jsonify({"success": True, "reservation": payload})

    @app.post("/api/reservations/join/<token>")
    @auth.login_required
    def join_reservation(token: str) -> Any:
        outcome = controller.join(auth.current_user(), token, now=clock())
        return jsonify({"success": True, "status": outcome, "message": JOIN_MESSAGES[outcome]})


    # Reservation requests

    @app.get("/api/reservation-requests")
    @auth.login_required
    def list_my_requests() -> Any:
        user = auth.current_user()
        records = repository.list_requests(user_id=user.user_id)
        return jsonify({"requests": [_serialize_request(record) for record in records]})

    @app.post("/api/reservation-requests")
    @auth.login_required
    def reservation_request_action() -> Any:
        user = auth.current_user()
        payload = _payload()
        intent = str(payload.get("intent", ""))

        if intent == "create":
            proposal = _proposal_from_payload(payload)
            if not (proposal.purpose or "").strip():
                return _error("Missing required fields", 400)
            record = controller.submit_request(user, proposal, repository.get_reservation_limits(), now=clock())
            return jsonify(
                {
                    "success": True,
                    "message": "Permission request submitted successfully",
                    "request": _serialize_request(record),
                }
            )

        if intent == "cancel":
            request_id = _int_or_none(payload.get("requestId"))
            if request_id is None:
                return _error("Request ID required", 400)
            try:
                repository.cancel_request(request_id, user.user_id, now=clock())
            except ValueError as error:
                return _error(str(error), 404)
            return jsonify({"success": True, "message": "Request cancelled successfully"})

        return _error("Invalid intent", 400)

    # Notifications

    @app.get("/api/notifications")
    @auth.login_required
    def list_notifications() -> Any:
        user = auth.current_user()
        unread_only = str(request.args.get("unreadOnly", "")).lower() == "true"
        limit = _int_or_none(request.args.get("limit")) or 50
        records = repository.list_notifications(user.user_id, unread_only=unread_only, limit=limit)
        return jsonify(
            {
                "notifications": [_serialize_notification(record) for record in records],
                "unreadCount": repository.count_unread_notifications(user.user_id),
            }
        )

    @app.post("/api/notifications")
    @auth.login_required
    def notification_action() -> Any:
        user = auth.current_user()
        payload = _payload()
        intent = str(payload.get("intent", ""))
        raw_id = payload.get("notificationId")

        if intent == "markAsRead":
            notification_id = None if raw_id in (None, "", "all") else _int_or_none(raw_id)
            repository.mark_notifications_read(user.user_id, notification_id)
            return jsonify({"success": True})
        if intent == "delete":
            notification_id = _int_or_none(raw_id)
            if notification_id is None:
                return _error("Notification ID required", 400)
            repository.delete_notifications(user.user_id, notification_id)
            return jsonify({"success": True})
        if intent == "deleteAll":
            repository.delete_notifications(user.user_id)
            return jsonify({"success": True})
        return _error("Invalid intent", 400)

    # Administration

    @app.get("/api/admin/permission-requests")
    @auth.admin_required
    def list_pending_requests() -> Any:
        records = repository.list_requests(status=REQUEST_PENDING)
        return jsonify({"requests": [_serialize_request(record) for record in records]})

    @app.post("/api/admin/permission-requests")
    @auth.admin_required
    def review_request() -> Any:
        reviewer = auth.current_user()
        payload = _payload()
        intent = str(payload.get("intent", ""))
        request_id = _int_or_none(payload.get("requestId"))
        if request_id is None:
            return _error("Request ID required", 400)
        review_note = str(payload.get("reviewNote") or "").strip() or None

        if intent == "approve":
            result = controller.approve_request(request_id, reviewer, review_note=review_note, now=clock())
            return jsonify(
                {
                    "success": True,
                    "message": "Request approved and reservation created",
                    "reservation": _serialize_reservation(result.reservation, result.room),
                }
            )
        if intent == "reject":
            controller.reject_request(request_id, reviewer, review_note or "", now=clock())
            return jsonify({"success": True, "message": "Request rejected"})
        return _error("Invalid intent", 400)

    @app.get("/api/admin/instructor-permissions")
    @auth.admin_required
    def list_instructor_permissions() -> Any:
        permissions = {record.user_id: record for record in repository.list_override_permissions()}
        instructors = [user for user in repository.list_users() if user.role is Role.INSTRUCTOR]
        return jsonify(
            {
                "instructors": [
                    {
                        **_serialize_user(user),
                        "canOverride": bool(permissions.get(user.user_id) and permissions[user.user_id].is_active),
                    }
                    for user in instructors
                ]
            }
        )

    @app.post("/api/admin/instructor-permissions")
    @auth.admin_required
    def instructor_permission_action() -> Any:
        admin = auth.current_user()
        payload = _payload()
        intent = str(payload.get("intent", ""))
        instructor_id = _int_or_none(payload.get("instructorId"))
        if instructor_id is None:
            return _error("Instructor ID required", 400)

        instructor = repository.get_user(instructor_id)
        if instructor is None or instructor.role is not Role.INSTRUCTOR:
            return _error("User is not an instructor", 400)

        if intent == "grant":
            now = clock()
            with repository.transaction():
                repository.grant_override_permission(instructor_id, granted_by=admin.user_id, now=now)
                services.notifications.write(
                    instructor_id,
                    PERMISSION_GRANTED,
                    "New Permission",
                    "You have been granted a new permission: Override Reservations",
                    now=now,
                )
            dispatcher.dispatch(
                f"permission granted to user {instructor_id}",
                mail.send_permission_granted,
                instructor.email,
                instructor.display_name,
            )
            return jsonify({"success": True, "message": "Override permission granted"})

        if intent == "revoke":
            try:
                repository.revoke_override_permission(instructor_id, now=clock())
            except ValueError as error:
                return _error(str(error), 404)
            return jsonify({"success": True, "message": "Override permission revoked"})

        return _error("Invalid intent", 400)

    @app.get("/api/admin/system-settings")
    @auth.admin_required
    def get_system_settings() -> Any:
        limits = repository.get_reservation_limits()
        return jsonify({"minReservationMinutes": limits.min_minutes, "maxReservationMinutes": limits.max_minutes})

    @app.post("/api/admin/system-settings")
    @auth.admin_required
    def update_system_settings() -> Any:
        payload = _payload()
        min_minutes = _int_or_none(payload.get("minReservationMinutes"))
        max_minutes = _int_or_none(payload.get("maxReservationMinutes"))
        if min_minutes is None or max_minutes is None:
            return _error("Invalid values", 400)
        try:
            limits = validate_limits(min_minutes, max_minutes)
        except ValueError as error:
            return _error(str(error), 400)
        repository.update_reservation_limits(limits, updated_by=auth.current_user().user_id, now=clock())
        return jsonify({"success": True, "message": "Reservation time limits updated successfully"})

    @app.get("/api/admin/users")
    @auth.admin_required
    def list_users() -> Any:
        return jsonify({"users": [_serialize_user(user) for user in repository.list_users()]})

    @app.post("/api/admin/users")
    @auth.admin_required
    def update_user() -> Any:
        payload = _payload()
        user_id = _int_or_none(payload.get("userId"))
        if user_id is None:
            return _error("User ID required", 400)
        try:
            role = Role.parse(payload.get("role"))
            updated = repository.update_user_role(user_id, role)
        except ValueError as error:
            return _error(str(error), 400)
        return jsonify({"success": True, "user": _serialize_user(updated)})

    @app.post("/api/admin/rooms/<int:room_id>")
    @auth.admin_required
    def update_room(room_id: int) -> Any:
        payload = _payload()
        is_available = payload.get("isAvailable")
        try:
            room = repository.update_room(
                room_id,
                name=payload.get("name"),
                capacity=_int_or_none(payload.get("capacity")),
                description=payload.get("description"),
                is_available=_as_bool(is_available) if is_available is not None else None,
            )
        except ValueError as error:
            return _error(str(error), 404 if "not found" in str(error) else 400)
        return jsonify({"success": True, "room": _serialize_room(room)})

    @app.get("/api/health")
    def health() -> Any:
        try:
            repository.check()
        except (OSError, ReservationStorageError):
            logger.exception("Health check failed")
            return jsonify({"status": "error"}), 503
        return jsonify({"status": "ok", "time": clock().isoformat(timespec="seconds")})

    _register_cli(app, services)
    return app


def _register_cli(app: Flask, services: AppServices) -> None:
    repository = services.repository

    @app.cli.command("seed-rooms")
    @click.option("--count", default=5, show_default=True, help="Number of rooms to create.")
    @click.option("--floors", default=2, show_default=True, help="Rooms are spread across this many floors.")
    def seed_rooms(count: int, floors: int) -> None:
        """Create sample rooms."""
        for index in range(1, count + 1):
            floor = (index - 1) % max(1, floors) + 1
            room = repository.add_room(f"Room {floor}{index:02d}", capacity=10 + index * 2, floor=floor)
            click.echo(f"[OK] {room.name} (id={room.room_id}, floor={room.floor})")

    @app.cli.command("set-role")
    @click.argument("email")
    @click.argument("role", type=click.Choice([role.value for role in Role]))
    def set_role(email: str, role: str) -> None:
        """Change the role of an existing user."""
        user = repository.find_user_by_email(email)
        if user is None:
            raise click.ClickException(f"User not found: {email}")
        updated = repository.update_user_role(user.user_id, Role.parse(role))
        click.echo(f"[OK] {updated.email} is now {updated.role.value}")

    @app.cli.command("grant-override")
    @click.argument("email")
    def grant_override(email: str) -> None:
        """Grant the reservation override permission to an instructor."""
        user = repository.find_user_by_email(email)
        if user is None:
            raise click.ClickException(f"User not found: {email}")
        if user.role is not Role.INSTRUCTOR:
            raise click.ClickException(f"{email} is not an instructor")
        repository.grant_override_permission(user.user_id, now=services.clock())
        click.echo(f"[OK] Override permission granted to {user.email}")


def _payload() -> dict[str, Any]:
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


def _error(message: str, status: int) -> Any:
    return jsonify({"success": False, "error": message}), status


def _int_or_none(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _parse_timestamp(value: Any) -> datetime:
    """Parse ISO-8601, including a trailing ``Z``; aware values become naive local time."""
    text = str(value).strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def _interval_from_payload(payload: Mapping[str, Any]) -> tuple[datetime, datetime]:
    if not payload.get("startTime") or not payload.get("endTime"):
        raise ValidationError("Missing required fields")
    try:
        return _parse_timestamp(payload["startTime"]), _parse_timestamp(payload["endTime"])
    except ValueError as error:
        raise ValidationError("Invalid date format") from error


def _attendees_from_payload(payload: Mapping[str, Any]) -> int | None:
    raw_attendees = payload.get("attendees")
    if raw_attendees in (None, ""):
        return None
    attendees = _int_or_none(raw_attendees)
    if attendees is None:
        raise ValidationError("Attendees must be a number")
    return attendees


def _proposal_from_payload(payload: Mapping[str, Any]) -> ReservationProposal:
    room_id = _int_or_none(payload.get("roomId"))
    if room_id is None:
        raise ValidationError("Missing required fields")
    start, end = _interval_from_payload(payload)
    attendees = _attendees_from_payload(payload)
    purpose = payload.get("purpose")
    return ReservationProposal(
        room_id=room_id,
        start=start,
        end=end,
        purpose=str(purpose).strip() if purpose is not None else None,
        attendees=attendees if attendees is not None else 1,
    )


def _user_ids_from_payload(payload: Mapping[str, Any]) -> list[int]:
    """Accept a JSON list or a comma separated form value."""
    raw = payload.get("userIds")
    items = raw if isinstance(raw, list) else str(raw or "").split(",")
    user_ids: list[int] = []
    for item in items:
        user_id = _int_or_none(item)
        if user_id is None:
            if str(item).strip():
                raise ValidationError("Invalid user ID")
            continue
        user_ids.append(user_id)
    return user_ids


def _serialize_user(user: UserRecord) -> dict[str, Any]:
    return {
        "id": user.user_id,
        "email": user.email,
        "firstName": user.first_name,
        "lastName": user.last_name,
        "role": user.role.value,
        "twoFactorEnabled": user.two_factor_enabled,
        "twoFactorMethod": user.two_factor_method,
    }


def _serialize_room(room: RoomRecord) -> dict[str, Any]:
    return {
        "id": room.room_id,
        "name": room.name,
        "capacity": room.capacity,
        "floor": room.floor,
        "description": room.description,
        "isAvailable": room.is_available,
    }


def _serialize_reservation(
    record: ReservationRecord,
    room: RoomRecord | None = None,
    include_token: bool = True,
) -> dict[str, Any]:
    payload = {
        "id": record.reservation_id,
        "roomId": record.room_id,
        "roomName": room.name if room else None,
        "userId": record.user_id,
        "startTime": record.start.isoformat(timespec="minutes"),
        "endTime": record.end.isoformat(timespec="minutes"),
        "status": record.status,
        "purpose": record.purpose,
        "attendees": record.attendees,
        "createdAt": record.created_at.isoformat(timespec="seconds"),
        "cancelledAt": record.cancelled_at.isoformat(timespec="seconds") if record.cancelled_at else None,
    }
    if include_token:
        payload["shareToken"] = record.share_token
    return payload


def _serialize_request(record: ReservationRequestRecord) -> dict[str, Any]:
    return {
        "id": record.request_id,
        "userId": record.user_id,
        "roomId": record.room_id,
        "startTime": record.start.isoformat(timespec="minutes"),
        "endTime": record.end.isoformat(timespec="minutes"),
        "purpose": record.purpose,
        "attendees": record.attendees,
        "status": record.status,
        "createdAt": record.created_at.isoformat(timespec="seconds"),
        "reviewedBy": record.reviewed_by,
        "reviewNote": record.review_note,
        "reservationId": record.reservation_id,
    }


def _serialize_notification(record: NotificationRecord) -> dict[str, Any]:
    return {
        "id": record.notification_id,
        "type": record.type,
        "title": record.title,
        "message": record.message,
        "reservationId": record.reservation_id,
        "isRead": record.is_read,
        "createdAt": record.created_at.isoformat(timespec="seconds"),
    }


if __name__ == "__main__":
    app = create_app()
    app.run(host="127.0.0.1", port=5000, debug=False)
