"""Reservation admission: decide whether a proposed booking may be written, and write it.

The overlap scan and every resulting write (cancelled conflicts, owner
notifications, the new reservation) run in one store transaction, so two
overlapping admissions for the same room can never both succeed. Emails are
dispatched only after the transaction has committed.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, TypeVar
import logging

from .booking import (
    ConflictOwner,
    OverrideOutcome,
    ReservationLimits,
    Role,
    capabilities_for,
    resolve_conflicts,
)
from .mailer import Mailer
from .notifications import (
    ATTENDEE_JOINED,
    PERMISSION_REJECTED,
    RESERVATION_CANCELLED,
    RESERVATION_CONFIRMED,
    RESERVATION_INVITE,
    RESERVATION_OVERRIDDEN,
    RESERVATION_UPDATED,
    EmailDispatcher,
    NotificationWriter,
)
from .yaml_store import (
    REQUEST_APPROVED,
    REQUEST_PENDING,
    REQUEST_REJECTED,
    ReservationRecord,
    ReservationRequestRecord,
    ReservationStorageError,
    ReservationYamlRepository,
    RoomRecord,
    UserRecord,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MSG_ROOM_RESERVED = "Room is already reserved for this time period"
MSG_PRIVILEGED_CONFLICT = "Room is already booked by another privileged instructor for this time period"
MSG_REQUEST_PERMISSION = "You must request permission to book rooms. Please contact an administrator."
MSG_REQUEST_ONLY_USERS = "Only regular users can request permission"
MSG_SLOT_TAKEN = "Time slot already reserved"
MSG_SLOT_NOW_OCCUPIED = "Time slot is now occupied. Cannot approve."
MSG_PERSISTENCE = "Failed to save reservation"

JOIN_CONFIRMED = "confirmed"
JOIN_ALREADY_CONFIRMED = "already_confirmed"
JOIN_ORGANIZER = "organizer"


class AdmissionError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(AdmissionError):
    status_code = 400


class AuthorizationError(AdmissionError):
    status_code = 403


class ConflictError(AdmissionError):
    status_code = 400


class NotFoundError(AdmissionError):
    status_code = 404


class PersistenceError(AdmissionError):
    status_code = 500


@dataclass(frozen=True)
class ReservationProposal:
    room_id: int
    start: datetime
    end: datetime
    purpose: str | None = None
    attendees: int = 1


@dataclass(frozen=True)
class AdmissionResult:
    reservation: ReservationRecord
    room: RoomRecord
    owner: UserRecord
    overridden: list[ReservationRecord] = field(default_factory=list)
    via_request: bool = False

    @property
    def was_override(self) -> bool:
        return bool(self.overridden)


class ReservationAdmissionController:
    def __init__(
        self,
        repository: ReservationYamlRepository,
        mailer: Mailer,
        dispatcher: EmailDispatcher,
        share_url_builder: Callable[[str], str] | None = None,
    ) -> None:
        self.repository = repository
        self.notifications = NotificationWriter(repository)
        self.mailer = mailer
        self.dispatcher = dispatcher
        self.share_url_builder = share_url_builder

    def admit(
        self,
        requester: UserRecord,
        proposal: ReservationProposal,
        limits: ReservationLimits,
        now: datetime | None = None,
    ) -> AdmissionResult:
        """Book a room directly, overriding standard-instructor bookings where the role table allows it."""
        effective_now = now or datetime.now()
        if not capabilities_for(requester.role).direct_booking:
            raise AuthorizationError(MSG_REQUEST_PERMISSION)
        _check_proposal(proposal, limits)

        result = self._run(
            lambda: self._admit_locked(requester, proposal, effective_now, conflict_message=None),
            proposal.room_id,
        )
        self._dispatch_emails(result)
        return result

    def _run(self, work: Callable[[], T], room_id: int | None = None) -> T:
        try:
            with self.repository.transaction():
                return work()
        except AdmissionError:
            raise
        except ReservationStorageError as error:
            logger.exception("Reservation store write failed (room %s)", room_id)
            raise PersistenceError(MSG_PERSISTENCE) from error

    def _admit_locked(
        self,
        requester: UserRecord,
        proposal: ReservationProposal,
        now: datetime,
        conflict_message: str | None,
        via_request: bool = False,
    ) -> AdmissionResult:
        room = self.repository.get_room(proposal.room_id)
        if room is None or not room.is_available:
            raise NotFoundError("Room not found")

        conflicts = self.repository.find_overlapping(proposal.room_id, proposal.start, proposal.end)
        overridden: list[ReservationRecord] = []
        if conflicts:
            # Request approvals never displace anyone.
            if conflict_message is not None:
                raise ConflictError(conflict_message)
            self._resolve(requester, conflicts)
            for conflict in conflicts:
                overridden.append(self._override(requester, conflict, room, now))

        try:
            reservation = self.repository.add_reservation(
                room_id=proposal.room_id,
                user_id=requester.user_id,
                start=proposal.start,
                end=proposal.end,
                purpose=proposal.purpose,
                attendees=proposal.attendees,
                now=now,
            )
        except ValueError as error:
            raise ConflictError(conflict_message or MSG_ROOM_RESERVED) from error

        if via_request:
            title = "Reservation Request Approved"
            message = f"Your reservation request has been approved: {room.name}"
        else:
            title = "Reservation Confirmed"
            message = f"Your reservation has been confirmed: {room.name}"
        self.notifications.write(
            requester.user_id,
            RESERVATION_CONFIRMED,
            title,
            message,
            reservation_id=reservation.reservation_id,
            now=now,
        )
        return AdmissionResult(
            reservation=reservation,
            room=room,
            owner=requester,
            overridden=overridden,
            via_request=via_request,
        )

    def _resolve(self, requester: UserRecord, conflicts: list[ReservationRecord]) -> None:
        requester_can_override = requester.role is Role.INSTRUCTOR and self.repository.get_override_permission(
            requester.user_id
        )
        owners: list[ConflictOwner] = []
        for conflict in conflicts:
            owner = self.repository.get_user(conflict.user_id)
            if owner is None:
                raise ConflictError(MSG_ROOM_RESERVED)
            owners.append(
                ConflictOwner(
                    role=owner.role,
                    can_override=owner.role is Role.INSTRUCTOR
                    and self.repository.get_override_permission(owner.user_id),
                )
            )

        outcome = resolve_conflicts(requester.role, requester_can_override, owners)
        if outcome is OverrideOutcome.REJECT_PRIVILEGED:
            raise ConflictError(MSG_PRIVILEGED_CONFLICT)
        if outcome is OverrideOutcome.REJECT:
            raise ConflictError(MSG_ROOM_RESERVED)

    def _override(
        self,
        requester: UserRecord,
        conflict: ReservationRecord,
        room: RoomRecord,
        now: datetime,
    ) -> ReservationRecord:
        cancelled = self.repository.cancel_reservation(
            conflict.reservation_id,
            now=now,
            event_type="RESERVATION_OVERRIDDEN",
            cancelled_by=requester.user_id,
        )
        self.notifications.write(
            conflict.user_id,
            RESERVATION_OVERRIDDEN,
            "Reservation Overridden",
            "Your reservation has been overridden by a privileged instructor. "
            f"Room: {room.name}, Time: {conflict.start:%Y-%m-%d %H:%M} - {conflict.end:%H:%M}",
            reservation_id=conflict.reservation_id,
            now=now,
        )
        logger.info(
            "Override: privileged instructor %s cancelled reservation %s of user %s",
            requester.user_id,
            conflict.reservation_id,
            conflict.user_id,
        )
        return cancelled

    def _share_url(self, reservation: ReservationRecord) -> str | None:
        if self.share_url_builder is None:
            return None
        return self.share_url_builder(reservation.share_token)

    def _dispatch_emails(self, result: AdmissionResult) -> None:
        reservation = result.reservation
        send = self.mailer.send_request_approved if result.via_request else self.mailer.send_reservation_confirmation
        self.dispatcher.dispatch(
            f"reservation confirmation #{reservation.reservation_id}",
            send,
            result.owner.email,
            result.owner.display_name,
            result.room.name,
            reservation.start,
            reservation.end,
            reservation.purpose or None,
            self._share_url(reservation),
        )
        for displaced in result.overridden:
            owner = self.repository.get_user(displaced.user_id)
            if owner is None:
                continue
            self.dispatcher.dispatch(
                f"override notice #{displaced.reservation_id}",
                self.mailer.send_reservation_overridden,
                owner.email,
                owner.display_name,
                result.room.name,
                displaced.start,
                displaced.end,
                displaced.purpose or None,
            )

    # Restricted-role request path

    def submit_request(
        self,
        requester: UserRecord,
        proposal: ReservationProposal,
        limits: ReservationLimits,
        now: datetime | None = None,
    ) -> ReservationRequestRecord:
        effective_now = now or datetime.now()
        if not capabilities_for(requester.role).request_booking:
            raise AuthorizationError(MSG_REQUEST_ONLY_USERS)
        if not (proposal.purpose or "").strip():
            raise ValidationError("Missing required fields")
        _check_proposal(proposal, limits)

        def work() -> ReservationRequestRecord:
            room = self.repository.get_room(proposal.room_id)
            if room is None or not room.is_available:
                raise NotFoundError("Room not found")
            if self.repository.find_overlapping(proposal.room_id, proposal.start, proposal.end):
                raise ConflictError(MSG_SLOT_TAKEN)
            try:
                return self.repository.add_request(
                    user_id=requester.user_id,
                    room_id=proposal.room_id,
                    start=proposal.start,
                    end=proposal.end,
                    purpose=proposal.purpose.strip(),
                    attendees=proposal.attendees,
                    now=effective_now,
                )
            except ValueError as error:
                raise ValidationError(str(error)) from error

        return self._run(work, proposal.room_id)

    def approve_request(
        self,
        request_id: int,
        reviewer: UserRecord,
        review_note: str | None = None,
        now: datetime | None = None,
    ) -> AdmissionResult:
        effective_now = now or datetime.now()

        def work() -> AdmissionResult:
            request = self._pending_request(request_id)
            requester = self.repository.get_user(request.user_id)
            if requester is None:
                raise NotFoundError("Requesting user not found")
            proposal = ReservationProposal(
                room_id=request.room_id,
                start=request.start,
                end=request.end,
                purpose=request.purpose,
                attendees=request.attendees or 1,
            )
            result = self._admit_locked(
                requester,
                proposal,
                effective_now,
                conflict_message=MSG_SLOT_NOW_OCCUPIED,
                via_request=True,
            )
            self.repository.review_request(
                request_id,
                REQUEST_APPROVED,
                reviewer.user_id,
                review_note=review_note,
                reservation_id=result.reservation.reservation_id,
                now=effective_now,
            )
            return result

        result = self._run(work)
        self._dispatch_emails(result)
        return result

    def reject_request(
        self,
        request_id: int,
        reviewer: UserRecord,
        review_note: str,
        now: datetime | None = None,
    ) -> ReservationRequestRecord:
        effective_now = now or datetime.now()
        note = (review_note or "").strip()
        if not note:
            raise ValidationError("Review note required for rejection")

        def work() -> tuple[ReservationRequestRecord, UserRecord | None]:
            request = self._pending_request(request_id)
            rejected = self.repository.review_request(
                request_id, REQUEST_REJECTED, reviewer.user_id, review_note=note, now=effective_now
            )
            self.notifications.write(
                request.user_id,
                PERMISSION_REJECTED,
                "Reservation Request Rejected",
                f"Your reservation request has been rejected: {note}",
                now=effective_now,
            )
            return rejected, self.repository.get_user(request.user_id)

        rejected, requester = self._run(work)
        if requester is not None:
            self.dispatcher.dispatch(
                f"request rejection #{rejected.request_id}",
                self.mailer.send_request_rejected,
                requester.email,
                requester.display_name,
                note,
            )
        return rejected

    def _pending_request(self, request_id: int) -> ReservationRequestRecord:
        request = self.repository.get_request(request_id)
        if request is None or request.status != REQUEST_PENDING:
            raise NotFoundError("Request not found or already processed")
        return request

    # Changes by owner or privileged actor

    def cancel(self, actor: UserRecord, reservation_id: int, now: datetime | None = None) -> ReservationRecord:
        effective_now = now or datetime.now()

        def work() -> tuple[ReservationRecord, RoomRecord | None, UserRecord | None]:
            self._managed_reservation(actor, reservation_id, "You are not allowed to cancel this reservation")
            cancelled = self.repository.cancel_reservation(
                reservation_id, now=effective_now, cancelled_by=actor.user_id
            )
            room = self.repository.get_room(cancelled.room_id)
            owner = self.repository.get_user(cancelled.user_id)
            if cancelled.end > effective_now:
                room_name = room.name if room else f"#{cancelled.room_id}"
                self.notifications.write(
                    cancelled.user_id,
                    RESERVATION_CANCELLED,
                    "Reservation Cancelled",
                    f"Your reservation has been cancelled: {room_name}",
                    reservation_id=cancelled.reservation_id,
                    now=effective_now,
                )
            return cancelled, room, owner

        cancelled, room, owner = self._run(work)
        if owner is not None and room is not None and cancelled.end > effective_now:
            self.dispatcher.dispatch(
                f"cancellation notice #{cancelled.reservation_id}",
                self.mailer.send_reservation_cancelled,
                owner.email,
                owner.display_name,
                room.name,
                cancelled.start,
                cancelled.end,
                cancelled.purpose or None,
            )
        return cancelled

    def update(
        self,
        actor: UserRecord,
        reservation_id: int,
        start: datetime,
        end: datetime,
        limits: ReservationLimits,
        purpose: str | None = None,
        attendees: int | None = None,
        now: datetime | None = None,
    ) -> ReservationRecord:
        """Move a confirmed reservation to a new interval in the same room.

        The overlap scan skips the reservation being moved. Updates never
        override other bookings.
        """
        effective_now = now or datetime.now()
        try:
            limits.check_duration(start, end)
        except ValueError as error:
            raise ValidationError(str(error)) from error
        if attendees is not None and attendees < 1:
            raise ValidationError("Attendees must be at least 1")

        def work() -> tuple[ReservationRecord, RoomRecord | None, UserRecord | None]:
            self._managed_reservation(actor, reservation_id, "You are not allowed to modify this reservation")
            try:
                updated = self.repository.update_reservation(
                    reservation_id,
                    start,
                    end,
                    purpose=purpose,
                    attendees=attendees,
                    now=effective_now,
                    updated_by=actor.user_id,
                )
            except ValueError as error:
                raise ConflictError(MSG_ROOM_RESERVED) from error
            room = self.repository.get_room(updated.room_id)
            room_name = room.name if room else f"#{updated.room_id}"
            self.notifications.write(
                updated.user_id,
                RESERVATION_UPDATED,
                "Reservation Updated",
                f"Your reservation has been updated: {room_name}",
                reservation_id=updated.reservation_id,
                now=effective_now,
            )
            return updated, room, self.repository.get_user(updated.user_id)

        updated, room, owner = self._run(work)
        if owner is not None and room is not None:
            self.dispatcher.dispatch(
                f"update notice #{updated.reservation_id}",
                self.mailer.send_reservation_updated,
                owner.email,
                owner.display_name,
                room.name,
                updated.start,
                updated.end,
                updated.purpose or None,
            )
        return updated

    def invite(
        self,
        actor: UserRecord,
        reservation_id: int,
        user_ids: list[int],
        now: datetime | None = None,
    ) -> list[UserRecord]:
        """Notify and email each invited user with the reservation's share link."""
        effective_now = now or datetime.now()

        def work() -> tuple[ReservationRecord, RoomRecord | None, UserRecord | None, list[UserRecord]]:
            reservation = self._managed_reservation(
                actor, reservation_id, "You are not allowed to invite users to this reservation"
            )
            owner = self.repository.get_user(reservation.user_id)
            owner_name = owner.display_name if owner else actor.display_name
            invitees: list[UserRecord] = []
            for user_id in dict.fromkeys(user_ids):
                invitee = self.repository.get_user(user_id)
                if invitee is None or invitee.user_id == reservation.user_id:
                    continue
                self.notifications.write(
                    invitee.user_id,
                    RESERVATION_INVITE,
                    "New Reservation Invitation",
                    f"{owner_name} invited you to a room reservation",
                    reservation_id=reservation.reservation_id,
                    now=effective_now,
                )
                invitees.append(invitee)
            if not invitees:
                raise ValidationError("No users to invite")
            return reservation, self.repository.get_room(reservation.room_id), owner, invitees

        reservation, room, owner, invitees = self._run(work)
        owner_name = owner.display_name if owner else actor.display_name
        for invitee in invitees:
            self.dispatcher.dispatch(
                f"invitation #{reservation.reservation_id} to user {invitee.user_id}",
                self.mailer.send_reservation_invite,
                invitee.email,
                owner_name,
                invitee.display_name,
                room.name if room else f"#{reservation.room_id}",
                reservation.start,
                reservation.end,
                reservation.purpose or None,
                self._share_url(reservation),
            )
        return invitees

    def join(self, user: UserRecord, share_token: str, now: datetime | None = None) -> str:
        """Confirm attendance through a share link; returns one of the JOIN_* outcomes."""
        effective_now = now or datetime.now()

        def work() -> str:
            reservation = self.repository.get_reservation_by_share_token(share_token)
            if reservation is None:
                raise NotFoundError("Reservation not found")
            if reservation.user_id == user.user_id:
                return JOIN_ORGANIZER
            if not self.repository.add_attendee(reservation.reservation_id, user.user_id, now=effective_now):
                return JOIN_ALREADY_CONFIRMED
            self.notifications.write(
                reservation.user_id,
                ATTENDEE_JOINED,
                "New Attendee Joined",
                f"{user.display_name} has joined your reservation",
                reservation_id=reservation.reservation_id,
                now=effective_now,
            )
            return JOIN_CONFIRMED

        return self._run(work)

    def _managed_reservation(self, actor: UserRecord, reservation_id: int, denied_message: str) -> ReservationRecord:
        reservation = self.repository.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation not found")
        if reservation.user_id != actor.user_id and not self._may_manage_others(actor):
            raise AuthorizationError(denied_message)
        if not reservation.is_confirmed:
            raise ValidationError("Reservation is already cancelled")
        return reservation

    def _may_manage_others(self, actor: UserRecord) -> bool:
        if capabilities_for(actor.role).cancel_any:
            return True
        return actor.role is Role.INSTRUCTOR and self.repository.get_override_permission(actor.user_id)


def _check_proposal(proposal: ReservationProposal, limits: ReservationLimits) -> None:
    try:
        limits.check_duration(proposal.start, proposal.end)
    except ValueError as error:
        raise ValidationError(str(error)) from error
    if proposal.attendees < 1:
        raise ValidationError("Attendees must be at least 1")
