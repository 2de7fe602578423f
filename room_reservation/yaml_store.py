from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Iterator
import logging
import secrets
import shutil
import threading

import yaml

from .booking import (
    DEFAULT_MAX_RESERVATION_MINUTES,
    DEFAULT_MIN_RESERVATION_MINUTES,
    Reservation,
    ReservationLimits,
    Role,
    can_reserve,
    has_time_overlap,
)

logger = logging.getLogger(__name__)

STATUS_CONFIRMED = "confirmed"
STATUS_CANCELLED = "cancelled"

ATTENDEE_CONFIRMED = "confirmed"

REQUEST_PENDING = "pending"
REQUEST_APPROVED = "approved"
REQUEST_REJECTED = "rejected"
REQUEST_CANCELLED = "cancelled"

TWO_FACTOR_AUTHENTICATOR = "authenticator"
TWO_FACTOR_EMAIL = "email"

SETTING_MIN_MINUTES = "min_reservation_minutes"
SETTING_MAX_MINUTES = "max_reservation_minutes"

TABLES = (
    "rooms",
    "users",
    "reservations",
    "reservation_requests",
    "reservation_attendees",
    "instructor_permissions",
    "notifications",
    "system_settings",
    "two_factor_codes",
    "login_attempts",
)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat(timespec="seconds") if value is not None else None


def _parse_dt(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _optional_int(value: Any) -> int | None:
    return int(value) if value is not None else None


def _optional_str(value: Any) -> str | None:
    return str(value) if value is not None else None


@dataclass(frozen=True)
class RoomRecord:
    room_id: int
    name: str
    capacity: int
    floor: int = 1
    description: str | None = None
    is_available: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "name": self.name,
            "capacity": self.capacity,
            "floor": self.floor,
            "description": self.description,
            "is_available": self.is_available,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RoomRecord":
        return RoomRecord(
            room_id=int(data["room_id"]),
            name=str(data["name"]),
            capacity=int(data.get("capacity") or 0),
            floor=int(data.get("floor") or 1),
            description=_optional_str(data.get("description")),
            is_available=bool(data.get("is_available", True)),
        )


@dataclass(frozen=True)
class UserRecord:
    user_id: int
    email: str
    first_name: str
    last_name: str
    password_hash: str
    role: Role
    created_at: datetime
    two_factor_enabled: bool = False
    two_factor_method: str | None = None
    two_factor_secret: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip() or self.email

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "password_hash": self.password_hash,
            "role": self.role.value,
            "created_at": _iso(self.created_at),
            "two_factor_enabled": self.two_factor_enabled,
            "two_factor_method": self.two_factor_method,
            "two_factor_secret": self.two_factor_secret,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "UserRecord":
        return UserRecord(
            user_id=int(data["user_id"]),
            email=str(data["email"]),
            first_name=str(data.get("first_name") or ""),
            last_name=str(data.get("last_name") or ""),
            password_hash=str(data.get("password_hash") or ""),
            role=Role.parse(data.get("role")),
            created_at=_parse_dt(data["created_at"]),
            two_factor_enabled=bool(data.get("two_factor_enabled", False)),
            two_factor_method=_optional_str(data.get("two_factor_method")),
            two_factor_secret=_optional_str(data.get("two_factor_secret")),
        )


@dataclass(frozen=True)
class ReservationRecord:
    reservation_id: int
    room_id: int
    user_id: int
    start: datetime
    end: datetime
    status: str
    share_token: str
    created_at: datetime
    purpose: str = ""
    attendees: int = 1
    cancelled_at: datetime | None = None

    @property
    def is_confirmed(self) -> bool:
        return self.status == STATUS_CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "room_id": self.room_id,
            "user_id": self.user_id,
            "start": _iso(self.start),
            "end": _iso(self.end),
            "status": self.status,
            "purpose": self.purpose,
            "attendees": self.attendees,
            "share_token": self.share_token,
            "created_at": _iso(self.created_at),
            "cancelled_at": _iso(self.cancelled_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRecord":
        return ReservationRecord(
            reservation_id=int(data["reservation_id"]),
            room_id=int(data["room_id"]),
            user_id=int(data["user_id"]),
            start=_parse_dt(data["start"]),
            end=_parse_dt(data["end"]),
            status=str(data.get("status") or STATUS_CONFIRMED),
            purpose=str(data.get("purpose") or ""),
            attendees=int(data.get("attendees") or 1),
            share_token=str(data["share_token"]),
            created_at=_parse_dt(data["created_at"]),
            cancelled_at=_parse_dt(data.get("cancelled_at")),
        )


@dataclass(frozen=True)
class ReservationRequestRecord:
    request_id: int
    user_id: int
    room_id: int
    start: datetime
    end: datetime
    purpose: str
    status: str
    created_at: datetime
    attendees: int | None = None
    reviewed_by: int | None = None
    reviewed_at: datetime | None = None
    review_note: str | None = None
    reservation_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "user_id": self.user_id,
            "room_id": self.room_id,
            "start": _iso(self.start),
            "end": _iso(self.end),
            "purpose": self.purpose,
            "attendees": self.attendees,
            "status": self.status,
            "created_at": _iso(self.created_at),
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "review_note": self.review_note,
            "reservation_id": self.reservation_id,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "ReservationRequestRecord":
        return ReservationRequestRecord(
            request_id=int(data["request_id"]),
            user_id=int(data["user_id"]),
            room_id=int(data["room_id"]),
            start=_parse_dt(data["start"]),
            end=_parse_dt(data["end"]),
            purpose=str(data.get("purpose") or ""),
            attendees=_optional_int(data.get("attendees")),
            status=str(data.get("status") or REQUEST_PENDING),
            created_at=_parse_dt(data["created_at"]),
            reviewed_by=_optional_int(data.get("reviewed_by")),
            reviewed_at=_parse_dt(data.get("reviewed_at")),
            review_note=_optional_str(data.get("review_note")),
            reservation_id=_optional_int(data.get("reservation_id")),
        )


@dataclass(frozen=True)
class AttendeeRecord:
    reservation_id: int
    user_id: int
    joined_at: datetime
    status: str = ATTENDEE_CONFIRMED

    def to_dict(self) -> dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "status": self.status,
            "joined_at": _iso(self.joined_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "AttendeeRecord":
        return AttendeeRecord(
            reservation_id=int(data["reservation_id"]),
            user_id=int(data["user_id"]),
            status=str(data.get("status") or ATTENDEE_CONFIRMED),
            joined_at=_parse_dt(data["joined_at"]),
        )


@dataclass(frozen=True)
class OverridePermissionRecord:
    user_id: int
    can_override_reservations: bool
    revoked: bool
    granted_by: int | None = None
    granted_at: datetime | None = None
    revoked_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.can_override_reservations and not self.revoked

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "can_override_reservations": self.can_override_reservations,
            "revoked": self.revoked,
            "granted_by": self.granted_by,
            "granted_at": _iso(self.granted_at),
            "revoked_at": _iso(self.revoked_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "OverridePermissionRecord":
        return OverridePermissionRecord(
            user_id=int(data["user_id"]),
            can_override_reservations=bool(data.get("can_override_reservations", False)),
            revoked=bool(data.get("revoked", False)),
            granted_by=_optional_int(data.get("granted_by")),
            granted_at=_parse_dt(data.get("granted_at")),
            revoked_at=_parse_dt(data.get("revoked_at")),
        )


@dataclass(frozen=True)
class NotificationRecord:
    notification_id: int
    user_id: int
    type: str
    title: str
    message: str
    created_at: datetime
    reservation_id: int | None = None
    is_read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "reservation_id": self.reservation_id,
            "is_read": self.is_read,
            "created_at": _iso(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "NotificationRecord":
        return NotificationRecord(
            notification_id=int(data["notification_id"]),
            user_id=int(data["user_id"]),
            type=str(data["type"]),
            title=str(data.get("title") or ""),
            message=str(data.get("message") or ""),
            reservation_id=_optional_int(data.get("reservation_id")),
            is_read=bool(data.get("is_read", False)),
            created_at=_parse_dt(data["created_at"]),
        )


class ReservationStorageError(RuntimeError):
    pass


class StoreTransaction:
    """Table rows loaded once per transaction and written back together on commit."""

    def __init__(self, repository: "ReservationYamlRepository") -> None:
        self._repository = repository
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._dirty: set[str] = set()
        self._events: list[dict[str, Any]] = []

    def rows(self, table: str) -> list[dict[str, Any]]:
        if table not in self._tables:
            self._tables[table] = self._repository._read_yaml_list(self._repository.table_path(table))
        return self._tables[table]

    def replace_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        self._tables[table] = rows
        self._dirty.add(table)

    def mark_dirty(self, table: str) -> None:
        self._dirty.add(table)

    def next_id(self, table: str, key: str) -> int:
        return max((int(row.get(key, 0)) for row in self.rows(table)), default=0) + 1

    def log_event(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        timestamp = (event_time or datetime.now()).isoformat(timespec="seconds")
        self._events.append({"event_time": timestamp, "event_type": event_type, "payload": payload})

    def commit(self) -> None:
        writes = [
            (self._repository.table_path(table), self._tables[table]) for table in TABLES if table in self._dirty
        ]
        if self._events:
            events = self._repository._read_yaml_list(self._repository.log_file)
            events.extend(self._events)
            writes.append((self._repository.log_file, events))
        if writes:
            self._repository._write_yaml_lists(writes)
        self._dirty.clear()
        self._events.clear()


class ReservationYamlRepository:
    def __init__(self, base_dir: str | Path = "data") -> None:
        self.base_dir = Path(base_dir)
        self.log_file = self.base_dir / "reservation_events.yaml"
        self._lock = threading.RLock()
        self._local = threading.local()
        self._ensure_files()

    def table_path(self, table: str) -> Path:
        if table not in TABLES:
            raise ValueError(f"Unknown table: {table}")
        return self.base_dir / f"{table}.yaml"

    def _ensure_files(self) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        for path in [self.table_path(table) for table in TABLES] + [self.log_file]:
            if not path.exists():
                path.write_text("[]\n", encoding="utf-8")

    def _read_yaml_list(self, path: Path) -> list[dict[str, Any]]:
        try:
            payload = yaml.safe_load(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            path.write_text("[]\n", encoding="utf-8")
            return []
        except (OSError, UnicodeDecodeError, yaml.YAMLError) as error:
            self._recover_corrupted_yaml(path, error)
            return []

        if payload is None:
            return []
        if not isinstance(payload, list):
            self._recover_corrupted_yaml(path, ValueError("top-level YAML is not a list"))
            return []

        sanitized: list[dict[str, Any]] = []
        for index, row in enumerate(payload):
            if isinstance(row, dict):
                sanitized.append(row)
            else:
                logger.warning("Skipping non-mapping row %s in %s", index, path.name)
        return sanitized

    def _stage_yaml_list(self, path: Path, rows: list[dict[str, Any]]) -> Path:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(yaml.safe_dump(rows, allow_unicode=True, sort_keys=False), encoding="utf-8")
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            raise ReservationStorageError(f"Failed to write YAML file: {path}") from error
        return temp_path

    def _write_yaml_lists(self, writes: list[tuple[Path, list[dict[str, Any]]]]) -> None:
        """Stage every file before replacing any of them.

        A failed stage leaves every file untouched; a failed replace restores
        the files already swapped in.
        """
        staged: list[tuple[Path, Path]] = []
        originals: dict[Path, bytes] = {}
        replaced: list[Path] = []
        try:
            for path, rows in writes:
                staged.append((path, self._stage_yaml_list(path, rows)))
            for path, _ in staged:
                originals[path] = path.read_bytes() if path.exists() else b"[]\n"
            for path, temp_path in staged:
                temp_path.replace(path)
                replaced.append(path)
        except OSError as error:
            for path in replaced:
                path.write_bytes(originals[path])
            raise ReservationStorageError("Failed to commit YAML files") from error
        finally:
            for _, temp_path in staged:
                temp_path.unlink(missing_ok=True)

    def _recover_corrupted_yaml(self, path: Path, error: Exception) -> None:
        timestamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = path.with_name(f"{path.stem}.corrupt.{timestamp}{path.suffix}")
        try:
            if path.exists():
                shutil.copy2(path, backup_path)
        except OSError:
            logger.warning("Could not back up corrupted file %s", path.name)

        path.write_text("[]\n", encoding="utf-8")
        logger.error("Recovered corrupted YAML file %s (backup %s): %s", path.name, backup_path.name, error)

    @contextmanager
    def transaction(self) -> Iterator[StoreTransaction]:
        """Hold the store lock and commit every table touched inside the block at once.

        Nested calls on the same thread join the outer transaction; nothing is
        written if the outermost block raises.
        """
        with self._lock:
            current = getattr(self._local, "transaction", None)
            if current is not None:
                yield current
                return

            tx = StoreTransaction(self)
            self._local.transaction = tx
            try:
                yield tx
                tx.commit()
            finally:
                self._local.transaction = None

    def check(self) -> bool:
        """Read every table once; used by the health endpoint."""
        with self._lock:
            for table in TABLES:
                self._read_yaml_list(self.table_path(table))
        return True

    def get_events(self) -> list[dict[str, Any]]:
        return self._read_yaml_list(self.log_file)

    # Rooms

    def add_room(
        self,
        name: str,
        capacity: int,
        floor: int = 1,
        description: str | None = None,
        is_available: bool = True,
    ) -> RoomRecord:
        name = _normalize_name(name, "room name")
        with self.transaction() as tx:
            record = RoomRecord(
                room_id=tx.next_id("rooms", "room_id"),
                name=name,
                capacity=int(capacity),
                floor=int(floor),
                description=description,
                is_available=is_available,
            )
            tx.rows("rooms").append(record.to_dict())
            tx.mark_dirty("rooms")
            tx.log_event("ROOM_CREATED", {"room_id": record.room_id, "name": name})
        return record

    def get_room(self, room_id: int) -> RoomRecord | None:
        with self.transaction() as tx:
            for row in tx.rows("rooms"):
                if int(row["room_id"]) == int(room_id):
                    return RoomRecord.from_dict(row)
        return None

    def list_rooms(self, available_only: bool = True) -> list[RoomRecord]:
        with self.transaction() as tx:
            rooms = [RoomRecord.from_dict(row) for row in tx.rows("rooms")]
        if available_only:
            rooms = [room for room in rooms if room.is_available]
        return sorted(rooms, key=lambda room: (room.floor, room.name))

    def update_room(
        self,
        room_id: int,
        *,
        name: str | None = None,
        capacity: int | None = None,
        description: str | None = None,
        is_available: bool | None = None,
    ) -> RoomRecord:
        with self.transaction() as tx:
            rows = tx.rows("rooms")
            index = _find_index(rows, "room_id", room_id)
            if index < 0:
                raise ValueError("Room not found")

            current = RoomRecord.from_dict(rows[index])
            updated = replace(
                current,
                name=_normalize_name(name, "room name") if name is not None else current.name,
                capacity=int(capacity) if capacity is not None else current.capacity,
                description=description if description is not None else current.description,
                is_available=is_available if is_available is not None else current.is_available,
            )
            rows[index] = updated.to_dict()
            tx.mark_dirty("rooms")
            tx.log_event("ROOM_UPDATED", {"room_id": updated.room_id, "is_available": updated.is_available})
        return updated

    # Users

    def add_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        role: Role = Role.USER,
        now: datetime | None = None,
    ) -> UserRecord:
        normalized_email = normalize_email(email)
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("users")
            if any(str(row.get("email", "")).lower() == normalized_email for row in rows):
                raise ValueError("Email already registered")

            record = UserRecord(
                user_id=tx.next_id("users", "user_id"),
                email=normalized_email,
                first_name=first_name.strip(),
                last_name=last_name.strip(),
                password_hash=password_hash,
                role=role,
                created_at=effective_now,
            )
            rows.append(record.to_dict())
            tx.mark_dirty("users")
            tx.log_event("USER_REGISTERED", {"user_id": record.user_id, "role": role.value}, effective_now)
        return record

    def get_user(self, user_id: int) -> UserRecord | None:
        with self.transaction() as tx:
            for row in tx.rows("users"):
                if int(row["user_id"]) == int(user_id):
                    return UserRecord.from_dict(row)
        return None

    def find_user_by_email(self, email: str) -> UserRecord | None:
        normalized_email = normalize_email(email)
        with self.transaction() as tx:
            for row in tx.rows("users"):
                if str(row.get("email", "")).lower() == normalized_email:
                    return UserRecord.from_dict(row)
        return None

    def list_users(self) -> list[UserRecord]:
        with self.transaction() as tx:
            users = [UserRecord.from_dict(row) for row in tx.rows("users")]
        return sorted(users, key=lambda user: user.user_id)

    def _update_user(self, user_id: int, event_type: str, **changes: Any) -> UserRecord:
        with self.transaction() as tx:
            rows = tx.rows("users")
            index = _find_index(rows, "user_id", user_id)
            if index < 0:
                raise ValueError("User not found")
            updated = replace(UserRecord.from_dict(rows[index]), **changes)
            rows[index] = updated.to_dict()
            tx.mark_dirty("users")
            payload = {"user_id": updated.user_id}
            if "role" in changes:
                payload["role"] = updated.role.value
            tx.log_event(event_type, payload)
        return updated

    def update_user_role(self, user_id: int, role: Role) -> UserRecord:
        return self._update_user(user_id, "USER_ROLE_CHANGED", role=role)

    def set_two_factor(self, user_id: int, enabled: bool, method: str | None = None, secret: str | None = None) -> UserRecord:
        return self._update_user(
            user_id,
            "TWO_FACTOR_ENABLED" if enabled else "TWO_FACTOR_DISABLED",
            two_factor_enabled=enabled,
            two_factor_method=method if enabled else None,
            two_factor_secret=secret if enabled else None,
        )

    # System settings

    def get_reservation_limits(self) -> ReservationLimits:
        with self.transaction() as tx:
            settings = {str(row.get("setting_key")): row.get("setting_value") for row in tx.rows("system_settings")}
        return ReservationLimits(
            min_minutes=_setting_int(settings.get(SETTING_MIN_MINUTES), DEFAULT_MIN_RESERVATION_MINUTES),
            max_minutes=_setting_int(settings.get(SETTING_MAX_MINUTES), DEFAULT_MAX_RESERVATION_MINUTES),
        )

    def update_reservation_limits(
        self,
        limits: ReservationLimits,
        updated_by: int | None = None,
        now: datetime | None = None,
    ) -> ReservationLimits:
        effective_now = now or datetime.now()
        values = {SETTING_MIN_MINUTES: limits.min_minutes, SETTING_MAX_MINUTES: limits.max_minutes}
        with self.transaction() as tx:
            rows = [row for row in tx.rows("system_settings") if row.get("setting_key") not in values]
            for key, value in values.items():
                rows.append(
                    {
                        "setting_key": key,
                        "setting_value": str(value),
                        "updated_by": updated_by,
                        "updated_at": _iso(effective_now),
                    }
                )
            tx.replace_rows("system_settings", rows)
            tx.log_event("SETTINGS_UPDATED", {**values, "updated_by": updated_by}, effective_now)
        return limits

    # Instructor override permissions

    def get_override_permission(self, user_id: int) -> bool:
        record = self.get_override_permission_record(user_id)
        return record is not None and record.is_active

    def get_override_permission_record(self, user_id: int) -> OverridePermissionRecord | None:
        with self.transaction() as tx:
            for row in tx.rows("instructor_permissions"):
                if int(row["user_id"]) == int(user_id):
                    return OverridePermissionRecord.from_dict(row)
        return None

    def list_override_permissions(self) -> list[OverridePermissionRecord]:
        with self.transaction() as tx:
            return [OverridePermissionRecord.from_dict(row) for row in tx.rows("instructor_permissions")]

    def grant_override_permission(
        self,
        user_id: int,
        granted_by: int | None = None,
        now: datetime | None = None,
    ) -> OverridePermissionRecord:
        effective_now = now or datetime.now()
        record = OverridePermissionRecord(
            user_id=int(user_id),
            can_override_reservations=True,
            revoked=False,
            granted_by=granted_by,
            granted_at=effective_now,
        )
        with self.transaction() as tx:
            rows = tx.rows("instructor_permissions")
            index = _find_index(rows, "user_id", user_id)
            if index < 0:
                rows.append(record.to_dict())
            else:
                rows[index] = record.to_dict()
            tx.mark_dirty("instructor_permissions")
            tx.log_event("PERMISSION_GRANTED", {"user_id": record.user_id, "granted_by": granted_by}, effective_now)
        return record

    def revoke_override_permission(self, user_id: int, now: datetime | None = None) -> OverridePermissionRecord:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("instructor_permissions")
            index = _find_index(rows, "user_id", user_id)
            if index < 0 or not OverridePermissionRecord.from_dict(rows[index]).is_active:
                raise ValueError("No active override permission found")

            revoked = replace(
                OverridePermissionRecord.from_dict(rows[index]),
                can_override_reservations=False,
                revoked=True,
                revoked_at=effective_now,
            )
            rows[index] = revoked.to_dict()
            tx.mark_dirty("instructor_permissions")
            tx.log_event("PERMISSION_REVOKED", {"user_id": revoked.user_id}, effective_now)
        return revoked

    # Reservations

    def get_reservation(self, reservation_id: int) -> ReservationRecord | None:
        with self.transaction() as tx:
            for row in tx.rows("reservations"):
                if int(row["reservation_id"]) == int(reservation_id):
                    return ReservationRecord.from_dict(row)
        return None

    def get_reservation_by_share_token(self, share_token: str) -> ReservationRecord | None:
        """Confirmed reservation behind a share link; cancelled ones are not shared."""
        token = str(share_token or "").strip()
        if not token:
            return None
        with self.transaction() as tx:
            for row in tx.rows("reservations"):
                if str(row.get("share_token")) == token:
                    record = ReservationRecord.from_dict(row)
                    return record if record.is_confirmed else None
        return None

    def list_user_reservations(
        self,
        user_id: int,
        include_cancelled: bool = False,
        upcoming_after: datetime | None = None,
    ) -> list[ReservationRecord]:
        with self.transaction() as tx:
            records = [ReservationRecord.from_dict(row) for row in tx.rows("reservations")]
        owned = [record for record in records if record.user_id == int(user_id)]
        if not include_cancelled:
            owned = [record for record in owned if record.is_confirmed]
        if upcoming_after is not None:
            owned = [record for record in owned if record.end > upcoming_after]
        return sorted(owned, key=lambda record: (record.start, record.reservation_id))

    def find_overlapping(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        exclude_reservation_id: int | None = None,
    ) -> list[ReservationRecord]:
        """Confirmed reservations of the room intersecting [start, end), earliest first."""
        with self.transaction() as tx:
            records = [ReservationRecord.from_dict(row) for row in tx.rows("reservations")]
        overlapping = [
            record
            for record in records
            if record.room_id == int(room_id)
            and record.is_confirmed
            and record.reservation_id != exclude_reservation_id
            and has_time_overlap(start, end, record.start, record.end)
        ]
        return sorted(overlapping, key=lambda record: (record.start, record.reservation_id))

    def add_reservation(
        self,
        room_id: int,
        user_id: int,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
        attendees: int = 1,
        now: datetime | None = None,
    ) -> ReservationRecord:
        effective_now = now or datetime.now()
        if start >= end:
            raise ValueError("Reservation start time must be earlier than end time.")

        with self.transaction() as tx:
            records = [ReservationRecord.from_dict(row) for row in tx.rows("reservations")]
            same_room = [row for row in records if row.room_id == int(room_id) and row.is_confirmed]
            if not can_reserve(start, end, [Reservation(row.start, row.end) for row in same_room]):
                raise ValueError("Reservation overlaps with an existing confirmed reservation.")

            used_tokens = {record.share_token for record in records}
            share_token = generate_share_token()
            while share_token in used_tokens:
                share_token = generate_share_token()

            record = ReservationRecord(
                reservation_id=tx.next_id("reservations", "reservation_id"),
                room_id=int(room_id),
                user_id=int(user_id),
                start=start,
                end=end,
                status=STATUS_CONFIRMED,
                purpose=purpose or "",
                attendees=int(attendees),
                share_token=share_token,
                created_at=effective_now,
            )
            tx.rows("reservations").append(record.to_dict())
            tx.mark_dirty("reservations")
            tx.log_event(
                "RESERVATION_CREATED",
                {
                    "reservation_id": record.reservation_id,
                    "room_id": record.room_id,
                    "user_id": record.user_id,
                    "start": _iso(record.start),
                    "end": _iso(record.end),
                },
                effective_now,
            )
        return record

    def cancel_reservation(
        self,
        reservation_id: int,
        now: datetime | None = None,
        event_type: str = "RESERVATION_CANCELLED",
        cancelled_by: int | None = None,
    ) -> ReservationRecord:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("reservations")
            index = _find_index(rows, "reservation_id", reservation_id)
            if index < 0:
                raise ValueError("Reservation not found")

            current = ReservationRecord.from_dict(rows[index])
            if not current.is_confirmed:
                raise ValueError("Reservation is already cancelled")

            cancelled = replace(current, status=STATUS_CANCELLED, cancelled_at=effective_now)
            rows[index] = cancelled.to_dict()
            tx.mark_dirty("reservations")
            tx.log_event(
                event_type,
                {
                    "reservation_id": cancelled.reservation_id,
                    "room_id": cancelled.room_id,
                    "user_id": cancelled.user_id,
                    "cancelled_by": cancelled_by,
                },
                effective_now,
            )
        return cancelled

    def update_reservation(
        self,
        reservation_id: int,
        start: datetime,
        end: datetime,
        purpose: str | None = None,
        attendees: int | None = None,
        now: datetime | None = None,
        updated_by: int | None = None,
    ) -> ReservationRecord:
        effective_now = now or datetime.now()
        if start >= end:
            raise ValueError("Reservation start time must be earlier than end time.")

        with self.transaction() as tx:
            rows = tx.rows("reservations")
            index = _find_index(rows, "reservation_id", reservation_id)
            if index < 0:
                raise ValueError("Reservation not found")

            current = ReservationRecord.from_dict(rows[index])
            if not current.is_confirmed:
                raise ValueError("Reservation is already cancelled")
            if self.find_overlapping(current.room_id, start, end, exclude_reservation_id=current.reservation_id):
                raise ValueError("Reservation overlaps with an existing confirmed reservation.")

            updated = replace(
                current,
                start=start,
                end=end,
                purpose=purpose if purpose is not None else current.purpose,
                attendees=int(attendees) if attendees is not None else current.attendees,
            )
            rows[index] = updated.to_dict()
            tx.mark_dirty("reservations")
            tx.log_event(
                "RESERVATION_UPDATED",
                {
                    "reservation_id": updated.reservation_id,
                    "start": _iso(updated.start),
                    "end": _iso(updated.end),
                    "updated_by": updated_by,
                },
                effective_now,
            )
        return updated

    # Attendees

    def add_attendee(self, reservation_id: int, user_id: int, now: datetime | None = None) -> bool:
        """Record a confirmed attendee; False when the user had already joined."""
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("reservation_attendees")
            for row in rows:
                if int(row["reservation_id"]) == int(reservation_id) and int(row["user_id"]) == int(user_id):
                    return False

            record = AttendeeRecord(reservation_id=int(reservation_id), user_id=int(user_id), joined_at=effective_now)
            rows.append(record.to_dict())
            tx.mark_dirty("reservation_attendees")
            tx.log_event("ATTENDEE_JOINED", {"reservation_id": record.reservation_id, "user_id": record.user_id}, effective_now)
        return True

    def list_attendees(self, reservation_id: int) -> list[AttendeeRecord]:
        with self.transaction() as tx:
            records = [AttendeeRecord.from_dict(row) for row in tx.rows("reservation_attendees")]
        return [record for record in records if record.reservation_id == int(reservation_id)]

    # Reservation requests

    def add_request(
        self,
        user_id: int,
        room_id: int,
        start: datetime,
        end: datetime,
        purpose: str,
        attendees: int | None = None,
        now: datetime | None = None,
    ) -> ReservationRequestRecord:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("reservation_requests")
            for row in rows:
                existing = ReservationRequestRecord.from_dict(row)
                if (
                    existing.user_id == int(user_id)
                    and existing.room_id == int(room_id)
                    and existing.status == REQUEST_PENDING
                    and existing.start == start
                    and existing.end == end
                ):
                    raise ValueError("You already have a pending request for this time slot")

            record = ReservationRequestRecord(
                request_id=tx.next_id("reservation_requests", "request_id"),
                user_id=int(user_id),
                room_id=int(room_id),
                start=start,
                end=end,
                purpose=purpose,
                attendees=attendees,
                status=REQUEST_PENDING,
                created_at=effective_now,
            )
            rows.append(record.to_dict())
            tx.mark_dirty("reservation_requests")
            tx.log_event("REQUEST_CREATED", {"request_id": record.request_id, "user_id": record.user_id}, effective_now)
        return record

    def get_request(self, request_id: int) -> ReservationRequestRecord | None:
        with self.transaction() as tx:
            for row in tx.rows("reservation_requests"):
                if int(row["request_id"]) == int(request_id):
                    return ReservationRequestRecord.from_dict(row)
        return None

    def list_requests(self, user_id: int | None = None, status: str | None = None) -> list[ReservationRequestRecord]:
        with self.transaction() as tx:
            records = [ReservationRequestRecord.from_dict(row) for row in tx.rows("reservation_requests")]
        if user_id is not None:
            records = [record for record in records if record.user_id == int(user_id)]
        if status is not None:
            records = [record for record in records if record.status == status]
        return sorted(records, key=lambda record: (record.created_at, record.request_id), reverse=True)

    def cancel_request(self, request_id: int, user_id: int, now: datetime | None = None) -> ReservationRequestRecord:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("reservation_requests")
            index = _find_index(rows, "request_id", request_id)
            current = ReservationRequestRecord.from_dict(rows[index]) if index >= 0 else None
            if current is None or current.user_id != int(user_id) or current.status != REQUEST_PENDING:
                raise ValueError("Request not found or cannot be cancelled")

            cancelled = replace(current, status=REQUEST_CANCELLED)
            rows[index] = cancelled.to_dict()
            tx.mark_dirty("reservation_requests")
            tx.log_event("REQUEST_CANCELLED", {"request_id": cancelled.request_id}, effective_now)
        return cancelled

    def review_request(
        self,
        request_id: int,
        status: str,
        reviewed_by: int,
        review_note: str | None = None,
        reservation_id: int | None = None,
        now: datetime | None = None,
    ) -> ReservationRequestRecord:
        if status not in (REQUEST_APPROVED, REQUEST_REJECTED):
            raise ValueError(f"Unsupported review status: {status}")

        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("reservation_requests")
            index = _find_index(rows, "request_id", request_id)
            current = ReservationRequestRecord.from_dict(rows[index]) if index >= 0 else None
            if current is None or current.status != REQUEST_PENDING:
                raise ValueError("Request not found or already processed")

            reviewed = replace(
                current,
                status=status,
                reviewed_by=int(reviewed_by),
                reviewed_at=effective_now,
                review_note=review_note,
                reservation_id=reservation_id,
            )
            rows[index] = reviewed.to_dict()
            tx.mark_dirty("reservation_requests")
            tx.log_event(
                "REQUEST_APPROVED" if status == REQUEST_APPROVED else "REQUEST_REJECTED",
                {"request_id": reviewed.request_id, "reviewed_by": reviewed.reviewed_by},
                effective_now,
            )
        return reviewed

    # Notifications

    def add_notification(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        reservation_id: int | None = None,
        now: datetime | None = None,
    ) -> NotificationRecord:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            record = NotificationRecord(
                notification_id=tx.next_id("notifications", "notification_id"),
                user_id=int(user_id),
                type=type,
                title=title,
                message=message,
                reservation_id=reservation_id,
                created_at=effective_now,
            )
            tx.rows("notifications").append(record.to_dict())
            tx.mark_dirty("notifications")
        return record

    def list_notifications(self, user_id: int, unread_only: bool = False, limit: int = 50) -> list[NotificationRecord]:
        with self.transaction() as tx:
            records = [NotificationRecord.from_dict(row) for row in tx.rows("notifications")]
        owned = [record for record in records if record.user_id == int(user_id)]
        if unread_only:
            owned = [record for record in owned if not record.is_read]
        owned.sort(key=lambda record: (record.created_at, record.notification_id), reverse=True)
        return owned[: max(0, limit)]

    def count_unread_notifications(self, user_id: int) -> int:
        with self.transaction() as tx:
            return sum(
                1 for row in tx.rows("notifications") if int(row["user_id"]) == int(user_id) and not row.get("is_read")
            )

    def mark_notifications_read(self, user_id: int, notification_id: int | None = None) -> int:
        changed = 0
        with self.transaction() as tx:
            for row in tx.rows("notifications"):
                if int(row["user_id"]) != int(user_id) or row.get("is_read"):
                    continue
                if notification_id is not None and int(row["notification_id"]) != int(notification_id):
                    continue
                row["is_read"] = True
                changed += 1
            if changed:
                tx.mark_dirty("notifications")
        return changed

    def delete_notifications(self, user_id: int, notification_id: int | None = None) -> int:
        with self.transaction() as tx:
            rows = tx.rows("notifications")
            remaining = [
                row
                for row in rows
                if int(row["user_id"]) != int(user_id)
                or (notification_id is not None and int(row["notification_id"]) != int(notification_id))
            ]
            removed = len(rows) - len(remaining)
            if removed:
                tx.replace_rows("notifications", remaining)
        return removed

    # Two-factor codes and login attempts

    def store_two_factor_code(self, user_id: int, code: str, expires_at: datetime, now: datetime | None = None) -> None:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = [row for row in tx.rows("two_factor_codes") if int(row["user_id"]) != int(user_id)]
            rows.append(
                {
                    "user_id": int(user_id),
                    "code": code,
                    "expires_at": _iso(expires_at),
                    "used": False,
                    "created_at": _iso(effective_now),
                }
            )
            tx.replace_rows("two_factor_codes", rows)

    def consume_two_factor_code(self, user_id: int, code: str, now: datetime | None = None) -> bool:
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            for row in tx.rows("two_factor_codes"):
                if int(row["user_id"]) != int(user_id) or row.get("used"):
                    continue
                if not secrets.compare_digest(str(row.get("code")), str(code)):
                    continue
                if _parse_dt(row["expires_at"]) <= effective_now:
                    continue
                row["used"] = True
                tx.mark_dirty("two_factor_codes")
                return True
        return False

    def record_login_attempt(
        self,
        email: str,
        success: bool,
        now: datetime | None = None,
        retention: timedelta | None = None,
    ) -> None:
        """Append an attempt; with ``retention`` set, older attempts of every account are dropped."""
        effective_now = now or datetime.now()
        with self.transaction() as tx:
            rows = tx.rows("login_attempts")
            if retention is not None:
                cutoff = effective_now - retention
                rows = [row for row in rows if _parse_dt(row["attempted_at"]) > cutoff]
            rows.append({"email": normalize_email(email), "success": success, "attempted_at": _iso(effective_now)})
            tx.replace_rows("login_attempts", rows)
            if not success:
                tx.log_event("LOGIN_FAILED", {"email": normalize_email(email)}, effective_now)

    def recent_login_attempts(self, email: str, window: timedelta, now: datetime | None = None) -> list[dict[str, Any]]:
        effective_now = now or datetime.now()
        normalized_email = normalize_email(email)
        cutoff = effective_now - window
        with self.transaction() as tx:
            return [
                row
                for row in tx.rows("login_attempts")
                if row.get("email") == normalized_email and _parse_dt(row["attempted_at"]) > cutoff
            ]


def generate_share_token() -> str:
    return secrets.token_hex(16)


def normalize_email(email: str | None) -> str:
    normalized = str(email or "").strip().lower()
    if not normalized or "@" not in normalized:
        raise ValueError("A valid email address is required")
    return normalized


def _normalize_name(value: str | None, label: str) -> str:
    if value is None:
        raise ValueError(f"{label} must not be None")

    normalized = value.strip()
    if not normalized:
        raise ValueError(f"{label} must not be empty")
    return normalized


def _find_index(rows: list[dict[str, Any]], key: str, value: int) -> int:
    for index, row in enumerate(rows):
        if int(row.get(key, -1)) == int(value):
            return index
    return -1


def _setting_int(value: Any, default: int) -> int:
    try:
        parsed = int(str(value))
    except (TypeError, ValueError):
        return default
    return parsed or default
