from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable


class Role(str, Enum):
    USER = "user"
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: str | None) -> "Role":
        try:
            return cls(str(value or "").strip().lower())
        except ValueError as error:
            raise ValueError(f"Unknown role: {value!r}") from error


@dataclass(frozen=True)
class RoleCapabilities:
    direct_booking: bool
    request_booking: bool
    may_override: bool
    cancel_any: bool


# Students keep both paths: they may book directly and may also file requests.
ROLE_CAPABILITIES: dict[Role, RoleCapabilities] = {
    Role.USER: RoleCapabilities(direct_booking=False, request_booking=True, may_override=False, cancel_any=False),
    Role.STUDENT: RoleCapabilities(direct_booking=True, request_booking=True, may_override=False, cancel_any=False),
    Role.INSTRUCTOR: RoleCapabilities(direct_booking=True, request_booking=False, may_override=True, cancel_any=False),
    Role.ADMIN: RoleCapabilities(direct_booking=True, request_booking=False, may_override=False, cancel_any=True),
}


def capabilities_for(role: Role) -> RoleCapabilities:
    return ROLE_CAPABILITIES[role]


@dataclass(frozen=True)
class Reservation:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start >= self.end:
            raise ValueError("Reservation start time must be earlier than end time.")


DEFAULT_MIN_RESERVATION_MINUTES = 30
DEFAULT_MAX_RESERVATION_MINUTES = 120
SETTINGS_FLOOR_MINUTES = 15
SETTINGS_CEILING_MINUTES = 480


@dataclass(frozen=True)
class ReservationLimits:
    min_minutes: int = DEFAULT_MIN_RESERVATION_MINUTES
    max_minutes: int = DEFAULT_MAX_RESERVATION_MINUTES

    def check_duration(self, start: datetime, end: datetime) -> None:
        """Raise ValueError naming the violated bound when the interval length is out of range."""
        if start >= end:
            raise ValueError("Reservation start time must be earlier than end time.")
        minutes = duration_minutes(start, end)
        if minutes < self.min_minutes:
            raise ValueError(f"Reservation must be at least {self.min_minutes} minutes")
        if minutes > self.max_minutes:
            raise ValueError(f"Reservation cannot exceed {self.max_minutes} minutes")


def validate_limits(min_minutes: int, max_minutes: int) -> ReservationLimits:
    if min_minutes < SETTINGS_FLOOR_MINUTES:
        raise ValueError(f"Minimum reservation time cannot be less than {SETTINGS_FLOOR_MINUTES} minutes")
    if max_minutes > SETTINGS_CEILING_MINUTES:
        raise ValueError(f"Maximum reservation time cannot exceed 8 hours ({SETTINGS_CEILING_MINUTES} minutes)")
    if min_minutes >= max_minutes:
        raise ValueError("Minimum time must be less than maximum time")
    return ReservationLimits(min_minutes=min_minutes, max_minutes=max_minutes)


def duration_minutes(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 60


def has_time_overlap(new_start: datetime, new_end: datetime, exist_start: datetime, exist_end: datetime) -> bool:
    """Return True when two time intervals overlap by even one minute.

    Intervals are treated as half-open ranges: [start, end)
    so touching boundaries (e.g. 10:00-11:00 and 11:00-12:00) do not overlap.
    """
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")
    if exist_start >= exist_end:
        raise ValueError("exist_start must be earlier than exist_end.")

    return new_start < exist_end and new_end > exist_start


def can_reserve(new_start: datetime, new_end: datetime, existing_reservations: Iterable[Reservation]) -> bool:
    """Return True if the requested interval does not overlap any existing reservation."""
    if new_start >= new_end:
        raise ValueError("new_start must be earlier than new_end.")

    for reservation in existing_reservations:
        if has_time_overlap(new_start, new_end, reservation.start, reservation.end):
            return False
    return True


class OverrideOutcome(str, Enum):
    OVERRIDE = "override"
    REJECT_PRIVILEGED = "reject_privileged"
    REJECT = "reject"


@dataclass(frozen=True)
class ConflictOwner:
    role: Role
    can_override: bool


def resolve_override(requester_role: Role, requester_can_override: bool, conflict: ConflictOwner) -> OverrideOutcome:
    """Decide what happens to a single conflicting reservation.

    Only an instructor holding an override grant may displace another
    instructor, and never one who holds a grant too.
    """
    if not capabilities_for(requester_role).may_override or not requester_can_override:
        return OverrideOutcome.REJECT
    if conflict.role is not Role.INSTRUCTOR:
        return OverrideOutcome.REJECT
    if conflict.can_override:
        return OverrideOutcome.REJECT_PRIVILEGED
    return OverrideOutcome.OVERRIDE


def resolve_conflicts(
    requester_role: Role,
    requester_can_override: bool,
    conflicts: Iterable[ConflictOwner],
) -> OverrideOutcome:
    """Combine per-conflict outcomes: override only when every conflict allows it."""
    outcomes = [resolve_override(requester_role, requester_can_override, conflict) for conflict in conflicts]
    if not outcomes:
        raise ValueError("conflicts must not be empty")
    if all(outcome is OverrideOutcome.OVERRIDE for outcome in outcomes):
        return OverrideOutcome.OVERRIDE
    if OverrideOutcome.REJECT_PRIVILEGED in outcomes:
        return OverrideOutcome.REJECT_PRIVILEGED
    return OverrideOutcome.REJECT
