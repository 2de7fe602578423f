from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Callable
import logging

from flask import current_app, g, jsonify, session
from werkzeug.security import check_password_hash, generate_password_hash

from .booking import Role
from .yaml_store import ReservationYamlRepository, UserRecord

logger = logging.getLogger(__name__)

MAX_LOGIN_ATTEMPTS = 5
LOCKOUT_DURATION = timedelta(minutes=10)
MIN_PASSWORD_LENGTH = 8
SESSION_USER_KEY = "user_id"


class AccountLockedError(Exception):
    def __init__(self, locked_until: datetime) -> None:
        super().__init__("Account temporarily locked due to too many failed login attempts")
        self.locked_until = locked_until


@dataclass(frozen=True)
class LoginResult:
    user: UserRecord

    @property
    def requires_two_factor(self) -> bool:
        return self.user.two_factor_enabled


def register(
    repository: ReservationYamlRepository,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: Role = Role.USER,
    now: datetime | None = None,
) -> UserRecord:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if not (first_name or "").strip() or not (last_name or "").strip():
        raise ValueError("First and last name are required")
    return repository.add_user(
        email=email,
        password_hash=generate_password_hash(password),
        first_name=first_name,
        last_name=last_name,
        role=role,
        now=now,
    )


def locked_until(repository: ReservationYamlRepository, email: str, now: datetime | None = None) -> datetime | None:
    """Return when the lock ends if the last MAX_LOGIN_ATTEMPTS attempts inside the window all failed."""
    effective_now = now or datetime.now()
    attempts = repository.recent_login_attempts(email, LOCKOUT_DURATION, now=effective_now)
    failures: list[datetime] = []
    for attempt in attempts:
        if attempt.get("success"):
            failures.clear()
        else:
            failures.append(datetime.fromisoformat(str(attempt["attempted_at"])))
    if len(failures) < MAX_LOGIN_ATTEMPTS:
        return None
    return failures[-1] + LOCKOUT_DURATION


def login(
    repository: ReservationYamlRepository,
    email: str,
    password: str,
    now: datetime | None = None,
) -> LoginResult | None:
    effective_now = now or datetime.now()
    lock_end = locked_until(repository, email, effective_now)
    if lock_end is not None:
        raise AccountLockedError(lock_end)

    user = repository.find_user_by_email(email)
    if user is None or not check_password_hash(user.password_hash, password or ""):
        repository.record_login_attempt(email, False, now=effective_now, retention=LOCKOUT_DURATION)
        logger.info("Failed login for %s", email)
        return None

    repository.record_login_attempt(email, True, now=effective_now, retention=LOCKOUT_DURATION)
    return LoginResult(user=user)


def start_session(user: UserRecord) -> None:
    session.clear()
    session.permanent = True
    session[SESSION_USER_KEY] = user.user_id


def end_session() -> None:
    session.clear()


def current_user() -> UserRecord | None:
    if "current_user" in g:
        return g.current_user

    user_id = session.get(SESSION_USER_KEY)
    user = None
    if user_id is not None:
        repository: ReservationYamlRepository = current_app.extensions["room_reservation"].repository
        user = repository.get_user(int(user_id))
    g.current_user = user
    return user


def login_required(view: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        if current_user() is None:
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        return view(*args, **kwargs)

    return wrapper


def admin_required(view: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(view)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        user = current_user()
        if user is None:
            return jsonify({"success": False, "error": "Unauthorized"}), 401
        if user.role is not Role.ADMIN:
            return jsonify({"success": False, "error": "Admin access required"}), 403
        return view(*args, **kwargs)

    return wrapper
