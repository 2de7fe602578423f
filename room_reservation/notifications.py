from __future__ import annotations

from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime
from functools import partial
from typing import Any, Callable
import logging
import threading

from .yaml_store import NotificationRecord, ReservationYamlRepository

logger = logging.getLogger(__name__)

RESERVATION_CONFIRMED = "reservation_confirmed"
RESERVATION_OVERRIDDEN = "reservation_overridden"
RESERVATION_CANCELLED = "reservation_cancelled"
PERMISSION_GRANTED = "permission_granted"
PERMISSION_REJECTED = "permission_rejected"
RESERVATION_UPDATED = "reservation_updated"
RESERVATION_INVITE = "reservation_invite"
ATTENDEE_JOINED = "attendee_joined"


class NotificationWriter:
    """In-app notifications; writes join the caller's store transaction when one is open."""

    def __init__(self, repository: ReservationYamlRepository) -> None:
        self.repository = repository

    def write(
        self,
        user_id: int,
        type: str,
        title: str,
        message: str,
        reservation_id: int | None = None,
        now: datetime | None = None,
    ) -> NotificationRecord:
        return self.repository.add_notification(user_id, type, title, message, reservation_id=reservation_id, now=now)


class EmailDispatcher:
    """Fire-and-forget email tasks.

    Failures are reported to the log from a done-callback and never reach the
    code that dispatched the task.
    """

    def __init__(self, executor: Executor | None = None, max_workers: int = 2) -> None:
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="email")
        self._pending: set[Future] = set()
        self._idle = threading.Condition()

    def dispatch(self, description: str, func: Callable[..., bool], *args: Any, **kwargs: Any) -> Future:
        future = self._executor.submit(func, *args, **kwargs)
        with self._idle:
            self._pending.add(future)
        future.add_done_callback(partial(self._finish, description))
        return future

    def _finish(self, description: str, future: Future) -> None:
        try:
            if future.cancelled():
                logger.warning("Email task cancelled: %s", description)
                return
            error = future.exception()
            if error is not None:
                logger.error("Email task failed: %s", description, exc_info=error)
            elif future.result() is False:
                logger.warning("Email not delivered: %s", description)
        finally:
            with self._idle:
                self._pending.discard(future)
                self._idle.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every dispatched task has finished and been logged."""
        with self._idle:
            return self._idle.wait_for(lambda: not self._pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
