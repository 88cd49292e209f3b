"""Per-employee leave cache versions.

An application owns one ``LeaveCacheVersions`` (``app.state.leave_cache``) and
hands it to whatever needs it. Views compare the version they rendered with
the current one and refetch when it moved. Nothing here is durable: a
restart resets every version to 0, which only costs clients a refetch.

Writers call ``invalidate_on_commit``: the bump is queued on the session and
fires once the outermost transaction commits. A rollback drops the queue, so
subscribers never refetch data that did not land.
"""

from __future__ import annotations

import logging
import threading
import uuid
from typing import Callable

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session, SessionTransaction

logger = logging.getLogger(__name__)

Subscriber = Callable[[uuid.UUID, int], None]
Unsubscribe = Callable[[], None]

_PENDING_KEY = "leave_cache_pending"


def _pending(session: Session) -> dict:
    return session.info.setdefault(_PENDING_KEY, {})


def _fire_pending(session: Session) -> None:
    if session.in_nested_transaction():
        return
    queued = list(_pending(session))
    _pending(session).clear()
    for cache, employee_id in queued:
        cache.invalidate(employee_id)


def _drop_pending(session: Session, previous_transaction: SessionTransaction) -> None:
    if previous_transaction.parent is None:
        _pending(session).clear()


def _watch(session: Session) -> None:
    if not event.contains(session, "after_commit", _fire_pending):
        event.listen(session, "after_commit", _fire_pending)
        event.listen(session, "after_soft_rollback", _drop_pending)


class LeaveCacheVersions:
    """Monotonic version counter per employee with change subscribers."""

    def __init__(self) -> None:
        self._versions: dict[uuid.UUID, int] = {}
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def version(self, employee_id: uuid.UUID) -> int:
        return self._versions.get(employee_id, 0)

    def invalidate(self, employee_id: uuid.UUID) -> int:
        """Bump the employee's version and notify subscribers; returns the new version."""
        with self._lock:
            new_version = self._versions.get(employee_id, 0) + 1
            self._versions[employee_id] = new_version
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(employee_id, new_version)
            except Exception:
                logger.exception(
                    "Leave cache subscriber %r failed for employee %s", callback, employee_id
                )
        return new_version

    def invalidate_on_commit(self, db: AsyncSession, employee_id: uuid.UUID) -> None:
        """Queue ``invalidate(employee_id)`` until ``db`` commits.

        Repeated calls in one transaction bump the version once.
        """
        session = db.sync_session
        _watch(session)
        _pending(session)[(self, employee_id)] = None

    def subscribe(self, callback: Subscriber) -> Unsubscribe:
        """Register ``callback(employee_id, version)``; call the result to stop."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def reset(self) -> None:
        with self._lock:
            self._versions.clear()
