"""Per-booking and per-property exclusive locks.

In-process locks are re-entrant so an operation holding a booking lock can call
another operation on the same booking (accept -> transition) without
deadlocking. Across processes, booking writers are serialized by the
`SELECT ... FOR UPDATE` on the booking row, and calendar writers by
`lock_property_calendar`, which updates the property's `property_calendars` row
inside the caller's transaction and so holds that row until commit.
"""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from common.models import PropertyCalendar

_UPSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


class LockRegistry:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


_registry = LockRegistry()


def booking_lock(booking_id: str):
    return _registry.hold(f"booking:{booking_id}")


def property_lock(property_id: str):
    return _registry.hold(f"property:{property_id}")


def lock_property_calendar(db: Session, property_id: str) -> int:
    """Take the database-level calendar lock of a property for the current transaction."""
    upsert = _UPSERTS.get(db.get_bind().dialect.name)
    if upsert is not None:
        db.execute(
            upsert(PropertyCalendar)
            .values(property_id=property_id, version=0)
            .on_conflict_do_nothing(index_elements=["property_id"])
        )
    elif db.get(PropertyCalendar, property_id) is None:
        db.add(PropertyCalendar(property_id=property_id, version=0))
        db.flush()
    result = db.execute(
        update(PropertyCalendar)
        .where(PropertyCalendar.property_id == property_id)
        .values(version=PropertyCalendar.version + 1)
        .returning(PropertyCalendar.version)
    )
    return result.scalar_one()
