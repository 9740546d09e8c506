"""Injectable time and identifier sources."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from threading import Lock
from uuid import uuid4


def to_utc(value: datetime) -> datetime:
    """Normalize to an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(SystemClock):
    """Manually advanced clock for deterministic tests and scripts."""

    def __init__(self, current: datetime) -> None:
        self._current = to_utc(current)
        self._lock = Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def set(self, current: datetime) -> None:
        with self._lock:
            self._current = to_utc(current)

    def advance(self, **delta: float) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(**delta)
            return self._current


class UuidGenerator:
    def new_id(self) -> str:
        return str(uuid4())
