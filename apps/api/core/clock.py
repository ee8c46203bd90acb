"""Time sources for the delivery engine.

Everything that stamps or compares delivery times takes a ``Clock`` so retry
scheduling can be driven by virtual time in tests.
"""
from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Manually advanced clock. Thread-safe so pool workers can share it."""

    def __init__(self, start: datetime) -> None:
        self._lock = threading.Lock()
        self._now = ensure_utc(start)

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float = 0, **kwargs: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds, **kwargs)
            return self._now

    def set(self, value: datetime) -> None:
        with self._lock:
            self._now = ensure_utc(value)


SYSTEM_CLOCK = SystemClock()


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; they are stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat_z(value: datetime) -> str:
    return ensure_utc(value).isoformat().replace("+00:00", "Z")
