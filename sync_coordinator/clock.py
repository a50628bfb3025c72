"""
Clock sources.

All coordination timestamps are timezone-aware UTC. SQLite hands naive values
back, so anything read from the database goes through ``ensure_utc`` before
being compared in Python.
"""

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    """Source of the current time."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """
    Manually advanced clock.

    Used by tests and simulations to move time forward without sleeping.
    """

    def __init__(self, start: datetime | None = None):
        self._now = ensure_utc(start) if start else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        """Move the clock forward and return the new time."""
        self._now = self._now + timedelta(minutes=minutes, seconds=seconds)
        return self._now


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def minutes(value: float) -> timedelta:
    """Shorthand for a timedelta of ``value`` minutes."""
    return timedelta(minutes=value)
