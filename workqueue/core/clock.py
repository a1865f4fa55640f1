"""
Clock abstraction

Queue timestamps, retry readiness and result expiry all read time through a
clock so tests can drive backoff and TTLs without sleeping.
"""

from datetime import UTC, datetime, timedelta
from typing import Optional, Protocol


class Clock(Protocol):
    """Source of timezone-aware UTC timestamps."""

    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(UTC)


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, tzinfo=UTC)
        if self._now.tzinfo is None:
            raise ValueError("ManualClock requires a timezone-aware start time")

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0, milliseconds: float = 0) -> datetime:
        self._now += timedelta(seconds=seconds, milliseconds=milliseconds)
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("ManualClock requires timezone-aware timestamps")
        self._now = value


def to_epoch_ms(value: datetime) -> int:
    """Milliseconds since the epoch for an aware datetime."""
    return int(value.timestamp() * 1000)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Whole milliseconds between two timestamps."""
    return int((end - start).total_seconds() * 1000)
