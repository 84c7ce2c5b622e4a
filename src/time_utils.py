"""Time helpers for UTC storage and clock injection."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC, treating naive values as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_until(target: datetime | None, now: datetime) -> float:
    """Return the non-negative number of seconds from now until target."""
    if target is None:
        return 0.0
    delta = ensure_utc(target) - ensure_utc(now)
    return max(delta / timedelta(seconds=1), 0.0)
