"""Unit tests for UTC time helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from time_utils import ensure_utc, seconds_until, utc_now


def test_utc_now_is_aware() -> None:
    """utc_now returns an aware UTC timestamp."""
    assert utc_now().tzinfo == timezone.utc


def test_ensure_utc_treats_naive_as_utc() -> None:
    """Naive values are tagged as UTC and aware values converted."""
    naive = datetime(2025, 1, 15, 12, 0, 0)
    offset = datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone(timedelta(hours=-5)))

    assert ensure_utc(naive) == datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(offset).hour == 17
    assert ensure_utc(None) is None


def test_seconds_until_never_negative() -> None:
    """seconds_until clamps past targets to zero."""
    now = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    assert seconds_until(now + timedelta(seconds=90), now) == 90.0
    assert seconds_until(now - timedelta(seconds=90), now) == 0.0
    assert seconds_until(None, now) == 0.0
