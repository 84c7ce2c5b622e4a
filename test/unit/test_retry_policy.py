"""Unit tests for retry and recheck helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from agent.retry_policy import (
    RecheckSchedule,
    RetryPolicy,
    compute_backoff_delay_seconds,
    compute_recheck_delay_seconds,
    compute_retry_at,
    should_retry,
)
from config import QueueConfig, VerificationConfig


def test_should_retry_respects_max_attempts() -> None:
    """Ensure retry allowance honors max attempts."""
    assert should_retry(1, 3) is True
    assert should_retry(2, 3) is True
    assert should_retry(3, 3) is False


def test_compute_backoff_delay_exponential() -> None:
    """Ensure exponential backoff doubles with each attempt."""
    delays = [compute_backoff_delay_seconds("exponential", attempt, 2) for attempt in (1, 2, 3)]
    assert delays == [2, 4, 8]


def test_compute_backoff_delay_fixed_and_none() -> None:
    """Ensure fixed backoff returns the base and none returns zero."""
    assert compute_backoff_delay_seconds("fixed", 3, 60) == 60
    assert compute_backoff_delay_seconds("none", 1, 60) == 0


def test_compute_backoff_rejects_invalid_inputs() -> None:
    """Ensure invalid backoff inputs raise."""
    with pytest.raises(ValueError):
        compute_backoff_delay_seconds("linear", 1, 1)
    with pytest.raises(ValueError):
        compute_backoff_delay_seconds("fixed", 0, 1)


def test_compute_retry_at_applies_delay() -> None:
    """Ensure retry timestamp includes the computed delay."""
    failed_at = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)
    retry_at = compute_retry_at(
        failed_at,
        2,
        backoff_strategy="exponential",
        backoff_base_seconds=2,
    )
    assert retry_at == failed_at + timedelta(seconds=4)


def test_retry_policy_from_config_validates() -> None:
    """Ensure queue settings map onto the retry policy."""
    policy = RetryPolicy.from_config(QueueConfig(max_attempts=4, backoff_base_seconds=1.5))
    assert policy.max_attempts == 4
    assert policy.backoff_strategy == "exponential"
    assert policy.backoff_base_seconds == 1.5


def test_recheck_schedule_is_monotonic_and_capped() -> None:
    """Ensure recheck delays never shrink and stay at the last step."""
    schedule = RecheckSchedule.from_config(VerificationConfig())
    delays = [schedule.delay_for(attempt) for attempt in range(1, 7)]

    assert delays[:3] == [timedelta(minutes=5), timedelta(hours=1), timedelta(days=1)]
    assert delays[3:] == [timedelta(days=1)] * 3
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))


def test_recheck_schedule_exhaustion_is_after_max_attempts() -> None:
    """Ensure the budget is spent only after more than max attempts."""
    schedule = RecheckSchedule(steps_seconds=(300,), max_attempts=5)
    assert schedule.is_exhausted(5) is False
    assert schedule.is_exhausted(6) is True


def test_compute_recheck_delay_rejects_bad_attempts() -> None:
    """Ensure attempt numbers are 1-based."""
    with pytest.raises(ValueError):
        compute_recheck_delay_seconds([300], 0)
