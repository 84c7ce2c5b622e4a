"""Retry and backoff helpers for queued jobs and verification rechecks."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Sequence

from config import QueueConfig, VerificationConfig

BACKOFF_STRATEGIES = frozenset({"none", "fixed", "exponential"})


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for queued jobs."""

    max_attempts: int
    backoff_strategy: str
    backoff_base_seconds: float

    @staticmethod
    def from_config(config: QueueConfig) -> "RetryPolicy":
        """Build a retry policy from queue settings."""
        policy = RetryPolicy(
            max_attempts=int(config.max_attempts),
            backoff_strategy=str(config.backoff_strategy),
            backoff_base_seconds=float(config.backoff_base_seconds),
        )
        _validate_policy(policy)
        return policy


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Return whether another retry attempt is permitted."""
    return int(attempt_count) < int(max_attempts)


def compute_retry_at(
    failed_at: datetime,
    retry_count: int,
    *,
    backoff_strategy: str,
    backoff_base_seconds: float,
) -> datetime:
    """Compute the next retry timestamp from policy inputs."""
    delay_seconds = compute_backoff_delay_seconds(
        backoff_strategy,
        retry_count,
        backoff_base_seconds,
    )
    return failed_at + timedelta(seconds=delay_seconds)


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    retry_count: int,
    backoff_base_seconds: float,
) -> float:
    """Compute a retry delay in seconds for a given backoff strategy."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    if backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if backoff_strategy == "none":
        return 0.0
    if backoff_strategy == "fixed":
        return float(backoff_base_seconds)
    return float(backoff_base_seconds) * (2 ** (retry_count - 1))


@dataclass(frozen=True)
class RecheckSchedule:
    """Verification recheck delays indexed by attempt number."""

    steps_seconds: tuple[int, ...]
    max_attempts: int

    @staticmethod
    def from_config(config: VerificationConfig) -> "RecheckSchedule":
        """Build the recheck schedule from verification settings."""
        return RecheckSchedule(
            steps_seconds=tuple(int(step) for step in config.recheck_schedule_seconds),
            max_attempts=int(config.max_attempts),
        )

    def delay_for(self, attempt: int) -> timedelta:
        """Return the delay after the given attempt, capped at the last step."""
        return timedelta(seconds=compute_recheck_delay_seconds(self.steps_seconds, attempt))

    def is_exhausted(self, attempts: int) -> bool:
        """Return whether the attempt budget has been used up."""
        return int(attempts) > self.max_attempts


def compute_recheck_delay_seconds(steps_seconds: Sequence[int], attempt: int) -> int:
    """Return the recheck delay for a 1-based attempt number."""
    if attempt <= 0:
        raise ValueError("attempt must be >= 1.")
    if not steps_seconds:
        raise ValueError("steps_seconds must not be empty.")
    index = min(attempt, len(steps_seconds)) - 1
    return int(steps_seconds[index])


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if policy.backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if policy.backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
