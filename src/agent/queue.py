"""Database-backed execution queue with priorities, delays and retries.

Jobs live in ``agent_jobs``. A job is created once per queue generation of an
action; its idempotency key makes enqueue safe to repeat. Workers claim the
highest-priority visible job with a compare-and-set on its status, hold a
lease while executing, and report completion or failure. Failures are retried
with backoff until the attempt budget is spent, after which the job moves to
the dead lane.
"""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import hashlib
import logging
import math
from typing import Any, Callable, Mapping

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from agent.errors import QueueSubmissionError
from agent.event_log import EventCreateInput, record_event
from agent.policy import load_policy
from agent.retry_policy import RetryPolicy, compute_retry_at, should_retry
from config import QueueConfig
from models import JOB_STATUSES, AgentJob, JobSequence
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

QueueNotifier = Callable[[str, datetime], None]
_CLAIM_ATTEMPTS = 5
_FINISHED_STATUSES = ("completed", "dead", "discarded")


def build_idempotency_key(action_id: str, attempt_generation: int) -> str:
    """Return the deterministic job key for an action generation."""
    raw = f"{action_id}:{int(attempt_generation)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ClaimedJob:
    """Job claimed by a worker, carrying everything needed to execute it."""

    job_id: str
    action_id: str
    owner: str
    action_type: str
    idempotency_key: str
    attempt_generation: int
    attempt: int
    max_attempts: int
    policy: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    lease_expires_at: datetime | None = None


@dataclass(frozen=True)
class FailureDecision:
    """Outcome of reporting a failed attempt to the queue."""

    job_id: str
    retry_at: datetime | None
    dead: bool
    attempts_made: int
    max_attempts: int

    @property
    def will_retry(self) -> bool:
        return not self.dead


class QueueManager:
    """Priority/delay job queue stored in the relational database."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        config: QueueConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        notifier: QueueNotifier | None = None,
        engine: Engine | None = None,
    ) -> None:
        """Initialize the queue with persistence, retry config and an optional notifier.

        When ``engine`` is provided the queue owns it and disposes it on close.
        """
        self._session_factory = session_factory
        self._config = config or QueueConfig()
        self._retry_policy = RetryPolicy.from_config(self._config)
        self._clock = clock
        self._notifier = notifier
        self._engine = engine
        self._closed = False

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue(
        self,
        action_id: str,
        owner: str,
        action_type: str,
        payload: Mapping[str, Any] | None,
        policy: Mapping[str, Any] | None,
        *,
        priority: int | None = None,
        delay_seconds: float = 0.0,
        attempt_generation: int = 1,
        max_attempts: int | None = None,
        triggered_by: str = "system",
    ) -> str:
        """Enqueue one generation of an action and return its job id.

        Repeating the call for the same action and generation returns the
        existing job id without creating a second job.
        """
        self._ensure_open()
        key = build_idempotency_key(action_id, attempt_generation)
        resolved_priority = self._config.default_priority if priority is None else int(priority)
        if not 0 <= resolved_priority <= 100:
            raise QueueSubmissionError("priority must be between 0 and 100.")
        if delay_seconds < 0:
            raise QueueSubmissionError("delay_seconds must be >= 0.")
        attempts = int(max_attempts or self._retry_policy.max_attempts)

        def handler(session: Session) -> tuple[str, bool, datetime]:
            existing = _find_by_key(session, key)
            if existing is not None:
                return existing.id, False, existing.available_at
            now = self._now()
            available_at = now + timedelta(seconds=delay_seconds)
            counter = JobSequence()
            session.add(counter)
            session.flush()
            job = AgentJob(
                sequence=counter.id,
                action_id=action_id,
                owner=owner,
                idempotency_key=key,
                attempt_generation=int(attempt_generation),
                priority=resolved_priority,
                status="waiting",
                available_at=available_at,
                enqueued_at=now,
                attempts_made=0,
                max_attempts=attempts,
                data={
                    "actionId": action_id,
                    "owner": owner,
                    "actionType": action_type,
                    "idempotencyKey": key,
                    "policy": dict(policy or {}),
                    "payload": dict(payload or {}),
                },
            )
            session.add(job)
            session.flush()
            record_event(
                session,
                EventCreateInput(
                    event_type="job_enqueued",
                    entity_type="job",
                    entity_id=job.id,
                    owner=owner,
                    new_state="waiting",
                    triggered_by=triggered_by,
                    event_data={
                        "action_id": action_id,
                        "priority": resolved_priority,
                        "attempt_generation": int(attempt_generation),
                        "available_at": available_at.isoformat(),
                    },
                ),
                now=now,
            )
            return job.id, True, available_at

        try:
            job_id, created, available_at = self._execute(handler)
        except IntegrityError:
            # Lost an insert race on the idempotency key.
            existing_id = self._execute(lambda session: _job_id_for_key(session, key))
            if existing_id is None:
                raise QueueSubmissionError(f"Failed to enqueue action {action_id}")
            return existing_id
        except SQLAlchemyError as exc:
            raise QueueSubmissionError(f"Failed to enqueue action {action_id}: {exc}") from exc

        if created:
            logger.info(
                "Job enqueued: job_id=%s action_id=%s priority=%s delay_seconds=%s",
                job_id,
                action_id,
                resolved_priority,
                delay_seconds,
            )
            self._notify(job_id, available_at)
        else:
            logger.info("Duplicate enqueue ignored: job_id=%s action_id=%s", job_id, action_id)
        return job_id

    def dequeue(self, worker_id: str) -> ClaimedJob | None:
        """Claim the next visible job, or return None when nothing is due."""
        self._ensure_open()

        def handler(session: Session) -> ClaimedJob | None:
            for _ in range(_CLAIM_ATTEMPTS):
                now = self._now()
                candidate = (
                    session.query(AgentJob)
                    .filter(AgentJob.status == "waiting")
                    .filter(AgentJob.available_at <= now)
                    .order_by(
                        AgentJob.priority.desc(),
                        AgentJob.available_at.asc(),
                        AgentJob.sequence.asc(),
                    )
                    .first()
                )
                if candidate is None:
                    return None
                result = session.execute(
                    update(AgentJob)
                    .where(AgentJob.id == candidate.id)
                    .where(AgentJob.status == "waiting")
                    .values(
                        status="active",
                        attempts_made=AgentJob.attempts_made + 1,
                        claimed_by=worker_id,
                        lease_expires_at=now + self._lease_for(candidate),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    session.refresh(candidate)
                    return _to_claimed(candidate)
                session.expire(candidate)
            return None

        try:
            return self._execute(handler)
        except SQLAlchemyError as exc:
            raise QueueSubmissionError(f"Failed to claim job: {exc}") from exc

    def complete(self, job_id: str) -> None:
        """Mark an active job as completed."""
        self._finish(job_id, "completed", error=None)

    def discard(self, job_id: str, reason: str, *, claimed_by: str | None = None) -> bool:
        """Retire a job without retrying it (lost claim race).

        With ``claimed_by`` the job is only retired while that worker still
        holds it; a job already recovered and handed to someone else is left
        alone. Returns whether the job was retired.
        """
        return self._finish(job_id, "discarded", error=reason, claimed_by=claimed_by)

    def fail(self, job_id: str, error: str, *, retryable: bool = True) -> FailureDecision:
        """Record a failed attempt and decide between retry and the dead lane."""
        self._ensure_open()

        def handler(session: Session) -> FailureDecision:
            job = _fetch_job(session, job_id)
            now = self._now()
            job.last_error = error
            job.claimed_by = None
            job.lease_expires_at = None
            if retryable and should_retry(job.attempts_made, job.max_attempts):
                retry_at = compute_retry_at(
                    now,
                    job.attempts_made,
                    backoff_strategy=self._retry_policy.backoff_strategy,
                    backoff_base_seconds=self._retry_policy.backoff_base_seconds,
                )
                job.status = "waiting"
                job.available_at = retry_at
                new_state = "waiting"
            else:
                retry_at = None
                job.status = "dead"
                job.finished_at = now
                new_state = "dead"
            record_event(
                session,
                EventCreateInput(
                    event_type="job_retry_scheduled" if retry_at else "job_dead_lettered",
                    entity_type="job",
                    entity_id=job.id,
                    owner=job.owner,
                    previous_state="active",
                    new_state=new_state,
                    triggered_by="worker",
                    event_data={
                        "action_id": job.action_id,
                        "attempts_made": job.attempts_made,
                        "max_attempts": job.max_attempts,
                        "retryable": retryable,
                        "retry_at": retry_at.isoformat() if retry_at else None,
                        "error": error,
                    },
                ),
                now=now,
            )
            return FailureDecision(
                job_id=job.id,
                retry_at=retry_at,
                dead=retry_at is None,
                attempts_made=job.attempts_made,
                max_attempts=job.max_attempts,
            )

        decision = self._execute(handler)
        if decision.dead:
            logger.warning(
                "Job moved to dead lane: job_id=%s attempts=%s error=%s",
                job_id,
                decision.attempts_made,
                error,
            )
        else:
            logger.info(
                "Job retry scheduled: job_id=%s attempts=%s retry_at=%s",
                job_id,
                decision.attempts_made,
                decision.retry_at,
            )
            self._notify(job_id, decision.retry_at)
        return decision

    def get_job(self, job_id: str) -> AgentJob:
        """Return a job by id."""
        return self._execute(lambda session: _fetch_job(session, job_id))

    def list_expired_leases(self) -> list[ClaimedJob]:
        """Return active jobs whose worker lease has lapsed."""

        def handler(session: Session) -> list[ClaimedJob]:
            now = self._now()
            jobs = (
                session.query(AgentJob)
                .filter(AgentJob.status == "active")
                .filter(AgentJob.lease_expires_at <= now)
                .order_by(AgentJob.lease_expires_at.asc())
                .all()
            )
            return [_to_claimed(job) for job in jobs]

        return self._execute(handler)

    def stats(self) -> dict[str, int]:
        """Return job counts by status plus waiting jobs not yet visible."""

        def handler(session: Session) -> dict[str, int]:
            counts = {status: 0 for status in JOB_STATUSES}
            rows = session.query(AgentJob.status, func.count(AgentJob.id)).group_by(AgentJob.status)
            for status, count in rows:
                counts[status] = int(count)
            counts["delayed"] = int(
                session.query(func.count(AgentJob.id))
                .filter(AgentJob.status == "waiting")
                .filter(AgentJob.available_at > self._now())
                .scalar()
                or 0
            )
            return counts

        return self._execute(handler)

    def clean(self, older_than: timedelta | None = None) -> int:
        """Delete finished jobs older than the retention window."""
        window = older_than or timedelta(seconds=self._config.retention_seconds)

        def handler(session: Session) -> int:
            cutoff = self._now() - window
            deleted = (
                session.query(AgentJob)
                .filter(AgentJob.status.in_(_FINISHED_STATUSES))
                .filter(AgentJob.finished_at < cutoff)
                .delete(synchronize_session=False)
            )
            return int(deleted or 0)

        return self._execute(handler)

    def close(self) -> None:
        """Release the underlying engine; safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        if self._engine is not None:
            self._engine.dispose()
        logger.info("Queue manager closed")

    def __enter__(self) -> "QueueManager":
        return self

    def __exit__(self, *_exc: object) -> None:
        self.close()

    def _finish(
        self,
        job_id: str,
        status: str,
        *,
        error: str | None,
        claimed_by: str | None = None,
    ) -> bool:
        self._ensure_open()

        def handler(session: Session) -> bool:
            job = _fetch_job(session, job_id)
            previous = job.status
            if claimed_by is not None and (previous != "active" or job.claimed_by != claimed_by):
                return False
            now = self._now()
            job.status = status
            job.finished_at = now
            job.claimed_by = None
            job.lease_expires_at = None
            if error is not None:
                job.last_error = error
            record_event(
                session,
                EventCreateInput(
                    event_type=f"job_{status}",
                    entity_type="job",
                    entity_id=job.id,
                    owner=job.owner,
                    previous_state=previous,
                    new_state=status,
                    triggered_by="worker",
                    event_data={"action_id": job.action_id, "reason": error},
                ),
                now=now,
            )
            return True

        return self._execute(handler)

    def _lease_for(self, job: AgentJob) -> timedelta:
        """Return a lease that outlives the job's handler time budget."""
        data = job.data or {}
        policy = load_policy(data.get("policy"), str(data.get("actionType", "")))
        budget = math.ceil(policy.timeout_seconds) + self._config.lease_margin_seconds
        return timedelta(seconds=max(self._config.lease_seconds, budget))

    def _notify(self, job_id: str, available_at: datetime | None) -> None:
        if self._notifier is None or available_at is None:
            return
        try:
            self._notifier(job_id, available_at)
        except Exception:
            logger.exception("Queue notifier failed: job_id=%s", job_id)

    def _ensure_open(self) -> None:
        if self._closed:
            raise QueueSubmissionError("Queue manager is closed.")

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _execute(self, handler):
        """Execute queue work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _find_by_key(session: Session, key: str) -> AgentJob | None:
    return session.query(AgentJob).filter(AgentJob.idempotency_key == key).one_or_none()


def _job_id_for_key(session: Session, key: str) -> str | None:
    job = _find_by_key(session, key)
    return job.id if job is not None else None


def _fetch_job(session: Session, job_id: str) -> AgentJob:
    job = session.get(AgentJob, job_id)
    if job is None:
        raise QueueSubmissionError(f"Job not found: {job_id}")
    return job


def _to_claimed(job: AgentJob) -> ClaimedJob:
    data = dict(job.data or {})
    return ClaimedJob(
        job_id=job.id,
        action_id=job.action_id,
        owner=job.owner,
        action_type=str(data.get("actionType", "")),
        idempotency_key=job.idempotency_key,
        attempt_generation=job.attempt_generation,
        attempt=job.attempts_made,
        max_attempts=job.max_attempts,
        policy=dict(data.get("policy") or {}),
        payload=dict(data.get("payload") or {}),
        lease_expires_at=ensure_utc(job.lease_expires_at),
    )
