"""Verification engine: independent rechecks of completed actions.

Each completed run gets one verification record. A check claims the record
with a short lease, runs the probe outside any transaction, then records the
outcome: ``verified`` when the probe confirms the effect, otherwise
``needs_recheck`` with the next check pushed out along the recheck schedule.
Once the attempt budget is exceeded the record becomes terminal ``failed``.
"""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import time
from typing import Any, Callable

from sqlalchemy import func, or_, update
from sqlalchemy.orm import Session

from agent.errors import InvalidStateError, NotFoundError, VerificationProbeError
from agent.event_log import EventCreateInput, record_event
from agent.payloads import parse_payload
from agent.policy import load_policy
from agent.probes import CheckDetail, ProbeContext, ProbeRegistry, ProbeResult
from agent.retry_policy import RecheckSchedule
from config import VerificationConfig
from models import AgentAction, AgentEvent, AgentRun, AgentVerification
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

OPEN_VERIFICATION_STATUSES = ("pending", "needs_recheck")
TERMINAL_VERIFICATION_STATUSES = frozenset({"verified", "failed"})


@dataclass
class SweepReport:
    """Summary of one verification sweep."""

    total_checked: int = 0
    verified: int = 0
    rechecks: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_checked": self.total_checked,
            "verified": self.verified,
            "rechecks": self.rechecks,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class PendingSummary:
    """Counts of open verification records."""

    due_for_check: int
    pending: int
    needs_recheck: int


class VerificationEngine:
    """Schedule, run and sweep verification checks."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        probes: ProbeRegistry,
        *,
        config: VerificationConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
        worker_id: str = "verifier",
    ) -> None:
        """Initialize the engine with persistence, probes and recheck settings."""
        self._session_factory = session_factory
        self._probes = probes
        self._config = config or VerificationConfig()
        self._schedule = RecheckSchedule.from_config(self._config)
        self._clock = clock
        self._sleep = sleep
        self._worker_id = worker_id

    @property
    def config(self) -> VerificationConfig:
        return self._config

    def schedule_verification(
        self,
        action_id: str,
        run_id: str,
        *,
        due_at: datetime | None = None,
    ) -> AgentVerification:
        """Create the pending record for a run; repeated calls return the same record."""

        def handler(session: Session) -> AgentVerification:
            action = session.get(AgentAction, action_id)
            if action is None:
                raise NotFoundError("action", action_id)
            _fetch_run_for_action(session, action_id, run_id)
            existing = _find_verification(session, action_id, run_id)
            if existing is not None:
                return existing
            return self._create_record(session, action, run_id, due_at=due_at)

        record = self._execute(handler)
        logger.info(
            "Verification scheduled: action_id=%s run_id=%s next_check_at=%s",
            action_id,
            run_id,
            record.next_check_at,
        )
        return record

    def verify_action(
        self,
        action_id: str,
        run_id: str,
        *,
        owner: str | None = None,
    ) -> AgentVerification:
        """Run one verification check now and record its outcome."""
        claimed = self._execute(lambda session: self._claim(session, action_id, run_id, owner))
        if isinstance(claimed, AgentVerification):
            return claimed
        verification_id, context = claimed

        try:
            result = self._run_probe(context)
        except Exception:
            self._execute(lambda session: _release_claim(session, verification_id))
            raise

        record = self._execute(
            lambda session: self._record_outcome(session, verification_id, result)
        )
        logger.info(
            "Verification checked: action_id=%s run_id=%s status=%s attempts=%s",
            action_id,
            run_id,
            record.status,
            record.verification_attempts,
        )
        return record

    def get_verification(
        self,
        action_id: str,
        run_id: str,
        *,
        owner: str | None = None,
    ) -> AgentVerification:
        """Return the verification record for an action run."""

        def handler(session: Session) -> AgentVerification:
            record = _find_verification(session, action_id, run_id)
            if record is None or (owner is not None and record.owner != owner):
                raise NotFoundError("verification", f"{action_id}/{run_id}")
            return record

        return self._execute(handler)

    def list_due(
        self,
        *,
        owner: str | None = None,
        site_url: str | None = None,
        force: bool = False,
        limit: int | None = None,
    ) -> list[AgentVerification]:
        """Return open records whose next check is due, earliest first.

        With ``force`` every open record is returned regardless of its due time.
        """

        def handler(session: Session) -> list[AgentVerification]:
            query = _open_query(session, owner=owner, site_url=site_url)
            if not force:
                query = query.filter(AgentVerification.next_check_at <= self._now())
            query = query.order_by(
                AgentVerification.next_check_at.asc(),
                AgentVerification.created_at.asc(),
            )
            if limit is not None:
                query = query.limit(limit)
            return list(query.all())

        return self._execute(handler)

    def sweep(
        self,
        *,
        owner: str | None = None,
        site_url: str | None = None,
        force: bool = False,
        limit: int | None = None,
    ) -> SweepReport:
        """Check every due record, isolating per-item failures."""
        due = self.list_due(owner=owner, site_url=site_url, force=force, limit=limit)
        titles = self._action_titles([record.action_id for record in due])
        report = SweepReport()
        for index, record in enumerate(due):
            if index > 0 and self._config.sweep_delay_seconds > 0:
                self._sleep(self._config.sweep_delay_seconds)
            try:
                result = self.verify_action(record.action_id, record.run_id)
            except InvalidStateError as exc:
                report.skipped += 1
                logger.info(
                    "Verification skipped: action_id=%s reason=%s",
                    record.action_id,
                    exc,
                )
                continue
            except Exception as exc:
                title = titles.get(record.action_id, record.action_id)
                report.errors.append(f'Failed to verify "{title}": {exc}')
                logger.exception("Verification sweep item failed: action_id=%s", record.action_id)
                continue
            report.total_checked += 1
            if result.status == "verified":
                report.verified += 1
            elif result.status == "failed":
                report.failed += 1
            else:
                report.rechecks += 1
        logger.info(
            "Verification sweep finished: checked=%s verified=%s rechecks=%s failed=%s errors=%s",
            report.total_checked,
            report.verified,
            report.rechecks,
            report.failed,
            len(report.errors),
        )
        return report

    def verification_history(self, owner: str, *, limit: int = 10) -> list[AgentEvent]:
        """Return the newest verification_completed events for an owner."""

        def handler(session: Session) -> list[AgentEvent]:
            return list(
                session.query(AgentEvent)
                .filter(AgentEvent.owner == owner)
                .filter(AgentEvent.event_type == "verification_completed")
                .order_by(AgentEvent.id.desc())
                .limit(limit)
                .all()
            )

        return self._execute(handler)

    def pending_summary(
        self,
        *,
        owner: str | None = None,
        site_url: str | None = None,
    ) -> PendingSummary:
        """Count open records and how many of them are due now."""

        def handler(session: Session) -> PendingSummary:
            query = session.query(AgentVerification.status, func.count(AgentVerification.id))
            query = query.filter(AgentVerification.status.in_(OPEN_VERIFICATION_STATUSES))
            if owner is not None:
                query = query.filter(AgentVerification.owner == owner)
            if site_url is not None:
                query = query.filter(AgentVerification.site_url == site_url)
            counts = dict(query.group_by(AgentVerification.status).all())
            due = (
                _open_query(session, owner=owner, site_url=site_url)
                .filter(AgentVerification.next_check_at <= self._now())
                .count()
            )
            return PendingSummary(
                due_for_check=int(due),
                pending=int(counts.get("pending", 0)),
                needs_recheck=int(counts.get("needs_recheck", 0)),
            )

        return self._execute(handler)

    def _claim(
        self,
        session: Session,
        action_id: str,
        run_id: str,
        owner: str | None,
    ) -> AgentVerification | tuple[str, ProbeContext]:
        action = session.get(AgentAction, action_id)
        if action is None or (owner is not None and action.owner != owner):
            raise NotFoundError("action", action_id)
        run = _fetch_run_for_action(session, action_id, run_id)
        if action.status != "completed":
            raise InvalidStateError(
                "action", action.status, "verified", "verification requires a completed action"
            )
        record = _find_verification(session, action_id, run_id)
        if record is None:
            record = self._create_record(session, action, run_id)
        if record.status in TERMINAL_VERIFICATION_STATUSES:
            return record

        now = self._now()
        result = session.execute(
            update(AgentVerification)
            .where(AgentVerification.id == record.id)
            .where(
                or_(
                    AgentVerification.claimed_until.is_(None),
                    AgentVerification.claimed_until <= now,
                )
            )
            .values(
                claimed_until=now + timedelta(seconds=self._config.claim_lease_seconds),
                claimed_by=self._worker_id,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                "verification", record.status, record.status, "verification already in progress"
            )

        policy = load_policy(action.policy, action.action_type)
        context = ProbeContext(
            action_id=action.id,
            owner=action.owner,
            site_url=action.site_url,
            action_type=action.action_type,
            title=action.title,
            payload=parse_payload(action.action_type, action.payload),
            policy=policy,
            run_id=run.id,
            run_status=run.status,
            run_outcome=dict(run.outcome) if run.outcome is not None else None,
            attempt=record.verification_attempts + 1,
            timeout_seconds=self._config.probe_timeout_seconds,
        )
        return record.id, context

    def _run_probe(self, context: ProbeContext) -> ProbeResult:
        probe = self._probes.resolve(context.action_type, context.policy)
        try:
            return probe.probe(context)
        except VerificationProbeError as exc:
            logger.warning(
                "Verification probe could not observe effect: action_id=%s error=%s",
                context.action_id,
                exc,
            )
            return ProbeResult(
                confirmed=False,
                checks=(
                    CheckDetail(
                        check_type="probe_error",
                        target_url=context.site_url,
                        passed=False,
                        error=str(exc),
                    ),
                ),
                summary=str(exc),
            )

    def _record_outcome(
        self,
        session: Session,
        verification_id: str,
        result: ProbeResult,
    ) -> AgentVerification:
        record = session.get(AgentVerification, verification_id)
        if record is None:
            raise NotFoundError("verification", verification_id)
        action = session.get(AgentAction, record.action_id)
        now = self._now()
        previous = record.status
        attempts = record.verification_attempts + 1
        record.verification_attempts = attempts
        record.last_checked_at = now
        record.checks = [check.to_dict() for check in result.checks]
        record.summary = result.summary or None
        record.claimed_until = None
        record.claimed_by = None
        record.updated_at = now
        if result.confirmed:
            record.status = "verified"
            record.next_check_at = None
            record.completed_at = now
        elif attempts > record.max_attempts:
            record.status = "failed"
            record.next_check_at = None
            record.completed_at = now
        else:
            record.status = "needs_recheck"
            record.next_check_at = now + self._schedule.delay_for(attempts)
        if action is not None:
            action.verification_status = record.status
            action.updated_at = now
        record_event(
            session,
            EventCreateInput(
                event_type="verification_completed",
                entity_type="verification",
                entity_id=record.id,
                owner=record.owner,
                previous_state=previous,
                new_state=record.status,
                triggered_by="system",
                event_data={
                    "action_id": record.action_id,
                    "run_id": record.run_id,
                    "attempt": attempts,
                    "confirmed": result.confirmed,
                    "summary": result.summary,
                    "checks": record.checks,
                    "next_check_at": record.next_check_at.isoformat()
                    if record.next_check_at
                    else None,
                },
            ),
            now=now,
        )
        return record

    def _create_record(
        self,
        session: Session,
        action: AgentAction,
        run_id: str,
        *,
        due_at: datetime | None = None,
    ) -> AgentVerification:
        now = self._now()
        record = AgentVerification(
            action_id=action.id,
            run_id=run_id,
            owner=action.owner,
            site_url=action.site_url,
            status="pending",
            checks=[],
            verification_attempts=0,
            max_attempts=self._schedule.max_attempts,
            next_check_at=ensure_utc(due_at) or now,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        session.flush()
        action.verification_status = "pending"
        record_event(
            session,
            EventCreateInput(
                event_type="verification_scheduled",
                entity_type="verification",
                entity_id=record.id,
                owner=action.owner,
                new_state="pending",
                triggered_by="system",
                event_data={"action_id": action.id, "run_id": run_id},
            ),
            now=now,
        )
        return record

    def _action_titles(self, action_ids: list[str]) -> dict[str, str]:
        if not action_ids:
            return {}

        def handler(session: Session) -> dict[str, str]:
            rows = (
                session.query(AgentAction.id, AgentAction.title)
                .filter(AgentAction.id.in_(action_ids))
                .all()
            )
            return {action_id: title for action_id, title in rows}

        return self._execute(handler)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _execute(self, handler):
        """Execute verification work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def _find_verification(session: Session, action_id: str, run_id: str) -> AgentVerification | None:
    return (
        session.query(AgentVerification)
        .filter(AgentVerification.action_id == action_id)
        .filter(AgentVerification.run_id == run_id)
        .one_or_none()
    )


def _fetch_run_for_action(session: Session, action_id: str, run_id: str) -> AgentRun:
    run = session.get(AgentRun, run_id)
    if run is None or run.action_id != action_id:
        raise NotFoundError("run", run_id)
    return run


def _open_query(session: Session, *, owner: str | None, site_url: str | None):
    query = session.query(AgentVerification).filter(
        AgentVerification.status.in_(OPEN_VERIFICATION_STATUSES)
    )
    if owner is not None:
        query = query.filter(AgentVerification.owner == owner)
    if site_url is not None:
        query = query.filter(AgentVerification.site_url == site_url)
    return query


def _release_claim(session: Session, verification_id: str) -> None:
    session.execute(
        update(AgentVerification)
        .where(AgentVerification.id == verification_id)
        .values(claimed_until=None, claimed_by=None)
        .execution_options(synchronize_session=False)
    )
