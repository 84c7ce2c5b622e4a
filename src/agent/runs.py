"""Run records: one row per execution attempt of an action."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime
import hashlib
from typing import Any, Callable, Mapping

from sqlalchemy.orm import Session

from agent.errors import InvalidStateError, NotFoundError
from agent.event_log import EventCreateInput, record_event
from models import AgentRun
from time_utils import ensure_utc, utc_now


def build_run_key(action_id: str, attempt_generation: int, attempt: int) -> str:
    """Return the idempotency key for one delivery of an action generation."""
    raw = f"{action_id}:{int(attempt_generation)}:{int(attempt)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class RunStore:
    """Repository for run rows."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the store with a SQLAlchemy session factory."""
        self._session_factory = session_factory
        self._clock = clock

    def start_run(
        self,
        action_id: str,
        *,
        owner: str,
        job_id: str | None,
        attempt_generation: int,
        attempt: int,
    ) -> AgentRun:
        """Insert a running row; the partial unique index rejects a second active run."""

        def handler(session: Session) -> AgentRun:
            now = self._now()
            run = AgentRun(
                action_id=action_id,
                job_id=job_id,
                attempt=int(attempt),
                idempotency_key=build_run_key(action_id, attempt_generation, attempt),
                status="running",
                started_at=now,
            )
            session.add(run)
            session.flush()
            record_event(
                session,
                EventCreateInput(
                    event_type="run_started",
                    entity_type="run",
                    entity_id=run.id,
                    owner=owner,
                    new_state="running",
                    triggered_by="worker",
                    event_data={"action_id": action_id, "job_id": job_id, "attempt": attempt},
                ),
                now=now,
            )
            return run

        return self._execute(handler)

    def finish_run(
        self,
        run_id: str,
        *,
        owner: str,
        succeeded: bool,
        outcome: Mapping[str, Any] | None = None,
        error: str | None = None,
    ) -> AgentRun:
        """Close a run with its outcome or error; a run closes only once."""

        def handler(session: Session) -> AgentRun:
            run = session.get(AgentRun, run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            if run.finished_at is not None:
                target = "succeeded" if succeeded else "failed"
                raise InvalidStateError("run", run.status, target, "run already finished")
            now = self._now()
            run.status = "succeeded" if succeeded else "failed"
            run.finished_at = now
            run.duration_ms = int((now - ensure_utc(run.started_at)).total_seconds() * 1000)
            run.outcome = dict(outcome) if outcome is not None else None
            run.error = error
            record_event(
                session,
                EventCreateInput(
                    event_type="run_succeeded" if succeeded else "run_failed",
                    entity_type="run",
                    entity_id=run.id,
                    owner=owner,
                    previous_state="running",
                    new_state=run.status,
                    triggered_by="worker",
                    event_data={
                        "action_id": run.action_id,
                        "duration_ms": run.duration_ms,
                        "error": error,
                    },
                ),
                now=now,
            )
            return run

        return self._execute(handler)

    def get_run(self, run_id: str) -> AgentRun:
        """Return a run by id."""

        def handler(session: Session) -> AgentRun:
            run = session.get(AgentRun, run_id)
            if run is None:
                raise NotFoundError("run", run_id)
            return run

        return self._execute(handler)

    def active_run_for_job(self, job_id: str) -> AgentRun | None:
        """Return the unfinished run started for a job, if any."""

        def handler(session: Session) -> AgentRun | None:
            return (
                session.query(AgentRun)
                .filter(AgentRun.job_id == job_id)
                .filter(AgentRun.finished_at.is_(None))
                .one_or_none()
            )

        return self._execute(handler)

    def list_for_action(self, action_id: str) -> list[AgentRun]:
        """Return every run of an action, oldest first."""

        def handler(session: Session) -> list[AgentRun]:
            return list(
                session.query(AgentRun)
                .filter(AgentRun.action_id == action_id)
                .order_by(AgentRun.started_at.asc(), AgentRun.attempt.asc())
                .all()
            )

        return self._execute(handler)

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _execute(self, handler):
        """Execute repository work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result
