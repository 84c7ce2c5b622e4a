"""Append-only audit log of idea, action, run, job and verification transitions."""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping

from sqlalchemy.orm import Session

from models import AgentEvent
from time_utils import ensure_utc, utc_now

ENTITY_TYPES = frozenset({"idea", "action", "run", "job", "verification"})


@dataclass(frozen=True)
class EventCreateInput:
    """Input payload for appending an audit event."""

    event_type: str
    entity_type: str
    entity_id: str
    owner: str | None = None
    previous_state: str | None = None
    new_state: str | None = None
    triggered_by: str = "system"
    event_data: Mapping[str, object] | None = None
    metadata: Mapping[str, object] | None = None
    occurred_at: datetime | None = None


class EventLog:
    """Repository for the append-only agent event log.

    Events are only ever inserted. Callers that mutate state record the event
    inside their own session with ``record_event`` so the state change and its
    audit row commit together.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        """Initialize the log with a SQLAlchemy session factory."""
        self._session_factory = session_factory

    def record(self, payload: EventCreateInput, *, now: datetime | None = None) -> AgentEvent:
        """Append and persist a single event."""

        def handler(session: Session) -> AgentEvent:
            return record_event(session, payload, now=now)

        return self._execute(handler)

    def list_for_entity(
        self,
        entity_type: str,
        entity_id: str,
        *,
        limit: int | None = None,
    ) -> list[AgentEvent]:
        """Return the history of one entity in append order."""

        def handler(session: Session) -> list[AgentEvent]:
            query = (
                session.query(AgentEvent)
                .filter(AgentEvent.entity_type == entity_type)
                .filter(AgentEvent.entity_id == entity_id)
                .order_by(AgentEvent.id.asc())
            )
            if limit is not None:
                query = query.limit(limit)
            return list(query.all())

        return self._execute(handler)

    def list_recent(
        self,
        owner: str,
        *,
        event_type: str | None = None,
        limit: int = 10,
    ) -> list[AgentEvent]:
        """Return the newest events for an owner, optionally filtered by type."""

        def handler(session: Session) -> list[AgentEvent]:
            query = session.query(AgentEvent).filter(AgentEvent.owner == owner)
            if event_type is not None:
                query = query.filter(AgentEvent.event_type == event_type)
            return list(query.order_by(AgentEvent.id.desc()).limit(limit).all())

        return self._execute(handler)

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


def record_event(
    session: Session,
    payload: EventCreateInput,
    *,
    now: datetime | None = None,
) -> AgentEvent:
    """Append an event using an existing session."""
    if payload.entity_type not in ENTITY_TYPES:
        raise ValueError(f"Unsupported event entity type: {payload.entity_type}")
    occurred_at = ensure_utc(payload.occurred_at or now or utc_now())
    event = AgentEvent(
        owner=payload.owner,
        event_type=payload.event_type,
        entity_type=payload.entity_type,
        entity_id=str(payload.entity_id),
        previous_state=payload.previous_state,
        new_state=payload.new_state,
        triggered_by=payload.triggered_by,
        event_data=dict(payload.event_data) if payload.event_data is not None else {},
        event_metadata=dict(payload.metadata) if payload.metadata is not None else {},
        created_at=occurred_at,
    )
    session.add(event)
    session.flush()
    return event
