"""Idea backlog: candidate remediations ranked by ICE score."""

from __future__ import annotations

from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime
import logging
from typing import Callable, Mapping

from sqlalchemy import func
from sqlalchemy.orm import Session

from agent.errors import InvalidStateError, NotFoundError, ValidationError
from agent.event_log import EventCreateInput, record_event
from models import IDEA_STATUSES, AgentAction, Idea
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

IDEA_TRANSITIONS: dict[str, frozenset[str]] = {
    "open": frozenset({"adopted", "rejected", "done"}),
    "adopted": frozenset({"done", "rejected"}),
    "rejected": frozenset(),
    "done": frozenset(),
}
TERMINAL_IDEA_STATUSES = frozenset({"rejected", "done"})
_STATUS_TIMESTAMPS = {
    "adopted": "adopted_at",
    "done": "completed_at",
    "rejected": "rejected_at",
}
_MUTABLE_FIELDS = frozenset({"title", "hypothesis", "evidence", "ice_score", "tags"})


@dataclass(frozen=True)
class IdeaProgress:
    """Idea together with the actions derived from it."""

    idea: Idea
    actions: list[AgentAction]
    status_counts: dict[str, int] = field(default_factory=dict)

    @property
    def total_actions(self) -> int:
        return len(self.actions)

    @property
    def completed_actions(self) -> int:
        return self.status_counts.get("completed", 0)


def compute_ice_score(impact: int, confidence: int, ease: int) -> int:
    """Combine 1-10 impact, confidence and ease ratings into a 1-100 score."""
    for name, value in (("impact", impact), ("confidence", confidence), ("ease", ease)):
        if not 1 <= int(value) <= 10:
            raise ValidationError(f"{name} must be between 1 and 10.")
    score = round(int(impact) * int(confidence) * int(ease) / 10)
    return max(1, min(100, score))


def validate_ice_score(value: object) -> int | None:
    """Return a validated ICE score, raising when outside 1..100."""
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("ice_score must be an integer.")
    if not 1 <= value <= 100:
        raise ValidationError("ice_score must be between 1 and 100.")
    return value


class IdeaBacklog:
    """Service for idea creation, adoption and status changes."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the backlog with a SQLAlchemy session factory."""
        self._session_factory = session_factory
        self._clock = clock

    def create_idea(
        self,
        owner: str,
        site_url: str,
        title: str,
        *,
        hypothesis: str | None = None,
        evidence: Mapping[str, object] | None = None,
        ice_score: int | None = None,
        tags: list[str] | None = None,
        triggered_by: str = "user",
    ) -> Idea:
        """Create an idea in the open state."""
        _require_text(owner=owner, site_url=site_url, title=title)
        score = validate_ice_score(ice_score)

        def handler(session: Session) -> Idea:
            timestamp = self._now()
            idea = Idea(
                owner=owner,
                site_url=site_url,
                title=title.strip(),
                hypothesis=hypothesis,
                evidence=dict(evidence or {}),
                ice_score=score,
                tags=list(tags or []),
                status="open",
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(idea)
            session.flush()
            record_event(
                session,
                EventCreateInput(
                    event_type="idea_created",
                    entity_type="idea",
                    entity_id=idea.id,
                    owner=owner,
                    new_state="open",
                    triggered_by=triggered_by,
                    event_data={"title": idea.title, "ice_score": score},
                ),
                now=timestamp,
            )
            return idea

        return self._execute(handler)

    def adopt_idea(self, idea_id: str, owner: str, *, triggered_by: str = "user") -> Idea:
        """Mark an open idea as adopted once an action references it."""

        def handler(session: Session) -> Idea:
            idea = fetch_owned_idea(session, idea_id, owner)
            if idea.status == "adopted":
                return idea
            if idea.status in TERMINAL_IDEA_STATUSES:
                raise NotFoundError("idea", idea_id)
            linked = (
                session.query(func.count(AgentAction.id))
                .filter(AgentAction.idea_id == idea.id)
                .scalar()
            )
            if not linked:
                raise ValidationError("An idea can only be adopted once an action references it.")
            adopt_idea_record(session, idea, triggered_by=triggered_by, now=self._now())
            return idea

        return self._execute(handler)

    def update_idea_status(
        self,
        idea_id: str,
        owner: str,
        status: str,
        extra: Mapping[str, object] | None = None,
        *,
        triggered_by: str = "user",
    ) -> Idea:
        """Move an idea along its one-way status graph."""
        if status not in IDEA_STATUSES:
            raise ValidationError(f"Unknown idea status: {status}")
        updates = _validate_extra(extra)

        def handler(session: Session) -> Idea:
            idea = fetch_owned_idea(session, idea_id, owner)
            previous = idea.status
            if status not in IDEA_TRANSITIONS[previous]:
                raise InvalidStateError("idea", previous, status)
            timestamp = self._now()
            if status == "adopted":
                linked = (
                    session.query(func.count(AgentAction.id))
                    .filter(AgentAction.idea_id == idea.id)
                    .scalar()
                )
                if not linked:
                    raise ValidationError(
                        "An idea can only be adopted once an action references it."
                    )
            _apply_idea_updates(idea, updates)
            idea.status = status
            setattr(idea, _STATUS_TIMESTAMPS[status], timestamp)
            idea.updated_at = timestamp
            record_event(
                session,
                EventCreateInput(
                    event_type=f"idea_{status}",
                    entity_type="idea",
                    entity_id=idea.id,
                    owner=owner,
                    previous_state=previous,
                    new_state=status,
                    triggered_by=triggered_by,
                    event_data={"updated_fields": sorted(updates)},
                ),
                now=timestamp,
            )
            return idea

        return self._execute(handler)

    def update_idea(self, idea_id: str, owner: str, extra: Mapping[str, object]) -> Idea:
        """Update descriptive idea fields without changing its status."""
        updates = _validate_extra(extra)
        if not updates:
            raise ValidationError("No idea fields to update.")

        def handler(session: Session) -> Idea:
            idea = fetch_owned_idea(session, idea_id, owner)
            _apply_idea_updates(idea, updates)
            idea.updated_at = self._now()
            return idea

        return self._execute(handler)

    def get_idea(self, idea_id: str, owner: str) -> Idea:
        """Return an owned idea."""
        return self._execute(lambda session: fetch_owned_idea(session, idea_id, owner))

    def list_ideas(
        self,
        owner: str,
        *,
        site_url: str | None = None,
        status: str | None = None,
        idea_id: str | None = None,
        limit: int = 50,
    ) -> list[Idea]:
        """Return owned ideas, newest first."""
        if status is not None and status not in IDEA_STATUSES:
            raise ValidationError(f"Unknown idea status: {status}")

        def handler(session: Session) -> list[Idea]:
            query = session.query(Idea).filter(Idea.owner == owner)
            if site_url is not None:
                query = query.filter(Idea.site_url == site_url)
            if status is not None:
                query = query.filter(Idea.status == status)
            if idea_id is not None:
                query = query.filter(Idea.id == idea_id)
            return list(query.order_by(Idea.created_at.desc()).limit(limit).all())

        return self._execute(handler)

    def track_idea_progress(self, idea_id: str, owner: str) -> IdeaProgress:
        """Return an idea, its linked actions and their status counts."""

        def handler(session: Session) -> IdeaProgress:
            idea = fetch_owned_idea(session, idea_id, owner)
            actions = list(
                session.query(AgentAction)
                .filter(AgentAction.idea_id == idea.id)
                .filter(AgentAction.owner == owner)
                .order_by(AgentAction.created_at.asc())
                .all()
            )
            counts: dict[str, int] = {}
            for action in actions:
                counts[action.status] = counts.get(action.status, 0) + 1
            return IdeaProgress(idea=idea, actions=actions, status_counts=counts)

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


def fetch_owned_idea(session: Session, idea_id: str, owner: str) -> Idea:
    """Return an idea owned by owner or raise NotFoundError."""
    idea = session.get(Idea, idea_id)
    if idea is None or idea.owner != owner:
        raise NotFoundError("idea", idea_id)
    return idea


def adopt_idea_record(
    session: Session,
    idea: Idea,
    *,
    triggered_by: str,
    now: datetime,
    action_id: str | None = None,
) -> None:
    """Move an open idea to adopted inside an existing session."""
    if idea.status != "open":
        return
    idea.status = "adopted"
    idea.adopted_at = now
    idea.updated_at = now
    record_event(
        session,
        EventCreateInput(
            event_type="idea_adopted",
            entity_type="idea",
            entity_id=idea.id,
            owner=idea.owner,
            previous_state="open",
            new_state="adopted",
            triggered_by=triggered_by,
            event_data={"action_id": action_id} if action_id else None,
        ),
        now=now,
    )
    logger.info("Idea adopted: idea_id=%s action_id=%s", idea.id, action_id)


def _validate_extra(extra: Mapping[str, object] | None) -> dict[str, object]:
    """Return the permitted idea field updates, rejecting anything else."""
    if not extra:
        return {}
    unknown = sorted(set(extra) - _MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Idea fields cannot be updated: {', '.join(unknown)}")
    updates = dict(extra)
    if "ice_score" in updates:
        updates["ice_score"] = validate_ice_score(updates["ice_score"])
    if "title" in updates:
        _require_text(title=updates["title"])
    return updates


def _apply_idea_updates(idea: Idea, updates: Mapping[str, object]) -> None:
    for key, value in updates.items():
        if key == "evidence":
            value = dict(value or {})
        elif key == "tags":
            value = list(value or [])
        setattr(idea, key, value)


def _require_text(**values: object) -> None:
    missing = [name for name, value in values.items() if not isinstance(value, str) or not value.strip()]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")
