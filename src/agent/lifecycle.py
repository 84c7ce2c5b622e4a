"""Action lifecycle: creation, policy resolution and the action state machine."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime
import logging
from typing import Any, Callable, Mapping

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from agent.errors import InvalidStateError, NotFoundError, QueueSubmissionError, ValidationError
from agent.event_log import EventCreateInput, record_event
from agent.ideas import adopt_idea_record, fetch_owned_idea
from agent.policy import ExecutionPolicy, load_policy, resolve_policy
from agent.queue import QueueManager
from models import ACTION_STATUSES, AgentAction
from time_utils import ensure_utc, seconds_until, utc_now

logger = logging.getLogger(__name__)

ACTION_TRANSITIONS: dict[str, frozenset[str]] = {
    "proposed": frozenset({"queued"}),
    "queued": frozenset({"running", "proposed"}),
    "running": frozenset({"completed", "failed"}),
    "completed": frozenset(),
    "failed": frozenset(),
}
# Worker-only edge used when the queue schedules a retry of a failed attempt.
_RETRY_EDGE = ("running", "queued")
TERMINAL_ACTION_STATUSES = frozenset({"completed", "failed"})

_STATUS_TIMESTAMPS = {
    "queued": "queued_at",
    "running": "started_at",
    "completed": "completed_at",
    "failed": "failed_at",
}
_MUTABLE_FIELDS = frozenset(
    {"title", "description", "payload", "priority_score", "scheduled_for"}
)
_PROTECTED_FIELDS = frozenset(
    {
        "id",
        "status",
        "policy",
        "owner",
        "site_url",
        "idea_id",
        "action_type",
        "queue_generation",
        "approved_at",
        "approved_by",
        "verification_status",
        "error_message",
    }
)
DEFAULT_PRIORITY = 50


class ActionLifecycleManager:
    """Service owning action records and every action state transition."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: QueueManager,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the manager with persistence and the execution queue."""
        self._session_factory = session_factory
        self._queue = queue
        self._clock = clock

    def create_action(
        self,
        owner: str,
        site_url: str,
        action_type: str,
        title: str,
        *,
        payload: Mapping[str, Any] | None = None,
        policy: Mapping[str, Any] | None = None,
        priority_score: int | None = None,
        scheduled_for: datetime | None = None,
        description: str | None = None,
        idea_id: str | None = None,
        triggered_by: str = "user",
    ) -> AgentAction:
        """Create a proposed action, adopting its source idea when still open."""
        missing = [
            name
            for name, value in (
                ("owner", owner),
                ("site_url", site_url),
                ("action_type", action_type),
                ("title", title),
            )
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if payload is not None and not isinstance(payload, Mapping):
            raise ValidationError("payload must be an object.")
        priority = _validate_priority(DEFAULT_PRIORITY if priority_score is None else priority_score)
        resolved_policy = resolve_policy(action_type, policy)

        def handler(session: Session) -> AgentAction:
            timestamp = self._now()
            idea = fetch_owned_idea(session, idea_id, owner) if idea_id else None
            action = AgentAction(
                owner=owner,
                site_url=site_url,
                idea_id=idea.id if idea is not None else None,
                action_type=action_type,
                title=title.strip(),
                description=description,
                payload=dict(payload or {}),
                policy=resolved_policy.to_storage(),
                priority_score=priority,
                scheduled_for=ensure_utc(scheduled_for),
                status="proposed",
                queue_generation=0,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(action)
            session.flush()
            record_event(
                session,
                EventCreateInput(
                    event_type="action_created",
                    entity_type="action",
                    entity_id=action.id,
                    owner=owner,
                    new_state="proposed",
                    triggered_by=triggered_by,
                    event_data={
                        "action_type": action_type,
                        "idea_id": action.idea_id,
                        "priority_score": priority,
                    },
                    metadata={"policy": action.policy},
                ),
                now=timestamp,
            )
            if idea is not None:
                adopt_idea_record(
                    session,
                    idea,
                    triggered_by=triggered_by,
                    now=timestamp,
                    action_id=action.id,
                )
            return action

        action = self._execute(handler)
        logger.info(
            "Action created: action_id=%s action_type=%s owner=%s",
            action.id,
            action_type,
            owner,
        )
        return action

    def transition(
        self,
        action_id: str,
        owner: str,
        target_status: str,
        extra: Mapping[str, Any] | None = None,
        *,
        triggered_by: str = "user",
        reason: str | None = None,
        policy: Mapping[str, Any] | None = None,
    ) -> AgentAction:
        """Move an action along a permitted edge of its state machine.

        A policy given here replaces the stored one in the same commit as the
        status change; it is only accepted while the action is proposed.
        """
        if target_status not in ACTION_STATUSES:
            raise ValidationError(f"Unknown action status: {target_status}")
        updates = _validate_extra(extra)
        return self._transition(
            action_id,
            owner,
            target_status,
            updates,
            triggered_by=triggered_by,
            reason=reason,
            policy=policy,
            allow_retry_edge=False,
        )

    def submit_for_execution(self, action_id: str, owner: str) -> str:
        """Hand a queued action to the execution queue and return the job id.

        Any queue failure reverts the action to proposed before the error is
        raised to the caller.
        """
        action = self.get_action(action_id, owner)
        if action.status != "queued":
            raise InvalidStateError("action", action.status, "queued", "submission requires queued")
        delay = seconds_until(action.scheduled_for, self._now())
        try:
            return self._queue.enqueue(
                action.id,
                owner,
                action.action_type,
                action.payload,
                action.policy,
                priority=action.priority_score,
                delay_seconds=delay,
                attempt_generation=action.queue_generation,
                max_attempts=load_policy(action.policy, action.action_type).max_attempts,
                triggered_by="system",
            )
        except Exception as exc:
            logger.warning(
                "Queue submission failed, reverting action: action_id=%s error=%s",
                action_id,
                exc,
            )
            self._transition(
                action_id,
                owner,
                "proposed",
                {},
                triggered_by="system",
                reason=f"queue submission failed: {exc}",
                allow_retry_edge=False,
            )
            if isinstance(exc, QueueSubmissionError):
                raise
            raise QueueSubmissionError(f"Failed to queue action {action_id}: {exc}") from exc

    def approve_action(self, action_id: str, owner: str, approved_by: str) -> AgentAction:
        """Record approval so a gated action may be queued."""
        if not isinstance(approved_by, str) or not approved_by.strip():
            raise ValidationError("Missing required fields: approved_by")

        def handler(session: Session) -> AgentAction:
            action = fetch_owned_action(session, action_id, owner)
            if action.status != "proposed":
                raise InvalidStateError(
                    "action", action.status, action.status, "only proposed actions can be approved"
                )
            timestamp = self._now()
            action.approved_at = timestamp
            action.approved_by = approved_by
            action.updated_at = timestamp
            record_event(
                session,
                EventCreateInput(
                    event_type="action_approved",
                    entity_type="action",
                    entity_id=action.id,
                    owner=owner,
                    previous_state=action.status,
                    new_state=action.status,
                    triggered_by=approved_by,
                ),
                now=timestamp,
            )
            return action

        return self._execute(handler)

    def update_action(
        self,
        action_id: str,
        owner: str,
        extra: Mapping[str, Any] | None,
        *,
        policy: Mapping[str, Any] | None = None,
        triggered_by: str = "user",
    ) -> AgentAction:
        """Update descriptive action fields, and optionally the policy, without a status change.

        Field and policy changes commit together or not at all.
        """
        updates = _validate_extra(extra)
        if not updates and policy is None:
            raise ValidationError("No action fields to update.")

        def handler(session: Session) -> AgentAction:
            action = fetch_owned_action(session, action_id, owner)
            if "payload" in updates and action.status != "proposed":
                raise InvalidStateError(
                    "action", action.status, action.status, "payload is fixed once queued"
                )
            if policy is not None and action.status != "proposed":
                raise InvalidStateError(
                    "action", action.status, action.status, "policy is fixed once queued"
                )
            timestamp = self._now()
            if policy is not None:
                previous_policy = dict(action.policy or {})
                action.policy = resolve_policy(action.action_type, policy).to_storage()
                _record_policy_change(
                    session,
                    action,
                    previous_policy,
                    triggered_by=triggered_by,
                    timestamp=timestamp,
                )
            action.updated_at = timestamp
            if updates:
                _apply_action_updates(action, updates)
                record_event(
                    session,
                    EventCreateInput(
                        event_type="action_updated",
                        entity_type="action",
                        entity_id=action.id,
                        owner=owner,
                        previous_state=action.status,
                        new_state=action.status,
                        triggered_by=triggered_by,
                        event_data={"updated_fields": sorted(updates)},
                    ),
                    now=timestamp,
                )
            return action

        return self._execute(handler)

    def update_policy(
        self,
        action_id: str,
        owner: str,
        policy: Mapping[str, Any],
        *,
        triggered_by: str = "user",
    ) -> AgentAction:
        """Replace the policy of a proposed action."""
        return self.update_action(action_id, owner, None, policy=policy, triggered_by=triggered_by)

    def get_action(self, action_id: str, owner: str) -> AgentAction:
        """Return an owned action."""
        return self._execute(lambda session: fetch_owned_action(session, action_id, owner))

    def get_policy(self, action_id: str, owner: str) -> ExecutionPolicy:
        """Return the resolved execution policy of an owned action."""
        action = self.get_action(action_id, owner)
        return load_policy(action.policy, action.action_type)

    def list_actions(
        self,
        owner: str,
        *,
        site_url: str | None = None,
        status: str | None = None,
        idea_id: str | None = None,
        limit: int = 50,
    ) -> list[AgentAction]:
        """Return owned actions by priority, then newest first."""
        if status is not None and status not in ACTION_STATUSES:
            raise ValidationError(f"Unknown action status: {status}")

        def handler(session: Session) -> list[AgentAction]:
            query = session.query(AgentAction).filter(AgentAction.owner == owner)
            if site_url is not None:
                query = query.filter(AgentAction.site_url == site_url)
            if status is not None:
                query = query.filter(AgentAction.status == status)
            if idea_id is not None:
                query = query.filter(AgentAction.idea_id == idea_id)
            return list(
                query.order_by(
                    AgentAction.priority_score.desc(),
                    AgentAction.created_at.desc(),
                )
                .limit(limit)
                .all()
            )

        return self._execute(handler)

    def action_stats(self, owner: str, *, site_url: str | None = None) -> dict[str, int]:
        """Return action counts by status for an owner."""

        def handler(session: Session) -> dict[str, int]:
            counts = {status: 0 for status in ACTION_STATUSES}
            query = session.query(AgentAction.status, func.count(AgentAction.id)).filter(
                AgentAction.owner == owner
            )
            if site_url is not None:
                query = query.filter(AgentAction.site_url == site_url)
            for status, count in query.group_by(AgentAction.status):
                counts[status] = int(count)
            counts["total"] = sum(counts[status] for status in ACTION_STATUSES)
            return counts

        return self._execute(handler)

    # Worker-facing transitions.

    def mark_running(
        self,
        action_id: str,
        owner: str,
        *,
        queue_generation: int,
        run_context: Mapping[str, Any],
    ) -> AgentAction:
        """Claim a queued action for execution; losers get InvalidStateError.

        The claim only succeeds while the action is still on ``queue_generation``;
        a job left over from before a withdraw and re-queue loses.
        """
        return self._transition(
            action_id,
            owner,
            "running",
            {},
            triggered_by="worker",
            metadata=run_context,
            expected_generation=queue_generation,
            allow_retry_edge=False,
        )

    def requeue_for_retry(self, action_id: str, owner: str, *, error: str, retry_at: datetime) -> AgentAction:
        """Return a running action to queued after a retryable failure."""
        return self._transition(
            action_id,
            owner,
            "queued",
            {"error_message": error},
            triggered_by="worker",
            reason="retry scheduled",
            metadata={"retry_at": ensure_utc(retry_at).isoformat()},
            allow_retry_edge=True,
        )

    def mark_completed(self, action_id: str, owner: str, *, run_id: str) -> AgentAction:
        """Mark a running action completed."""
        return self._transition(
            action_id,
            owner,
            "completed",
            {"error_message": None},
            triggered_by="worker",
            metadata={"run_id": run_id},
            allow_retry_edge=False,
        )

    def mark_failed(self, action_id: str, owner: str, *, error: str, run_id: str | None) -> AgentAction:
        """Mark a running action failed with a human-readable reason."""
        return self._transition(
            action_id,
            owner,
            "failed",
            {"error_message": error},
            triggered_by="worker",
            reason=error,
            metadata={"run_id": run_id},
            allow_retry_edge=False,
        )

    def _transition(
        self,
        action_id: str,
        owner: str,
        target_status: str,
        updates: Mapping[str, Any],
        *,
        triggered_by: str,
        allow_retry_edge: bool,
        reason: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        policy: Mapping[str, Any] | None = None,
        expected_generation: int | None = None,
    ) -> AgentAction:
        def handler(session: Session) -> AgentAction:
            action = fetch_owned_action(session, action_id, owner)
            current = action.status
            edge = (current, target_status)
            permitted = target_status in ACTION_TRANSITIONS[current]
            if not permitted and not (allow_retry_edge and edge == _RETRY_EDGE):
                raise InvalidStateError("action", current, target_status)
            if allow_retry_edge and edge != _RETRY_EDGE:
                raise InvalidStateError("action", current, target_status, "retry requires running")
            if expected_generation is not None and action.queue_generation != expected_generation:
                raise InvalidStateError(
                    "action",
                    current,
                    target_status,
                    f"job is for queue generation {expected_generation}, action is on {action.queue_generation}",
                )
            timestamp = self._now()
            values: dict[str, Any] = {"status": target_status, "updated_at": timestamp}
            timestamp_field = _STATUS_TIMESTAMPS.get(target_status)
            if timestamp_field is not None:
                values[timestamp_field] = timestamp
            previous_policy = dict(action.policy or {})
            resolved = None
            if policy is not None:
                if current != "proposed":
                    raise InvalidStateError(
                        "action", current, target_status, "policy is fixed once queued"
                    )
                resolved = resolve_policy(action.action_type, policy)
                values["policy"] = resolved.to_storage()
            if target_status == "queued" and current == "proposed":
                resolved = resolved or load_policy(action.policy, action.action_type)
                if resolved.requires_approval and action.approved_at is None:
                    raise InvalidStateError(
                        "action", current, target_status, "approval required before queueing"
                    )
                values["policy"] = resolved.to_storage()
                values["queue_generation"] = AgentAction.queue_generation + 1
            statement = (
                update(AgentAction)
                .where(AgentAction.id == action.id)
                .where(AgentAction.status == current)
            )
            if expected_generation is not None:
                statement = statement.where(AgentAction.queue_generation == expected_generation)
            result = session.execute(
                statement.values(**values).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                session.expire(action)
                raise InvalidStateError(
                    "action", current, target_status, "action was modified concurrently"
                )
            session.refresh(action)
            if updates:
                if "payload" in updates and current != "proposed":
                    raise InvalidStateError(
                        "action", current, target_status, "payload is fixed once queued"
                    )
                _apply_action_updates(action, updates)
                session.flush()
            if policy is not None:
                _record_policy_change(
                    session,
                    action,
                    previous_policy,
                    triggered_by=triggered_by,
                    timestamp=timestamp,
                    previous_state=current,
                )
            event_data: dict[str, Any] = {"reason": reason} if reason else {}
            if updates:
                event_data["updated_fields"] = sorted(updates)
            record_event(
                session,
                EventCreateInput(
                    event_type=f"action_{target_status}",
                    entity_type="action",
                    entity_id=action.id,
                    owner=owner,
                    previous_state=current,
                    new_state=target_status,
                    triggered_by=triggered_by,
                    event_data=event_data,
                    metadata=metadata,
                ),
                now=timestamp,
            )
            return action

        action = self._execute(handler)
        logger.info(
            "Action transitioned: action_id=%s status=%s triggered_by=%s",
            action_id,
            target_status,
            triggered_by,
        )
        return action

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _execute(self, handler):
        """Execute lifecycle work inside a managed session."""
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                result = handler(session)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return result


def fetch_owned_action(session: Session, action_id: str, owner: str) -> AgentAction:
    """Return an action owned by owner or raise NotFoundError."""
    action = session.get(AgentAction, action_id)
    if action is None or action.owner != owner:
        raise NotFoundError("action", action_id)
    return action


def _record_policy_change(
    session: Session,
    action: AgentAction,
    previous_policy: Mapping[str, Any],
    *,
    triggered_by: str,
    timestamp: datetime,
    previous_state: str | None = None,
) -> None:
    record_event(
        session,
        EventCreateInput(
            event_type="action_policy_updated",
            entity_type="action",
            entity_id=action.id,
            owner=action.owner,
            previous_state=previous_state or action.status,
            new_state=action.status,
            triggered_by=triggered_by,
            metadata={"previous_policy": dict(previous_policy), "policy": action.policy},
        ),
        now=timestamp,
    )


def _validate_priority(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("priority_score must be an integer.")
    if not 0 <= value <= 100:
        raise ValidationError("priority_score must be between 0 and 100.")
    return value


def _validate_extra(extra: Mapping[str, Any] | None) -> dict[str, Any]:
    """Return permitted field updates; status, policy and ownership are rejected."""
    if not extra:
        return {}
    protected = sorted(set(extra) & _PROTECTED_FIELDS)
    if protected:
        raise ValidationError(f"Action fields cannot be changed here: {', '.join(protected)}")
    unknown = sorted(set(extra) - _MUTABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Unknown action fields: {', '.join(unknown)}")
    updates = dict(extra)
    if "priority_score" in updates:
        updates["priority_score"] = _validate_priority(updates["priority_score"])
    if "payload" in updates and not isinstance(updates["payload"], Mapping):
        raise ValidationError("payload must be an object.")
    if "title" in updates and (
        not isinstance(updates["title"], str) or not updates["title"].strip()
    ):
        raise ValidationError("title must not be empty.")
    if "scheduled_for" in updates and updates["scheduled_for"] is not None:
        updates["scheduled_for"] = _parse_datetime(updates["scheduled_for"], "scheduled_for")
    return updates


def _parse_datetime(value: object, name: str) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    raise ValidationError(f"{name} must be an ISO 8601 datetime.")


def _apply_action_updates(action: AgentAction, updates: Mapping[str, Any]) -> None:
    for key, value in updates.items():
        if key == "payload":
            value = dict(value)
        elif key == "scheduled_for":
            value = ensure_utc(value)
        setattr(action, key, value)
