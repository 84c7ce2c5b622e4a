"""Unit tests for the append-only agent event log."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.orm import sessionmaker

from agent.event_log import EventCreateInput, EventLog


def test_record_persists_event_fields(sqlite_session_factory: sessionmaker) -> None:
    """Ensure recorded events keep states, actor and payload blobs."""
    log = EventLog(sqlite_session_factory)
    occurred_at = datetime(2025, 1, 2, 9, 30, tzinfo=timezone.utc)

    event = log.record(
        EventCreateInput(
            event_type="action_queued",
            entity_type="action",
            entity_id="action-1",
            owner="user",
            previous_state="proposed",
            new_state="queued",
            triggered_by="user",
            event_data={"reason": "ready"},
            metadata={"policy": {"environment": "DRY_RUN"}},
            occurred_at=occurred_at,
        )
    )

    stored = log.list_for_entity("action", "action-1")
    assert [item.id for item in stored] == [event.id]
    assert stored[0].previous_state == "proposed"
    assert stored[0].new_state == "queued"
    assert stored[0].event_data == {"reason": "ready"}
    assert stored[0].event_metadata == {"policy": {"environment": "DRY_RUN"}}
    assert stored[0].created_at == occurred_at


def test_list_for_entity_returns_append_order(sqlite_session_factory: sessionmaker) -> None:
    """Ensure entity history is returned oldest first."""
    log = EventLog(sqlite_session_factory)
    for state in ("proposed", "queued", "running"):
        log.record(
            EventCreateInput(
                event_type=f"action_{state}",
                entity_type="action",
                entity_id="action-1",
                new_state=state,
            )
        )
    log.record(EventCreateInput(event_type="idea_created", entity_type="idea", entity_id="idea-1"))

    history = log.list_for_entity("action", "action-1")

    assert [event.new_state for event in history] == ["proposed", "queued", "running"]


def test_list_recent_filters_by_owner_and_type(sqlite_session_factory: sessionmaker) -> None:
    """Ensure recent events are scoped to the owner and newest first."""
    log = EventLog(sqlite_session_factory)
    for index in range(3):
        log.record(
            EventCreateInput(
                event_type="verification_completed",
                entity_type="verification",
                entity_id=f"verification-{index}",
                owner="user",
            )
        )
    log.record(
        EventCreateInput(
            event_type="verification_completed",
            entity_type="verification",
            entity_id="other",
            owner="someone-else",
        )
    )
    log.record(EventCreateInput(event_type="action_created", entity_type="action", entity_id="a", owner="user"))

    recent = log.list_recent("user", event_type="verification_completed", limit=2)

    assert [event.entity_id for event in recent] == ["verification-2", "verification-1"]


def test_unknown_entity_type_is_rejected(sqlite_session_factory: sessionmaker) -> None:
    """Ensure events for unsupported entity types are refused."""
    log = EventLog(sqlite_session_factory)

    with pytest.raises(ValueError, match="Unsupported event entity type"):
        log.record(EventCreateInput(event_type="x", entity_type="widget", entity_id="1"))

    assert log.list_for_entity("widget", "1") == []
