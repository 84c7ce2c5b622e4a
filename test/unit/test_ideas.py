"""Unit tests for the idea backlog."""

from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from agent.errors import InvalidStateError, NotFoundError, ValidationError
from agent.event_log import EventLog
from agent.ideas import IdeaBacklog, compute_ice_score
from agent.lifecycle import ActionLifecycleManager
from helpers.agent_factories import OWNER, SITE_URL, FakeClock, make_action


@pytest.fixture
def backlog(sqlite_session_factory: sessionmaker, clock: FakeClock) -> IdeaBacklog:
    return IdeaBacklog(sqlite_session_factory, clock=clock)


def test_create_idea_starts_open_and_records_event(
    backlog: IdeaBacklog,
    sqlite_session_factory: sessionmaker,
) -> None:
    """Ensure new ideas are open and audited."""
    idea = backlog.create_idea(
        OWNER,
        SITE_URL,
        "Add missing alt text",
        hypothesis="Images without alt text hurt accessibility scores",
        evidence={"images_missing_alt": 14},
        ice_score=72,
        tags=["accessibility"],
    )

    assert idea.status == "open"
    assert idea.ice_score == 72
    assert idea.evidence == {"images_missing_alt": 14}
    events = EventLog(sqlite_session_factory).list_for_entity("idea", idea.id)
    assert [event.event_type for event in events] == ["idea_created"]


@pytest.mark.parametrize("score", [0, 101, "high"])
def test_create_idea_rejects_out_of_range_score(backlog: IdeaBacklog, score: object) -> None:
    """Ensure ICE scores outside 1..100 are refused."""
    with pytest.raises(ValidationError):
        backlog.create_idea(OWNER, SITE_URL, "Idea", ice_score=score)


def test_create_idea_requires_title(backlog: IdeaBacklog) -> None:
    """Ensure blank titles are refused."""
    with pytest.raises(ValidationError, match="title"):
        backlog.create_idea(OWNER, SITE_URL, "  ")


def test_compute_ice_score_scales_ratings() -> None:
    """Ensure 1-10 ratings combine into the 1-100 range."""
    assert compute_ice_score(10, 10, 10) == 100
    assert compute_ice_score(1, 1, 1) == 1
    assert compute_ice_score(8, 9, 10) == 72
    with pytest.raises(ValidationError):
        compute_ice_score(11, 1, 1)


def test_action_from_idea_adopts_it(backlog: IdeaBacklog, lifecycle: ActionLifecycleManager) -> None:
    """Ensure creating an action from an open idea adopts the idea atomically."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Add missing alt text", ice_score=72)

    action = make_action(lifecycle, idea_id=idea.id)

    adopted = backlog.get_idea(idea.id, OWNER)
    assert action.idea_id == idea.id
    assert adopted.status == "adopted"
    assert adopted.adopted_at is not None


def test_adopt_idea_requires_linked_action(backlog: IdeaBacklog) -> None:
    """Ensure an adopted idea always references at least one action."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Idea")

    with pytest.raises(ValidationError, match="action references it"):
        backlog.adopt_idea(idea.id, OWNER)

    assert backlog.get_idea(idea.id, OWNER).status == "open"


def test_adopt_idea_is_idempotent(backlog: IdeaBacklog, lifecycle: ActionLifecycleManager) -> None:
    """Ensure repeating adoption is a no-op rather than an error."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Idea")
    make_action(lifecycle, idea_id=idea.id)
    first = backlog.get_idea(idea.id, OWNER)

    again = backlog.adopt_idea(idea.id, OWNER)

    assert again.status == "adopted"
    assert again.adopted_at == first.adopted_at


def test_adopt_idea_rejects_terminal_or_foreign_ideas(
    backlog: IdeaBacklog,
    lifecycle: ActionLifecycleManager,
) -> None:
    """Ensure terminal ideas and other owners' ideas are not found for adoption."""
    rejected = backlog.create_idea(OWNER, SITE_URL, "Rejected idea")
    backlog.update_idea_status(rejected.id, OWNER, "rejected")
    foreign = backlog.create_idea("other-user", SITE_URL, "Foreign idea")

    with pytest.raises(NotFoundError):
        backlog.adopt_idea(rejected.id, OWNER)
    with pytest.raises(NotFoundError):
        backlog.adopt_idea(foreign.id, OWNER)


def test_status_transitions_are_one_way(backlog: IdeaBacklog, lifecycle: ActionLifecycleManager) -> None:
    """Ensure ideas move forward only and stamp each transition."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Idea")
    make_action(lifecycle, idea_id=idea.id)

    done = backlog.update_idea_status(idea.id, OWNER, "done")

    assert done.status == "done"
    assert done.completed_at is not None
    with pytest.raises(InvalidStateError):
        backlog.update_idea_status(idea.id, OWNER, "open")
    with pytest.raises(InvalidStateError):
        backlog.update_idea_status(idea.id, OWNER, "adopted")


def test_update_idea_status_applies_permitted_extras(backlog: IdeaBacklog) -> None:
    """Ensure status changes may carry descriptive field updates."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Idea", ice_score=10)

    rejected = backlog.update_idea_status(
        idea.id,
        OWNER,
        "rejected",
        {"hypothesis": "Not worth it", "ice_score": 5},
    )

    assert rejected.hypothesis == "Not worth it"
    assert rejected.ice_score == 5
    assert rejected.rejected_at is not None


def test_update_idea_rejects_status_in_extras(backlog: IdeaBacklog) -> None:
    """Ensure status cannot be smuggled through the field update path."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Idea")

    with pytest.raises(ValidationError, match="status"):
        backlog.update_idea(idea.id, OWNER, {"status": "done"})


def test_list_ideas_filters_by_status_and_site(backlog: IdeaBacklog, clock: FakeClock) -> None:
    """Ensure listings are scoped to owner and filters, newest first."""
    first = backlog.create_idea(OWNER, SITE_URL, "First")
    clock.advance(minutes=1)
    second = backlog.create_idea(OWNER, SITE_URL, "Second")
    backlog.create_idea(OWNER, "https://other.example", "Other site")
    backlog.create_idea("other-user", SITE_URL, "Foreign")
    backlog.update_idea_status(first.id, OWNER, "rejected")

    open_ideas = backlog.list_ideas(OWNER, site_url=SITE_URL, status="open")
    all_ideas = backlog.list_ideas(OWNER, site_url=SITE_URL)

    assert [idea.id for idea in open_ideas] == [second.id]
    assert [idea.id for idea in all_ideas] == [second.id, first.id]


def test_track_idea_progress_counts_action_statuses(
    backlog: IdeaBacklog,
    lifecycle: ActionLifecycleManager,
) -> None:
    """Ensure progress reports linked actions by status."""
    idea = backlog.create_idea(OWNER, SITE_URL, "Idea")
    make_action(lifecycle, idea_id=idea.id, title="First")
    second = make_action(lifecycle, idea_id=idea.id, title="Second")
    lifecycle.transition(second.id, OWNER, "queued")

    progress = backlog.track_idea_progress(idea.id, OWNER)

    assert progress.total_actions == 2
    assert progress.status_counts == {"proposed": 1, "queued": 1}
    assert progress.completed_actions == 0
