"""Unit tests for run records."""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from agent.errors import InvalidStateError
from agent.lifecycle import ActionLifecycleManager
from agent.runs import RunStore, build_run_key
from helpers.agent_factories import OWNER, FakeClock, make_action


def test_run_key_is_stable_per_delivery() -> None:
    """Ensure the idempotency key depends only on action, generation and attempt."""
    assert build_run_key("a-1", 1, 1) == build_run_key("a-1", 1, 1)
    assert build_run_key("a-1", 1, 1) != build_run_key("a-1", 1, 2)
    assert build_run_key("a-1", 1, 1) != build_run_key("a-1", 2, 1)


def test_finish_run_records_duration(
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure finished runs carry their outcome and elapsed time."""
    action = make_action(lifecycle)
    run = runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=1)
    clock.advance(seconds=3)

    finished = runs.finish_run(run.id, owner=OWNER, succeeded=True, outcome={"output": {"ok": True}})

    assert finished.status == "succeeded"
    assert finished.duration_ms == 3000
    assert finished.outcome == {"output": {"ok": True}}
    assert runs.active_run_for_job("missing") is None


def test_finished_run_cannot_be_closed_again(lifecycle: ActionLifecycleManager, runs: RunStore) -> None:
    """Ensure a failed run is not relabelled by a late success report."""
    action = make_action(lifecycle)
    run = runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=1)
    runs.finish_run(run.id, owner=OWNER, succeeded=False, error="worker lease expired")

    with pytest.raises(InvalidStateError, match="run already finished"):
        runs.finish_run(run.id, owner=OWNER, succeeded=True, outcome={"output": {}})

    assert runs.get_run(run.id).status == "failed"


def test_second_active_run_is_rejected(lifecycle: ActionLifecycleManager, runs: RunStore) -> None:
    """Ensure an action never has two unfinished runs."""
    action = make_action(lifecycle)
    first = runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=1)

    with pytest.raises(IntegrityError):
        runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=2)

    runs.finish_run(first.id, owner=OWNER, succeeded=False, error="boom")
    second = runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=2)

    assert [run.id for run in runs.list_for_action(action.id)] == [first.id, second.id]
