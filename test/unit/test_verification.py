"""Unit tests for the verification engine."""

from __future__ import annotations

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from agent.errors import InvalidStateError, NotFoundError, VerificationProbeError
from agent.lifecycle import ActionLifecycleManager
from agent.probes import ProbeRegistry
from agent.runs import RunStore
from agent.verification import VerificationEngine
from config import VerificationConfig
from helpers.agent_factories import OWNER, FakeClock, ScriptedProbe, make_action, queue_action


def _completed_action(lifecycle: ActionLifecycleManager, runs: RunStore, *, title: str = "Write a guide"):
    """Drive an action to completed with a succeeded run, bypassing the worker."""
    action = make_action(lifecycle, title=title, policy={"environment": "PRODUCTION"})
    queue_action(lifecycle, action)
    lifecycle.mark_running(action.id, OWNER, queue_generation=1, run_context={})
    run = runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=1)
    runs.finish_run(run.id, owner=OWNER, succeeded=True, outcome={"output": {}})
    lifecycle.mark_completed(action.id, OWNER, run_id=run.id)
    return action, run


def _engine(
    session_factory: sessionmaker,
    clock: FakeClock,
    probe: ScriptedProbe,
    *,
    config: VerificationConfig | None = None,
    worker_id: str = "verifier",
) -> VerificationEngine:
    registry = ProbeRegistry()
    registry.register("content_generation", probe)
    return VerificationEngine(
        session_factory,
        registry,
        config=config or VerificationConfig(sweep_delay_seconds=0),
        clock=clock,
        worker_id=worker_id,
    )


def test_schedule_verification_is_idempotent(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure scheduling twice for one run keeps a single pending record."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([True]))
    action, run = _completed_action(lifecycle, runs)

    first = engine.schedule_verification(action.id, run.id)
    second = engine.schedule_verification(action.id, run.id)

    assert first.id == second.id
    assert first.status == "pending"
    assert first.next_check_at == clock.now
    assert lifecycle.get_action(action.id, OWNER).verification_status == "pending"


def test_confirmed_probe_verifies(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure a confirming probe makes the record terminal verified."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([True]))
    action, run = _completed_action(lifecycle, runs)

    record = engine.verify_action(action.id, run.id)

    assert record.status == "verified"
    assert record.verification_attempts == 1
    assert record.completed_at == clock.now
    assert record.next_check_at is None
    assert record.checks[0]["passed"] is True
    assert lifecycle.get_action(action.id, OWNER).verification_status == "verified"

    again = engine.verify_action(action.id, run.id)
    assert again.verification_attempts == 1


def test_needs_recheck_backs_off_along_schedule(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure unconfirmed checks push next_check_at out monotonically."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([False]))
    action, run = _completed_action(lifecycle, runs)

    gaps = []
    for _ in range(4):
        record = engine.verify_action(action.id, run.id)
        assert record.status == "needs_recheck"
        gaps.append(record.next_check_at - clock.now)
        clock.now = record.next_check_at

    assert gaps == [timedelta(minutes=5), timedelta(hours=1), timedelta(days=1), timedelta(days=1)]


def test_sixth_unconfirmed_check_fails(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure the record fails once attempts exceed the budget of five."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([False]))
    action, run = _completed_action(lifecycle, runs)

    statuses = []
    for _ in range(6):
        statuses.append(engine.verify_action(action.id, run.id).status)

    assert statuses == ["needs_recheck"] * 5 + ["failed"]
    record = engine.get_verification(action.id, run.id)
    assert record.verification_attempts == 6
    assert record.completed_at is not None
    assert lifecycle.get_action(action.id, OWNER).verification_status == "failed"


def test_recheck_then_verified_scenario(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure a first unconfirmed check followed by a confirmed one ends verified after two attempts."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([False, True]))
    action, run = _completed_action(lifecycle, runs)
    engine.schedule_verification(action.id, run.id)

    first = engine.sweep()
    assert first.rechecks == 1
    record = engine.get_verification(action.id, run.id)
    assert record.next_check_at == clock.now + timedelta(minutes=5)

    assert engine.sweep().total_checked == 0
    clock.advance(minutes=5)
    second = engine.sweep()

    assert second.verified == 1
    final = engine.get_verification(action.id, run.id)
    assert final.status == "verified"
    assert final.verification_attempts == 2
    assert lifecycle.get_action(action.id, OWNER).verification_status == "verified"


def test_probe_error_counts_as_unconfirmed(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure unreachable pages schedule a recheck with the error recorded."""
    probe = ScriptedProbe([VerificationProbeError("HTTP 503")])
    engine = _engine(sqlite_session_factory, clock, probe)
    action, run = _completed_action(lifecycle, runs)

    record = engine.verify_action(action.id, run.id)

    assert record.status == "needs_recheck"
    assert record.checks[0]["error"] == "HTTP 503"


def test_verification_requires_completed_action(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure actions that are not completed cannot be verified."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([True]))
    action = make_action(lifecycle)
    queue_action(lifecycle, action)
    lifecycle.mark_running(action.id, OWNER, queue_generation=1, run_context={})
    run = runs.start_run(action.id, owner=OWNER, job_id=None, attempt_generation=1, attempt=1)

    with pytest.raises(InvalidStateError, match="completed action"):
        engine.verify_action(action.id, run.id)


def test_owner_and_run_mismatch_is_not_found(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure verification is scoped to the owner and to the action's own runs."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([True]))
    action, run = _completed_action(lifecycle, runs)

    with pytest.raises(NotFoundError):
        engine.verify_action(action.id, run.id, owner="intruder")
    with pytest.raises(NotFoundError):
        engine.verify_action(action.id, "missing-run")


def test_claim_excludes_concurrent_checker(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure a record held by another verifier is not checked twice."""
    action, run = _completed_action(lifecycle, runs)
    holder = _engine(sqlite_session_factory, clock, ScriptedProbe([True]), worker_id="holder")
    other_probe = ScriptedProbe([True])
    other = _engine(sqlite_session_factory, clock, other_probe, worker_id="other")
    record = holder.schedule_verification(action.id, run.id)
    holder._execute(lambda session: holder._claim(session, action.id, run.id, None))

    with pytest.raises(InvalidStateError, match="already in progress"):
        other.verify_action(action.id, run.id)
    assert other_probe.contexts == []

    clock.advance(seconds=VerificationConfig().claim_lease_seconds)
    assert other.verify_action(action.id, run.id).id == record.id


def test_unexpected_probe_error_releases_claim(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure a crashing probe leaves the record claimable and uncounted."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([RuntimeError("parser bug"), True]))
    action, run = _completed_action(lifecycle, runs)

    with pytest.raises(RuntimeError):
        engine.verify_action(action.id, run.id)

    record = engine.get_verification(action.id, run.id)
    assert record.verification_attempts == 0
    assert record.claimed_until is None
    assert engine.verify_action(action.id, run.id).status == "verified"


def test_sweep_isolates_item_failures(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure one failing item is reported and the rest still run."""
    registry = ProbeRegistry()
    outcomes = {"Broken page": RuntimeError("parser bug")}

    class _TitleProbe:
        def probe(self, context):
            outcome = outcomes.get(context.title)
            if outcome is not None:
                raise outcome
            return ScriptedProbe([True]).probe(context)

    registry.register("content_generation", _TitleProbe())
    sleeps: list[float] = []
    engine = VerificationEngine(
        sqlite_session_factory,
        registry,
        config=VerificationConfig(sweep_delay_seconds=0.1),
        clock=clock,
        sleep=sleeps.append,
    )
    for title in ("Good one", "Broken page", "Good two"):
        action, run = _completed_action(lifecycle, runs, title=title)
        engine.schedule_verification(action.id, run.id)
        clock.advance(seconds=1)

    report = engine.sweep()

    assert report.total_checked == 2
    assert report.verified == 2
    assert report.errors == ['Failed to verify "Broken page": parser bug']
    assert sleeps == [0.1, 0.1]


def test_sweep_filters_by_owner_and_force(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure sweeps can be scoped and forced past next_check_at."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([True]))
    action, run = _completed_action(lifecycle, runs)
    engine.schedule_verification(action.id, run.id, due_at=clock.now + timedelta(hours=1))

    assert engine.sweep(owner="someone-else", force=True).total_checked == 0
    assert engine.sweep(owner=OWNER).total_checked == 0
    assert engine.sweep(owner=OWNER, force=True).verified == 1


def test_pending_summary_and_history(
    sqlite_session_factory: sessionmaker,
    lifecycle: ActionLifecycleManager,
    runs: RunStore,
    clock: FakeClock,
) -> None:
    """Ensure pending counts and history reflect recorded checks."""
    engine = _engine(sqlite_session_factory, clock, ScriptedProbe([False]))
    first, first_run = _completed_action(lifecycle, runs, title="First")
    second, second_run = _completed_action(lifecycle, runs, title="Second")
    engine.schedule_verification(first.id, first_run.id)
    engine.schedule_verification(second.id, second_run.id, due_at=clock.now + timedelta(hours=2))
    engine.verify_action(first.id, first_run.id)

    summary = engine.pending_summary(owner=OWNER)
    history = engine.verification_history(OWNER)

    assert summary.pending == 1
    assert summary.needs_recheck == 1
    assert summary.due_for_check == 0
    assert len(history) == 1
    assert history[0].event_data["attempt"] == 1
    assert history[0].new_state == "needs_recheck"
