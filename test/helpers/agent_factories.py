"""Shared builders and fakes for agent tests."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import threading
from typing import Any, Callable

from agent.handlers import ExecutionContext, HandlerResult
from agent.lifecycle import ActionLifecycleManager
from agent.probes import CheckDetail, ProbeContext, ProbeResult
from models import AgentAction

OWNER = "user-token-1"
SITE_URL = "https://example.com"


class FakeClock:
    """Manually advanced clock for deterministic scheduling tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingHandler:
    """Handler that records contexts and returns or raises what it is told."""

    def __init__(self, behavior: Callable[[ExecutionContext], HandlerResult] | None = None) -> None:
        self.calls: list[ExecutionContext] = []
        self._behavior = behavior or (lambda _context: HandlerResult(output={"ok": True}))

    def execute(self, context: ExecutionContext) -> HandlerResult:
        self.calls.append(context)
        return self._behavior(context)


class BlockingHandler:
    """Handler that blocks until released, used to force timeouts."""

    def __init__(self) -> None:
        self.release = threading.Event()

    def execute(self, context: ExecutionContext) -> HandlerResult:
        self.release.wait(5)
        return HandlerResult()


class ScriptedProbe:
    """Probe returning a scripted sequence of confirmations."""

    def __init__(self, outcomes: list[bool | Exception]) -> None:
        self._outcomes = list(outcomes)
        self.contexts: list[ProbeContext] = []

    def probe(self, context: ProbeContext) -> ProbeResult:
        self.contexts.append(context)
        outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        check = CheckDetail(
            check_type="scripted",
            target_url=context.site_url,
            expected=True,
            actual=outcome,
            passed=outcome,
        )
        return ProbeResult(
            confirmed=outcome,
            checks=(check,),
            summary="confirmed" if outcome else "not yet visible",
        )


def make_action(
    lifecycle: ActionLifecycleManager,
    *,
    owner: str = OWNER,
    action_type: str = "content_generation",
    title: str = "Write a guide",
    payload: dict[str, Any] | None = None,
    policy: dict[str, Any] | None = None,
    **kwargs: Any,
) -> AgentAction:
    """Create a proposed action with sensible defaults."""
    return lifecycle.create_action(
        owner,
        SITE_URL,
        action_type,
        title,
        payload={"topic": "Core Web Vitals"} if payload is None else payload,
        policy=policy,
        **kwargs,
    )


def queue_action(lifecycle: ActionLifecycleManager, action: AgentAction) -> str:
    """Move a proposed action to queued and submit it, returning the job id."""
    lifecycle.transition(action.id, action.owner, "queued")
    return lifecycle.submit_for_execution(action.id, action.owner)
