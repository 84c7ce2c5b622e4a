"""Action handler protocol, registry and the built-in dry-run handler."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any, Protocol

from agent.errors import HandlerExecutionError
from agent.payloads import PayloadModel, patch_count
from agent.policy import ExecutionPolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionContext:
    """Everything a handler receives for one execution attempt."""

    action_id: str
    owner: str
    site_url: str
    action_type: str
    payload: PayloadModel
    policy: ExecutionPolicy
    run_id: str
    job_id: str
    attempt: int
    idempotency_key: str


@dataclass(frozen=True)
class HandlerResult:
    """Outcome reported by a handler."""

    output: dict[str, Any] = field(default_factory=dict)
    pages_processed: int = 0
    patches_applied: int = 0

    def to_outcome(self) -> dict[str, Any]:
        return {
            "output": dict(self.output),
            "stats": {
                "pages_processed": self.pages_processed,
                "patches_applied": self.patches_applied,
            },
        }


class ActionHandler(Protocol):
    """Performs the side effect of one action type."""

    def execute(self, context: ExecutionContext) -> HandlerResult:
        """Run the action and report what was done."""
        ...


class DryRunHandler:
    """Simulate an action without touching external systems."""

    def execute(self, context: ExecutionContext) -> HandlerResult:
        planned = patch_count(context.payload)
        logger.info(
            "Dry run: action_id=%s action_type=%s planned_patches=%s",
            context.action_id,
            context.action_type,
            planned,
        )
        return HandlerResult(
            output={
                "message": "Dry run completed",
                "dry_run": True,
                "planned_patches": planned,
            },
            pages_processed=0,
            patches_applied=0,
        )


@dataclass(frozen=True)
class _Registration:
    handler: ActionHandler
    handles_dry_run: bool


class HandlerRegistry:
    """Map action types to handlers.

    DRY_RUN policies route to the dry-run handler unless the registered handler
    declares that it simulates itself.
    """

    def __init__(self, *, dry_run_handler: ActionHandler | None = None) -> None:
        self._handlers: dict[str, _Registration] = {}
        self._dry_run_handler = dry_run_handler or DryRunHandler()

    def register(
        self,
        action_type: str,
        handler: ActionHandler,
        *,
        handles_dry_run: bool = False,
    ) -> None:
        """Register the handler for an action type, replacing any previous one."""
        if not action_type:
            raise ValueError("action_type must be provided.")
        self._handlers[action_type] = _Registration(handler, handles_dry_run)

    def resolve(self, action_type: str, policy: ExecutionPolicy) -> ActionHandler:
        """Return the handler to invoke for the action type under the policy."""
        registration = self._handlers.get(action_type)
        if policy.is_dry_run and (registration is None or not registration.handles_dry_run):
            return self._dry_run_handler
        if registration is None:
            raise HandlerExecutionError(
                f"No handler registered for action type: {action_type}",
                retryable=False,
            )
        return registration.handler

    def registered_types(self) -> list[str]:
        return sorted(self._handlers)
