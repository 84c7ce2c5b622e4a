"""Error taxonomy for the agent lifecycle, queue and verification surfaces."""

from __future__ import annotations


class AgentError(Exception):
    """Base error carrying a stable code and an HTTP status mapping."""

    code = "agent_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        """Initialize the error with a message and structured details."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class ValidationError(AgentError, ValueError):
    """Raised when a request is missing fields or carries invalid values."""

    code = "validation_error"
    status_code = 400


class NotFoundError(AgentError, LookupError):
    """Raised when an entity is missing or not owned by the caller."""

    code = "not_found"
    status_code = 404

    def __init__(self, entity_type: str, entity_id: object) -> None:
        """Initialize the error with the missing entity reference."""
        super().__init__(
            f"{entity_type} not found: {entity_id}",
            {"entity_type": entity_type, "entity_id": str(entity_id)},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class InvalidStateError(AgentError):
    """Raised when a requested state transition is not permitted."""

    code = "invalid_state"
    status_code = 409

    def __init__(
        self,
        entity_type: str,
        current_status: str | None,
        target_status: str | None,
        reason: str | None = None,
    ) -> None:
        """Initialize the error with the rejected edge."""
        message = f"Invalid {entity_type} transition: {current_status} -> {target_status}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            message,
            {
                "entity_type": entity_type,
                "current_status": current_status,
                "target_status": target_status,
            },
        )
        self.entity_type = entity_type
        self.current_status = current_status
        self.target_status = target_status


class QueueSubmissionError(AgentError):
    """Raised when the queue cannot accept or persist a job."""

    code = "queue_submission_failed"
    status_code = 500
    retryable = True


class HandlerExecutionError(AgentError):
    """Raised when an action handler fails or exceeds its time budget."""

    code = "handler_execution_failed"

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        timed_out: bool = False,
        details: dict[str, object] | None = None,
    ) -> None:
        """Initialize the error with retry classification."""
        super().__init__(message, details)
        self.retryable = retryable
        self.timed_out = timed_out


class VerificationProbeError(AgentError):
    """Raised by probes when the real-world effect cannot be observed."""

    code = "verification_probe_failed"
    retryable = True
