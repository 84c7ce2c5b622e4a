"""Execution policy model and per-action-type defaults."""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from agent.errors import ValidationError

ExecutionEnvironment = Literal["DRY_RUN", "PRODUCTION"]


class ExecutionPolicy(BaseModel):
    """Constraints applied to every execution attempt of an action."""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    environment: ExecutionEnvironment = "DRY_RUN"
    max_pages: int = Field(default=10, ge=0, alias="maxPages")
    max_patches: int = Field(default=20, ge=0, alias="maxPatches")
    timeout_ms: int = Field(default=300_000, gt=0, alias="timeoutMs")
    requires_approval: bool = Field(default=False, alias="requiresApproval")
    skip_verification: bool = Field(default=False, alias="skipVerification")
    max_attempts: int | None = Field(default=None, ge=1, alias="maxAttempts")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def is_dry_run(self) -> bool:
        return self.environment == "DRY_RUN"

    def to_storage(self) -> dict[str, Any]:
        """Serialize using snake_case keys for the JSON column."""
        return self.model_dump(mode="json")


BASE_POLICY = ExecutionPolicy()

DEFAULT_POLICIES: dict[str, ExecutionPolicy] = {
    "technical_seo_crawl": ExecutionPolicy(
        environment="PRODUCTION",
        max_pages=100,
        max_patches=0,
        timeout_ms=300_000,
        requires_approval=False,
    ),
    "content_generation": ExecutionPolicy(
        environment="DRY_RUN",
        max_pages=1,
        timeout_ms=300_000,
        requires_approval=False,
    ),
    "technical_seo_fix": ExecutionPolicy(
        environment="DRY_RUN",
        max_pages=20,
        max_patches=50,
        timeout_ms=600_000,
        requires_approval=True,
    ),
    "cms_publishing": ExecutionPolicy(
        environment="DRY_RUN",
        max_pages=1,
        timeout_ms=300_000,
        requires_approval=True,
    ),
    "schema_injection": ExecutionPolicy(
        environment="DRY_RUN",
        max_pages=10,
        max_patches=20,
        timeout_ms=300_000,
        requires_approval=True,
    ),
}


def default_policy_for(action_type: str) -> ExecutionPolicy:
    """Return the default policy for an action type."""
    return DEFAULT_POLICIES.get(action_type, BASE_POLICY)


def resolve_policy(
    action_type: str,
    requested: Mapping[str, Any] | ExecutionPolicy | None = None,
) -> ExecutionPolicy:
    """Merge requested policy fields over the action type's defaults.

    Requested fields win field by field; camelCase and snake_case keys are
    both accepted.
    """
    base = default_policy_for(action_type)
    if requested is None:
        return base
    if isinstance(requested, ExecutionPolicy):
        return requested
    if not isinstance(requested, Mapping):
        raise ValidationError("policy must be an object.")
    merged = base.model_dump()
    try:
        overrides = ExecutionPolicy.model_validate({**merged, **_normalize_keys(requested)})
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid policy: {_first_error(exc)}") from exc
    return overrides


def load_policy(stored: Mapping[str, Any] | None, action_type: str) -> ExecutionPolicy:
    """Rebuild a policy from its stored form, filling defaults when absent."""
    if not stored:
        return default_policy_for(action_type)
    return resolve_policy(action_type, stored)


_ALIASES = {
    field.alias: name
    for name, field in ExecutionPolicy.model_fields.items()
    if field.alias is not None
}


def _normalize_keys(values: Mapping[str, Any]) -> dict[str, Any]:
    return {_ALIASES.get(key, key): value for key, value in values.items()}


def _first_error(exc: PydanticValidationError) -> str:
    error = exc.errors()[0]
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}" if location else str(error.get("msg"))
