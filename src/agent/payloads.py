"""Typed action payloads discriminated by action type."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from agent.errors import ValidationError

ChangeType = Literal["upsert_meta", "add_alt_text", "inject_schema", "set_canonical"]


class PatchSpec(BaseModel):
    """One page-level change applied by a technical fix."""

    model_config = ConfigDict(extra="allow")

    change_type: ChangeType
    target_url: str = Field(min_length=1)
    selector: str | None = None
    element_type: str | None = None
    before_value: str | None = None
    after_value: str | None = None


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="allow")


class TechnicalSeoFixPayload(_PayloadBase):
    action_type: Literal["technical_seo_fix"]
    patches: list[PatchSpec] = Field(min_length=1)


class SchemaInjectionPayload(_PayloadBase):
    action_type: Literal["schema_injection"]
    patches: list[PatchSpec] = Field(min_length=1)


class ContentGenerationPayload(_PayloadBase):
    action_type: Literal["content_generation"]
    topic: str = Field(min_length=1)
    keywords: list[str] = Field(default_factory=list)
    target_url: str | None = None


class CmsPublishingPayload(_PayloadBase):
    action_type: Literal["cms_publishing"]
    cms_article_id: str | None = None
    public_url: str | None = None


class TechnicalSeoCrawlPayload(_PayloadBase):
    action_type: Literal["technical_seo_crawl"]
    max_pages: int | None = Field(default=None, ge=1)
    start_url: str | None = None


class GenericPayload(_PayloadBase):
    """Free-form payload for action types without a registered schema."""

    action_type: str


ActionPayload = Annotated[
    Union[
        TechnicalSeoFixPayload,
        SchemaInjectionPayload,
        ContentGenerationPayload,
        CmsPublishingPayload,
        TechnicalSeoCrawlPayload,
    ],
    Field(discriminator="action_type"),
]
PayloadModel = Union[
    TechnicalSeoFixPayload,
    SchemaInjectionPayload,
    ContentGenerationPayload,
    CmsPublishingPayload,
    TechnicalSeoCrawlPayload,
    GenericPayload,
]

_TYPED_ACTION_TYPES = frozenset(
    {
        "technical_seo_fix",
        "schema_injection",
        "content_generation",
        "cms_publishing",
        "technical_seo_crawl",
    }
)
_PAYLOAD_ADAPTER: TypeAdapter = TypeAdapter(ActionPayload)


def parse_payload(action_type: str, payload: Mapping[str, Any] | None) -> PayloadModel:
    """Validate a stored payload against the schema for its action type."""
    if payload is not None and not isinstance(payload, Mapping):
        raise ValidationError("payload must be an object.")
    data = {**dict(payload or {}), "action_type": action_type}
    try:
        if action_type in _TYPED_ACTION_TYPES:
            return _PAYLOAD_ADAPTER.validate_python(data)
        return GenericPayload.model_validate(data)
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        location = ".".join(str(part) for part in error.get("loc", ()) if part != action_type)
        raise ValidationError(
            f"Invalid {action_type} payload: {location or 'payload'}: {error.get('msg')}",
            {"action_type": action_type},
        ) from exc


def patch_count(payload: PayloadModel) -> int:
    """Return how many patches a payload asks to apply."""
    patches = getattr(payload, "patches", None)
    return len(patches) if patches else 0
