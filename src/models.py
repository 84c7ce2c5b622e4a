"""Data models for the SEO agent core."""

from datetime import datetime, timezone
import uuid
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm.attributes import set_committed_value

# SQLAlchemy base
Base = declarative_base()


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


IDEA_STATUSES = ("open", "adopted", "rejected", "done")
ACTION_STATUSES = ("proposed", "queued", "running", "completed", "failed")
RUN_STATUSES = ("running", "succeeded", "failed")
JOB_STATUSES = ("waiting", "active", "completed", "dead", "discarded")
VERIFICATION_STATUSES = ("pending", "needs_recheck", "verified", "failed")

IdeaStatusEnum = Enum(*IDEA_STATUSES, name="idea_status", native_enum=False)
ActionStatusEnum = Enum(*ACTION_STATUSES, name="action_status", native_enum=False)
RunStatusEnum = Enum(*RUN_STATUSES, name="run_status", native_enum=False)
JobStatusEnum = Enum(*JOB_STATUSES, name="job_status", native_enum=False)
VerificationStatusEnum = Enum(
    *VERIFICATION_STATUSES,
    name="verification_status",
    native_enum=False,
)


class Idea(Base):
    """Candidate remediation proposed for a user's site."""

    __tablename__ = "ideas"
    __table_args__ = (
        CheckConstraint(
            "ice_score IS NULL OR (ice_score >= 1 AND ice_score <= 100)",
            name="ck_ideas_ice_score_range",
        ),
        Index("ix_ideas_owner_site", "owner", "site_url"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    owner = Column(String(200), nullable=False)
    site_url = Column(String(2000), nullable=False)
    title = Column(String(500), nullable=False)
    hypothesis = Column(Text, nullable=True)
    evidence = Column(JSON, nullable=False, default=dict)
    ice_score = Column(Integer, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    status = Column(IdeaStatusEnum, nullable=False, default="open")
    adopted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class AgentAction(Base):
    """Executable unit of work derived from an idea or created directly."""

    __tablename__ = "agent_actions"
    __table_args__ = (
        CheckConstraint(
            "priority_score >= 0 AND priority_score <= 100",
            name="ck_agent_actions_priority_range",
        ),
        Index("ix_agent_actions_owner_status", "owner", "status"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    owner = Column(String(200), nullable=False)
    site_url = Column(String(2000), nullable=False)
    idea_id = Column(String(36), ForeignKey("ideas.id"), nullable=True)
    action_type = Column(String(100), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    policy = Column(JSON, nullable=False, default=dict)
    priority_score = Column(Integer, nullable=False, default=50)
    scheduled_for = Column(DateTime(timezone=True), nullable=True)
    status = Column(ActionStatusEnum, nullable=False, default="proposed")
    queue_generation = Column(Integer, nullable=False, default=0)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approved_by = Column(String(200), nullable=True)
    error_message = Column(Text, nullable=True)
    verification_status = Column(VerificationStatusEnum, nullable=True)
    queued_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class JobSequence(Base):
    """Allocator for queue FIFO positions; each inserted row yields the next value."""

    __tablename__ = "agent_job_sequence"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True, autoincrement=True)


class AgentJob(Base):
    """Queue entry for one execution generation of an action."""

    __tablename__ = "agent_jobs"
    __table_args__ = (
        Index("ix_agent_jobs_claim_order", "status", "priority", "available_at", "sequence"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    sequence = Column(Integer, nullable=False)
    action_id = Column(String(36), ForeignKey("agent_actions.id"), nullable=False)
    owner = Column(String(200), nullable=False)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    attempt_generation = Column(Integer, nullable=False, default=1)
    priority = Column(Integer, nullable=False, default=50)
    status = Column(JobStatusEnum, nullable=False, default="waiting")
    available_at = Column(DateTime(timezone=True), nullable=False)
    enqueued_at = Column(DateTime(timezone=True), nullable=False)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    claimed_by = Column(String(200), nullable=True)
    lease_expires_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    data = Column(JSON, nullable=False, default=dict)


class AgentRun(Base):
    """Single execution attempt of an action."""

    __tablename__ = "agent_runs"
    __table_args__ = (
        Index(
            "uq_agent_runs_one_active_per_action",
            "action_id",
            unique=True,
            sqlite_where=text("finished_at IS NULL"),
            postgresql_where=text("finished_at IS NULL"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    action_id = Column(String(36), ForeignKey("agent_actions.id"), nullable=False)
    job_id = Column(String(36), ForeignKey("agent_jobs.id"), nullable=True)
    attempt = Column(Integer, nullable=False, default=1)
    idempotency_key = Column(String(64), nullable=False, unique=True)
    status = Column(RunStatusEnum, nullable=False, default="running")
    started_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    outcome = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)


class AgentVerification(Base):
    """Verification record for a completed run of an action."""

    __tablename__ = "agent_verifications"
    __table_args__ = (
        UniqueConstraint("action_id", "run_id", name="uq_agent_verifications_action_run"),
        Index("ix_agent_verifications_due", "status", "next_check_at"),
    )

    id = Column(String(36), primary_key=True, default=_new_id)
    action_id = Column(String(36), ForeignKey("agent_actions.id"), nullable=False)
    run_id = Column(String(36), ForeignKey("agent_runs.id"), nullable=False)
    owner = Column(String(200), nullable=False)
    site_url = Column(String(2000), nullable=False)
    status = Column(VerificationStatusEnum, nullable=False, default="pending")
    checks = Column(JSON, nullable=False, default=list)
    summary = Column(Text, nullable=True)
    verification_attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    next_check_at = Column(DateTime(timezone=True), nullable=True)
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    claimed_until = Column(DateTime(timezone=True), nullable=True)
    claimed_by = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)


class AgentEvent(Base):
    """Append-only audit record of a state transition."""

    __tablename__ = "agent_events"
    __table_args__ = (
        Index("ix_agent_events_entity", "entity_type", "entity_id"),
        Index("ix_agent_events_owner_type", "owner", "event_type"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner = Column(String(200), nullable=True)
    event_type = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(36), nullable=False)
    previous_state = Column(String(50), nullable=True)
    new_state = Column(String(50), nullable=True)
    triggered_by = Column(String(200), nullable=False, default="system")
    event_data = Column(JSON, nullable=False, default=dict)
    event_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


def _ensure_aware_timestamp(value: datetime | None) -> datetime | None:
    """Normalize timestamps to UTC when timezone info is missing."""
    if value is None:
        return None
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


_TIMESTAMP_COLUMNS: dict[type, tuple[str, ...]] = {
    Idea: ("adopted_at", "completed_at", "rejected_at", "created_at", "updated_at"),
    AgentAction: (
        "scheduled_for",
        "approved_at",
        "queued_at",
        "started_at",
        "completed_at",
        "failed_at",
        "created_at",
        "updated_at",
    ),
    AgentJob: ("available_at", "enqueued_at", "lease_expires_at", "finished_at"),
    AgentRun: ("started_at", "finished_at"),
    AgentVerification: (
        "next_check_at",
        "last_checked_at",
        "completed_at",
        "claimed_until",
        "created_at",
        "updated_at",
    ),
    AgentEvent: ("created_at",),
}


def _register_timestamp_normalizer(model: type, columns: tuple[str, ...]) -> None:
    """Ensure loaded timestamps retain timezone awareness (SQLite drops it)."""

    def _normalize_on_load(target: Any, _context: object) -> None:
        for column in columns:
            if column in target.__dict__:
                set_committed_value(target, column, _ensure_aware_timestamp(target.__dict__[column]))

    event.listen(model, "load", _normalize_on_load)
    event.listen(
        model,
        "refresh",
        lambda target, context, _attrs: _normalize_on_load(target, context),
    )


for _model, _columns in _TIMESTAMP_COLUMNS.items():
    _register_timestamp_normalizer(_model, _columns)


# Pydantic models for API responses
class IdeaRecord(BaseModel):
    """Serialized idea."""

    id: str
    owner: str
    site_url: str
    title: str
    hypothesis: Optional[str] = None
    evidence: dict[str, Any] = Field(default_factory=dict)
    ice_score: Optional[int] = None
    tags: list[str] = Field(default_factory=list)
    status: str
    adopted_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ActionRecord(BaseModel):
    """Serialized action."""

    id: str
    owner: str
    site_url: str
    idea_id: Optional[str] = None
    action_type: str
    title: str
    description: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    policy: dict[str, Any] = Field(default_factory=dict)
    priority_score: int
    scheduled_for: Optional[datetime] = None
    status: str
    queue_generation: int
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    error_message: Optional[str] = None
    verification_status: Optional[str] = None
    queued_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class RunRecord(BaseModel):
    """Serialized run."""

    id: str
    action_id: str
    job_id: Optional[str] = None
    attempt: int
    idempotency_key: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    outcome: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class VerificationRecord(BaseModel):
    """Serialized verification result."""

    id: str
    action_id: str
    run_id: str
    status: str
    checks: list[dict[str, Any]] = Field(default_factory=list)
    summary: Optional[str] = None
    verification_attempts: int
    max_attempts: int
    next_check_at: Optional[datetime] = None
    last_checked_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class EventRecord(BaseModel):
    """Serialized audit event."""

    id: int
    owner: Optional[str] = None
    event_type: str
    entity_type: str
    entity_id: str
    previous_state: Optional[str] = None
    new_state: Optional[str] = None
    triggered_by: str
    event_data: dict[str, Any] = Field(default_factory=dict)
    event_metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
