"""Create idea backlog, action lifecycle, queue, run, verification and event tables.

Revision ID: 0001_agent_core
Revises:
Create Date: 2026-10-01 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0001_agent_core"
down_revision = None
branch_labels = None
depends_on = None


def _status_enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    """Create the agent core schema."""
    op.create_table(
        "ideas",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner", sa.String(length=200), nullable=False),
        sa.Column("site_url", sa.String(length=2000), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("hypothesis", sa.Text(), nullable=True),
        sa.Column("evidence", sa.JSON(), nullable=False),
        sa.Column("ice_score", sa.Integer(), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column(
            "status",
            _status_enum("idea_status", "open", "adopted", "rejected", "done"),
            nullable=False,
        ),
        sa.Column("adopted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "ice_score IS NULL OR (ice_score >= 1 AND ice_score <= 100)",
            name="ck_ideas_ice_score_range",
        ),
    )
    op.create_index("ix_ideas_owner_site", "ideas", ["owner", "site_url"])

    op.create_table(
        "agent_actions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("owner", sa.String(length=200), nullable=False),
        sa.Column("site_url", sa.String(length=2000), nullable=False),
        sa.Column("idea_id", sa.String(length=36), sa.ForeignKey("ideas.id"), nullable=True),
        sa.Column("action_type", sa.String(length=100), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("policy", sa.JSON(), nullable=False),
        sa.Column("priority_score", sa.Integer(), nullable=False),
        sa.Column("scheduled_for", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            _status_enum("action_status", "proposed", "queued", "running", "completed", "failed"),
            nullable=False,
        ),
        sa.Column("queue_generation", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("approved_by", sa.String(length=200), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column(
            "verification_status",
            _status_enum("verification_status", "pending", "needs_recheck", "verified", "failed"),
            nullable=True,
        ),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "priority_score >= 0 AND priority_score <= 100",
            name="ck_agent_actions_priority_range",
        ),
    )
    op.create_index("ix_agent_actions_owner_status", "agent_actions", ["owner", "status"])

    op.create_table(
        "agent_jobs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action_id", sa.String(length=36), sa.ForeignKey("agent_actions.id"), nullable=False),
        sa.Column("owner", sa.String(length=200), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column("attempt_generation", sa.Integer(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            _status_enum("job_status", "waiting", "active", "completed", "dead", "discarded"),
            nullable=False,
        ),
        sa.Column("available_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("attempts_made", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("claimed_by", sa.String(length=200), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("data", sa.JSON(), nullable=False),
    )
    op.create_index(
        "ix_agent_jobs_claim_order",
        "agent_jobs",
        ["status", "priority", "available_at", "sequence"],
    )

    op.create_table(
        "agent_runs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("action_id", sa.String(length=36), sa.ForeignKey("agent_actions.id"), nullable=False),
        sa.Column("job_id", sa.String(length=36), sa.ForeignKey("agent_jobs.id"), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(length=64), nullable=False, unique=True),
        sa.Column(
            "status",
            _status_enum("run_status", "running", "succeeded", "failed"),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("outcome", sa.JSON(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
    )
    op.create_index(
        "uq_agent_runs_one_active_per_action",
        "agent_runs",
        ["action_id"],
        unique=True,
        sqlite_where=sa.text("finished_at IS NULL"),
        postgresql_where=sa.text("finished_at IS NULL"),
    )

    op.create_table(
        "agent_verifications",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("action_id", sa.String(length=36), sa.ForeignKey("agent_actions.id"), nullable=False),
        sa.Column("run_id", sa.String(length=36), sa.ForeignKey("agent_runs.id"), nullable=False),
        sa.Column("owner", sa.String(length=200), nullable=False),
        sa.Column("site_url", sa.String(length=2000), nullable=False),
        sa.Column(
            "status",
            _status_enum("verification_status", "pending", "needs_recheck", "verified", "failed"),
            nullable=False,
        ),
        sa.Column("checks", sa.JSON(), nullable=False),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("verification_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("next_check_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(length=200), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("action_id", "run_id", name="uq_agent_verifications_action_run"),
    )
    op.create_index(
        "ix_agent_verifications_due",
        "agent_verifications",
        ["status", "next_check_at"],
    )

    op.create_table(
        "agent_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("owner", sa.String(length=200), nullable=True),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("entity_type", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=36), nullable=False),
        sa.Column("previous_state", sa.String(length=50), nullable=True),
        sa.Column("new_state", sa.String(length=50), nullable=True),
        sa.Column("triggered_by", sa.String(length=200), nullable=False),
        sa.Column("event_data", sa.JSON(), nullable=False),
        sa.Column("metadata", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_agent_events_entity", "agent_events", ["entity_type", "entity_id"])
    op.create_index("ix_agent_events_owner_type", "agent_events", ["owner", "event_type"])


def downgrade() -> None:
    """Drop the agent core schema."""
    op.drop_index("ix_agent_events_owner_type", table_name="agent_events")
    op.drop_index("ix_agent_events_entity", table_name="agent_events")
    op.drop_table("agent_events")
    op.drop_index("ix_agent_verifications_due", table_name="agent_verifications")
    op.drop_table("agent_verifications")
    op.drop_index("uq_agent_runs_one_active_per_action", table_name="agent_runs")
    op.drop_table("agent_runs")
    op.drop_index("ix_agent_jobs_claim_order", table_name="agent_jobs")
    op.drop_table("agent_jobs")
    op.drop_index("ix_agent_actions_owner_status", table_name="agent_actions")
    op.drop_table("agent_actions")
    op.drop_index("ix_ideas_owner_site", table_name="ideas")
    op.drop_table("ideas")
