"""Allocate queue FIFO positions from an autoincrement counter table.

Revision ID: 0002_job_sequence
Revises: 0001_agent_core
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

revision = "0002_job_sequence"
down_revision = "0001_agent_core"
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create the sequence counter and continue from the highest existing job."""
    op.create_table(
        "agent_job_sequence",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sqlite_autoincrement=True,
    )
    if op.get_bind().dialect.name == "postgresql":
        op.execute(
            "SELECT setval(pg_get_serial_sequence('agent_job_sequence', 'id'), "
            "COALESCE((SELECT MAX(sequence) FROM agent_jobs), 0) + 1, false)"
        )
    else:
        op.execute(
            "INSERT INTO agent_job_sequence (id) "
            "SELECT MAX(sequence) FROM agent_jobs HAVING MAX(sequence) IS NOT NULL"
        )


def downgrade() -> None:
    """Drop the sequence counter."""
    op.drop_table("agent_job_sequence")
