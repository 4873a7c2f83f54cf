"""initial schema

Revision ID: 001
Revises:
Create Date: 2025-10-03 19:18:09.000000
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

JOB_STATES = ("queued", "running", "done", "error")
JOB_KINDS = (
    "TRANSCRIBE",
    "HIGHLIGHT_DETECT",
    "CLIP_RENDER",
    "THUMBNAIL_GEN",
    "PUBLISH_TIKTOK",
    "PUBLISH_YOUTUBE",
    "YOUTUBE_DOWNLOAD",
    "CLEANUP_STORAGE",
)


def _in(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{v}'" for v in values)
    return f"{column} IN ({quoted})"


def upgrade() -> None:
    # ── jobs ──
    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("payload", postgresql.JSONB, server_default="{}", nullable=False),
        sa.Column("state", sa.String(32), server_default="queued", nullable=False),
        sa.Column("priority", sa.Integer, server_default="5", nullable=False),
        sa.Column("attempts", sa.Integer, server_default="0", nullable=False),
        sa.Column("max_attempts", sa.Integer, server_default="5", nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("locked_by", sa.String(128), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(_in("state", JOB_STATES), name="jobs_state_check"),
        sa.CheckConstraint(_in("kind", JOB_KINDS), name="jobs_kind_check"),
        sa.CheckConstraint("attempts >= 0", name="jobs_attempts_check"),
        sa.CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        # running <=> leased
        sa.CheckConstraint(
            "(state = 'running') = (locked_by IS NOT NULL)",
            name="jobs_lease_check",
        ),
    )
    op.create_index(
        "ix_jobs_queued_priority",
        "jobs",
        ["priority", "created_at"],
        postgresql_where=sa.text("state = 'queued'"),
    )
    op.create_index("ix_jobs_state_updated_at", "jobs", ["state", "updated_at"])
    op.create_index("ix_jobs_workspace_id", "jobs", ["workspace_id"])

    # ── job_events ──
    op.create_table(
        "job_events",
        sa.Column("id", sa.BigInteger, primary_key=True, autoincrement=True),
        sa.Column(
            "job_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column("detail", postgresql.JSONB, server_default="{}", nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.CheckConstraint(
            _in("stage", ("enqueued", "claimed", "retry_scheduled", "done", "error")),
            name="job_events_stage_check",
        ),
    )
    op.create_index("ix_job_events_job_id", "job_events", ["job_id"])

    # ── idempotency_keys ──
    op.create_table(
        "idempotency_keys",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("workspace_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("route", sa.String(128), nullable=False),
        sa.Column("key_hash", sa.String(64), nullable=False),
        sa.Column("response", postgresql.JSONB, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("workspace_id", "route", "key_hash", name="uq_idempotency_keys_scope"),
    )


def downgrade() -> None:
    for table in ["idempotency_keys", "job_events", "jobs"]:
        op.drop_table(table)
