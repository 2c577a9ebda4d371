"""Job queue table.

Revision ID: v001
Revises:
Create Date: 2026-10-16 00:00:00.000000

Runs unchanged against both SQLite (dev) and PostgreSQL (production).
"""
from __future__ import annotations
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "v001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("queue_name", sa.String(128), nullable=True),
        sa.Column("task_identifier", sa.String(256), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="25"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("key", sa.String(512), nullable=True, unique=True),
        sa.Column("locked_by", sa.String(256), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_jobs_poll", "jobs", ["status", "priority", "run_at"])


def downgrade() -> None:
    op.drop_index("ix_jobs_poll", table_name="jobs")
    op.drop_table("jobs")
