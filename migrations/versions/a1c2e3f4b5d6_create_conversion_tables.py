"""create conversion job and queue task tables

Revision ID: a1c2e3f4b5d6
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "a1c2e3f4b5d6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_TASK_INDEXES = ("state", "lease_expires_at", "scheduled_at", "retain_until")


def upgrade() -> None:
    bind = op.get_bind()
    existing = set(sa.inspect(bind).get_table_names())

    if "ff_conversion_jobs" not in existing:
        op.create_table(
            "ff_conversion_jobs",
            sa.Column("id", sa.String(), nullable=False),
            sa.Column("source_file_id", sa.String(), nullable=False),
            sa.Column("source_key", sa.String(), nullable=False),
            sa.Column("source_format", sa.String(length=16), nullable=False),
            sa.Column("target_format", sa.String(length=16), nullable=False),
            sa.Column("options", _JSON, nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("progress", sa.Integer(), nullable=True),
            sa.Column("result_file_id", sa.String(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("updated_at", sa.DateTime(), nullable=True),
            sa.Column("completed_at", sa.DateTime(), nullable=True),
            sa.Column("expires_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index(
            "ix_ff_conversion_jobs_status", "ff_conversion_jobs", ["status"], unique=False
        )
        op.create_index(
            "ix_ff_conversion_jobs_expires_at",
            "ff_conversion_jobs",
            ["expires_at"],
            unique=False,
        )

    if "ff_queue_tasks" not in existing:
        op.create_table(
            "ff_queue_tasks",
            sa.Column("job_id", sa.String(), nullable=False),
            sa.Column("payload", _JSON, nullable=False),
            sa.Column("state", sa.String(length=20), nullable=True),
            sa.Column("attempt_count", sa.Integer(), nullable=True),
            sa.Column("max_attempts", sa.Integer(), nullable=True),
            sa.Column("lease_owner", sa.String(length=100), nullable=True),
            sa.Column("lease_token", sa.String(length=64), nullable=True),
            sa.Column("lease_expires_at", sa.DateTime(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("last_error_kind", sa.String(length=20), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=True),
            sa.Column("scheduled_at", sa.DateTime(), nullable=True),
            sa.Column("started_at", sa.DateTime(), nullable=True),
            sa.Column("finished_at", sa.DateTime(), nullable=True),
            sa.Column("retain_until", sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint("job_id"),
        )
        for column in _TASK_INDEXES:
            op.create_index(
                f"ix_ff_queue_tasks_{column}", "ff_queue_tasks", [column], unique=False
            )


def downgrade() -> None:
    for column in _TASK_INDEXES:
        op.drop_index(f"ix_ff_queue_tasks_{column}", table_name="ff_queue_tasks")
    op.drop_table("ff_queue_tasks")
    op.drop_index("ix_ff_conversion_jobs_expires_at", table_name="ff_conversion_jobs")
    op.drop_index("ix_ff_conversion_jobs_status", table_name="ff_conversion_jobs")
    op.drop_table("ff_conversion_jobs")
