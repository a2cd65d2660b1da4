"""create task event outbox table

Revision ID: b7d9f1a3c5e2
Revises: a1c2e3f4b5d6
Create Date: 2026-10-19 14:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "b7d9f1a3c5e2"
down_revision: Union[str, None] = "a1c2e3f4b5d6"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    bind = op.get_bind()
    if "ff_task_events" in set(sa.inspect(bind).get_table_names()):
        return
    op.create_table(
        "ff_task_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False),
        sa.Column("payload", _JSON, nullable=False),
        sa.Column("origin", sa.String(length=32), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ff_task_events_job_id", "ff_task_events", ["job_id"], unique=False)
    op.create_index(
        "ix_ff_task_events_created_at", "ff_task_events", ["created_at"], unique=False
    )


def downgrade() -> None:
    op.drop_index("ix_ff_task_events_created_at", table_name="ff_task_events")
    op.drop_index("ix_ff_task_events_job_id", table_name="ff_task_events")
    op.drop_table("ff_task_events")
