"""
Queue Task Model
One work queue entry per conversion job, keyed by the job id.
"""

import enum

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from fileforge.models.base import Base, utcnow


class TaskState(str, enum.Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    DEAD = "dead"


class QueueTask(Base):
    """
    A leasable unit of work.

    The job id is the primary key, so admission of a second task for the same
    job is rejected by the database itself.
    """

    __tablename__ = "ff_queue_tasks"
    __table_args__ = {"extend_existing": True}

    job_id = Column(String, primary_key=True)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)

    state = Column(String(20), default=TaskState.WAITING.value, index=True)

    # Execution Info
    attempt_count = Column(Integer, default=0)
    max_attempts = Column(Integer, default=3)
    lease_owner = Column(String(100), nullable=True)
    lease_token = Column(String(64), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    last_error_kind = Column(String(20), nullable=True)

    # Timing
    created_at = Column(DateTime, default=utcnow)
    scheduled_at = Column(DateTime, default=utcnow, index=True)  # Run after this time
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    retain_until = Column(DateTime, nullable=True, index=True)
