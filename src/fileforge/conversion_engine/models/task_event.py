"""
Task Event Model
Outbox of task lifecycle events, written in the same transaction as the queue
update that produced them and tailed by processes serving subscribers.
"""

from sqlalchemy import JSON, Column, DateTime, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from fileforge.models.base import Base, utcnow


class TaskEvent(Base):
    __tablename__ = "ff_task_events"
    __table_args__ = {"extend_existing": True}

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, nullable=False, index=True)
    event_type = Column(String(32), nullable=False)
    payload = Column(JSON().with_variant(JSONB, "postgresql"), nullable=False)
    origin = Column(String(32), nullable=True)  # EventBus.bus_id of the writer
    created_at = Column(DateTime, default=utcnow, index=True)
