"""
Domain Event Definitions for the conversion work queue.
These events represent task lifecycle changes published by the WorkQueue.
"""

from datetime import datetime
from typing import Dict, Any, Optional
from pydantic import BaseModel, Field
import uuid

from fileforge.models.base import utcnow


class DomainEvent(BaseModel):
    """Base class for all domain events."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    event_type: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TaskProgressEvent(DomainEvent):
    event_type: str = "task.progress"
    job_id: str
    progress: int
    attempt: int = 1


class TaskCompletedEvent(DomainEvent):
    event_type: str = "task.completed"
    job_id: str
    result_file_id: Optional[str] = None
    result: Dict[str, Any] = Field(default_factory=dict)


class TaskFailedEvent(DomainEvent):
    event_type: str = "task.failed"
    job_id: str
    reason: str
    error_kind: str
    attempts: int


TASK_EVENT_TYPES = {
    cls.model_fields["event_type"].default: cls
    for cls in (TaskProgressEvent, TaskCompletedEvent, TaskFailedEvent)
}
