"""
Conversion Job Model
Durable, TTL-bound record of one format conversion request.
"""

import enum
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from fileforge.models.base import Base, utcnow


class JobStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.PROCESSING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


class ConversionJob(Base):
    """
    Represents one request to transform a stored artifact into another format.
    """

    __tablename__ = "ff_conversion_jobs"
    __table_args__ = {"extend_existing": True}

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))

    # Source artifact
    source_file_id = Column(String, nullable=False)
    source_key = Column(String, nullable=False)  # storage key of the source artifact
    source_format = Column(String(16), nullable=False)
    target_format = Column(String(16), nullable=False)
    options = Column(JSON().with_variant(JSONB, "postgresql"), nullable=True)

    # Status
    status = Column(String(20), default=JobStatus.PENDING.value, index=True)
    progress = Column(Integer, default=0)
    result_file_id = Column(String, nullable=True)
    error = Column(Text, nullable=True)

    # Timing
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)

    @property
    def job_status(self) -> JobStatus:
        return JobStatus(self.status)

    def to_dict(self) -> Dict[str, Any]:
        """Stable JSON shape of the persisted job record."""
        data: Dict[str, Any] = {
            "id": self.id,
            "sourceFileId": self.source_file_id,
            "sourceFormat": self.source_format,
            "targetFormat": self.target_format,
            "status": self.status,
            "progress": self.progress or 0,
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if self.result_file_id:
            data["resultFileId"] = self.result_file_id
        if self.error:
            data["error"] = self.error
        if self.options:
            data["options"] = self.options
        return data
