"""
Job Store
Durable, TTL-bound records of conversion jobs.

Every write resets the record's TTL; expired records read as absent and are
removed by the purge sweep.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.orm import Session

from fileforge.config import get_settings
from fileforge.conversion_engine.models.job import ConversionJob, JobStatus
from fileforge.conversion_engine.services.job_errors import translate_db_errors
from fileforge.models.base import utcnow

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(
        self,
        session: Session,
        *,
        ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session = session
        self.ttl = timedelta(
            seconds=ttl_seconds if ttl_seconds is not None else get_settings().JOB_TTL_SECONDS
        )
        self._clock = clock or utcnow

    def create(
        self,
        source_ref: str,
        source_format: str,
        target_format: str,
        options: Optional[Dict[str, Any]] = None,
        *,
        source_file_id: Optional[str] = None,
        commit: bool = True,
    ) -> ConversionJob:
        """Persist a new pending job with a fresh id."""
        now = self._clock()
        job = ConversionJob(
            source_file_id=source_file_id or source_ref,
            source_key=source_ref,
            source_format=source_format,
            target_format=target_format,
            options=options or None,
            status=JobStatus.PENDING.value,
            progress=0,
            created_at=now,
            updated_at=now,
            expires_at=now + self.ttl,
        )
        with translate_db_errors("job store"):
            self.session.add(job)
            if commit:
                self.session.commit()
            else:
                self.session.flush()
        return job

    def get(self, job_id: str) -> Optional[ConversionJob]:
        with translate_db_errors("job store"):
            job = self.session.get(ConversionJob, job_id, populate_existing=True)
        if job is None or job.expires_at <= self._clock():
            return None
        return job

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        progress: Optional[int] = None,
        result_ref: Optional[str] = None,
        error: Optional[str] = None,
    ) -> bool:
        """
        Read-modify-write of the job status.

        Returns False without writing when the job is absent, already terminal,
        or the transition would move backwards. Progress never decreases and a
        completed job always reports 100.
        """
        status = JobStatus(status)
        with translate_db_errors("job store"):
            job = self.session.get(
                ConversionJob, job_id, with_for_update=True, populate_existing=True
            )
            now = self._clock()
            if job is None or job.expires_at <= now:
                logger.warning("Job %s not found; dropping %s update", job_id, status.value)
                self.session.rollback()
                return False

            current = job.job_status
            if current.is_terminal or status.rank < current.rank:
                logger.warning(
                    "Job %s: rejected transition %s -> %s",
                    job_id,
                    current.value,
                    status.value,
                )
                self.session.rollback()
                return False

            job.status = status.value
            if status is JobStatus.COMPLETED:
                job.progress = 100
            elif progress is not None:
                clamped = min(max(int(progress), 0), 100)
                if status is JobStatus.PROCESSING:
                    # Completion is the only way to reach 100.
                    clamped = min(clamped, 99)
                job.progress = max(job.progress or 0, clamped)
            if result_ref:
                job.result_file_id = result_ref
            if error:
                job.error = error
            if status.is_terminal:
                job.completed_at = now
            job.updated_at = now
            job.expires_at = now + self.ttl
            self.session.add(job)
            self.session.commit()
        return True

    def update_progress(self, job_id: str, progress: int) -> Optional[int]:
        """Record processing progress; returns the stored (monotonic) value."""
        if not self.update_status(job_id, JobStatus.PROCESSING, progress=progress):
            return None
        job = self.get(job_id)
        return job.progress if job else None

    def purge_expired(self) -> int:
        """TTL sweep: delete every job record whose TTL has elapsed."""
        with translate_db_errors("job store"):
            result = self.session.execute(
                delete(ConversionJob)
                .where(ConversionJob.expires_at <= self._clock())
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged %s expired job record(s)", purged)
        return purged
