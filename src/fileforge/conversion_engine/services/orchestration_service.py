"""
Orchestration Service
Entry point for callers: validates conversion requests, creates jobs, answers
status queries and manages realtime subscriptions.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import sessionmaker

from fileforge.config import get_settings
from fileforge.conversion_engine.events.broadcaster import (
    EventBroadcaster,
    QueueSubscriber,
    SubscriberHandle,
)
from fileforge.conversion_engine.events.event_bus import EventBus, event_bus as default_event_bus
from fileforge.conversion_engine.models.job import ConversionJob, JobStatus
from fileforge.conversion_engine.schemas.conversion import (
    ConversionOptions,
    JobStatusView,
    SubmitResult,
)
from fileforge.conversion_engine.services.format_catalog import (
    FormatCatalog,
    FormatCategory,
    FormatInfo,
    default_catalog,
)
from fileforge.conversion_engine.services.job_store import JobStore
from fileforge.conversion_engine.services.work_queue import WorkQueue
from fileforge.conversion_engine.storage.storage_interface import StorageProvider
from fileforge.database import get_db_session, session_scope
from fileforge.exceptions.handlers import NotFoundError, ValidationError

logger = logging.getLogger(__name__)


class ConversionOrchestrator:
    def __init__(
        self,
        storage: StorageProvider,
        *,
        catalog: Optional[FormatCatalog] = None,
        session_factory: Optional[sessionmaker] = None,
        event_bus: Optional[EventBus] = None,
        broadcaster: Optional[EventBroadcaster] = None,
        queue_options: Optional[Dict[str, Any]] = None,
        job_ttl_seconds: Optional[int] = None,
        download_url_ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.storage = storage
        self.catalog = catalog or default_catalog
        self.event_bus = event_bus or default_event_bus
        self._session_factory = session_factory
        self._queue_options = dict(queue_options or {})
        self._job_ttl_seconds = job_ttl_seconds
        self._clock = clock
        self.download_url_ttl = (
            download_url_ttl_seconds or get_settings().DOWNLOAD_URL_TTL_SECONDS
        )
        self.broadcaster = broadcaster or EventBroadcaster(self._snapshot)
        self.broadcaster.attach(self.event_bus)

    @contextmanager
    def _session(self):
        if self._session_factory is None:
            with get_db_session() as session:
                yield session
        else:
            with session_scope(self._session_factory) as session:
                yield session

    def _store(self, session) -> JobStore:
        return JobStore(session, ttl_seconds=self._job_ttl_seconds, clock=self._clock)

    # ── Submission ───────────────────────────────────────────────────

    def _validate_formats(self, source_format: str, target_format: str) -> tuple:
        source = self.catalog.find_format(source_format)
        if source is None:
            raise ValidationError(f"Unknown source format: {source_format}", field="sourceFormat")
        target = self.catalog.find_format(target_format)
        if target is None:
            raise ValidationError(f"Unknown target format: {target_format}", field="targetFormat")
        if not self.catalog.can_convert(source.extension, target.extension):
            raise ValidationError(
                f"Cannot convert {source_format} to {target_format}", field="targetFormat"
            )
        return source, target

    @staticmethod
    def _validate_options(
        options: Union[ConversionOptions, Mapping[str, Any], None]
    ) -> Dict[str, Any]:
        if options is None:
            return {}
        if isinstance(options, ConversionOptions):
            return options.to_payload()
        try:
            return ConversionOptions.model_validate(dict(options)).to_payload()
        except PydanticValidationError as e:
            problems = ", ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"Invalid options: {problems}", field="options") from e

    def submit(
        self,
        source_ref: str,
        source_format: str,
        target_format: str,
        options: Union[ConversionOptions, Mapping[str, Any], None] = None,
        *,
        source_file_id: Optional[str] = None,
    ) -> SubmitResult:
        """
        Validate and enqueue a conversion. Nothing is persisted when validation
        fails; the job and its queue task are committed together otherwise.
        """
        if not source_ref:
            raise ValidationError("Source reference is required", field="s3Key")
        source, target = self._validate_formats(source_format, target_format)
        clean_options = self._validate_options(options)

        with self._session() as session:
            job = self._store(session).create(
                source_ref,
                source.extension,
                target.extension,
                clean_options,
                source_file_id=source_file_id,
                commit=False,
            )
            WorkQueue(session, event_bus=self.event_bus, clock=self._clock, **self._queue_options).enqueue(
                job.id,
                {
                    "jobId": job.id,
                    "sourceKey": source_ref,
                    "sourceFormat": source.extension,
                    "targetFormat": target.extension,
                    "options": clean_options,
                },
                commit=False,
            )
            session.commit()
            job_id, status = job.id, job.status

        logger.info(
            "Conversion started: %s (%s -> %s)", job_id, source.extension, target.extension
        )
        return SubmitResult(
            job_id=job_id,
            status=status,
            source_format=source.extension,
            target_format=target.extension,
        )

    # ── Queries ──────────────────────────────────────────────────────

    def query(self, job_id: str) -> ConversionJob:
        with self._session() as session:
            job = self._store(session).get(job_id)
        if job is None:
            raise NotFoundError("Job not found", resource="job")
        return job

    def _snapshot(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._session() as session:
            job = self._store(session).get(job_id)
            return job.to_dict() if job else None

    def _signed_result_url(self, job: ConversionJob) -> Optional[str]:
        if job.job_status is not JobStatus.COMPLETED or not job.result_file_id:
            return None
        return self.storage.signed_url(job.result_file_id, self.download_url_ttl)

    def status(self, job_id: str) -> JobStatusView:
        job = self.query(job_id)
        return JobStatusView(
            job_id=job.id,
            status=job.status,
            progress=job.progress or 0,
            source_format=job.source_format,
            target_format=job.target_format,
            created_at=job.created_at,
            updated_at=job.updated_at,
            download_url=self._signed_result_url(job),
            error=job.error,
        )

    def download_url(self, job_id: str) -> str:
        job = self.query(job_id)
        url = self._signed_result_url(job)
        if url is None:
            raise ValidationError("Conversion not completed yet")
        return url

    # ── Subscriptions ────────────────────────────────────────────────

    def subscribe(
        self, job_id: str, handle: Optional[SubscriberHandle] = None
    ) -> SubscriberHandle:
        handle = handle if handle is not None else QueueSubscriber()
        self.broadcaster.subscribe(job_id, handle)
        return handle

    def unsubscribe(self, job_id: str, handle: SubscriberHandle) -> None:
        self.broadcaster.unsubscribe(job_id, handle)

    # ── Catalog ──────────────────────────────────────────────────────

    def list_formats(self, category: Union[FormatCategory, str, None] = None) -> List[FormatInfo]:
        if category is None:
            return list(self.catalog.list_formats())
        return self.catalog.list_by_category(category)

    def list_categories(self) -> List[FormatCategory]:
        return self.catalog.list_categories()
