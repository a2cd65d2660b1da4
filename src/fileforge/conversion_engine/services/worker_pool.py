"""
Worker Pool
Bounded set of executor slots that lease conversion tasks and drive them
through download -> convert -> upload -> finalise.
"""

import contextvars
import logging
import os
import socket
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from fileforge.config import get_settings
from fileforge.conversion_engine.events.event_bus import EventBus, event_bus as default_event_bus
from fileforge.conversion_engine.models.job import ConversionJob, JobStatus
from fileforge.conversion_engine.services.converter_registry import ConverterRegistry
from fileforge.conversion_engine.services.format_catalog import FormatCatalog, default_catalog
from fileforge.conversion_engine.services.job_errors import (
    JobFatalError,
    LeaseLostError,
    Phase,
    classify_error,
)
from fileforge.conversion_engine.services.job_store import JobStore
from fileforge.conversion_engine.services.progress import (
    CONVERT_BAND,
    DOWNLOAD_BAND,
    UPLOAD_BAND,
    BandedProgressSink,
    ConversionCancelled,
)
from fileforge.conversion_engine.services.rate_limiter import RollingWindowRateLimiter
from fileforge.conversion_engine.services.work_queue import FailureOutcome, Lease, WorkQueue
from fileforge.conversion_engine.storage.storage_interface import StorageProvider
from fileforge.database import get_db_session, session_scope
from fileforge.exceptions.handlers import LeaseExpiredError
from fileforge.models.base import utcnow

logger = logging.getLogger(__name__)

RESULT_KEY_TEMPLATE = "results/{job_id}.{target_format}"


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def reap_expired_leases(queue: WorkQueue, store: JobStore) -> int:
    """Reclaims expired leases; jobs whose task went dead are finalised as failed."""
    finalised = 0
    for job_id, reason in queue.reclaim_expired_leases():
        if store.update_status(job_id, JobStatus.FAILED, error=reason):
            finalised += 1
    return finalised


def run_maintenance(queue: WorkQueue, store: JobStore) -> Dict[str, int]:
    """Applies the retention windows of tasks, job records and outbox events."""
    return {
        "tasks": queue.prune_finished(),
        "jobs": store.purge_expired(),
        "events": queue.prune_events(),
    }


class _Attempt:
    """Bookkeeping shared between an attempt's helper thread and its guard."""

    def __init__(self, lease: Lease):
        self.lease = lease
        self.cancel_event = threading.Event()
        self.done = threading.Event()
        self._lock = threading.Lock()
        self._last_beat = time.monotonic()

    def beat(self) -> None:
        with self._lock:
            self._last_beat = time.monotonic()

    def idle_seconds(self) -> float:
        with self._lock:
            return time.monotonic() - self._last_beat


class WorkerPool:
    def __init__(
        self,
        registry: ConverterRegistry,
        storage: StorageProvider,
        *,
        catalog: Optional[FormatCatalog] = None,
        session_factory: Optional[sessionmaker] = None,
        event_bus: Optional[EventBus] = None,
        concurrency: Optional[int] = None,
        rate_limiter: Optional[RollingWindowRateLimiter] = None,
        poll_interval: Optional[float] = None,
        lease_timeout: Optional[float] = None,
        queue_options: Optional[Dict[str, Any]] = None,
        job_ttl_seconds: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
        worker_id: Optional[str] = None,
        maintenance_interval: Optional[float] = None,
    ):
        settings = get_settings()
        self.registry = registry
        self.storage = storage
        self.catalog = catalog or default_catalog
        self.event_bus = event_bus or default_event_bus
        self.concurrency = max(1, concurrency or settings.WORKER_CONCURRENCY)
        self.rate_limiter = rate_limiter or RollingWindowRateLimiter(
            settings.WORKER_RATE_LIMIT_MAX,
            settings.WORKER_RATE_LIMIT_WINDOW_SECONDS,
        )
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
        )
        self.lease_timeout = float(lease_timeout or settings.JOB_LEASE_TIMEOUT_SECONDS)
        self.worker_id = worker_id or default_worker_id()
        self._session_factory = session_factory
        self._queue_options = dict(queue_options or {})
        self._queue_options.setdefault("lease_timeout_seconds", self.lease_timeout)
        self._job_ttl_seconds = job_ttl_seconds
        self._clock = clock
        self._stop_event = threading.Event()
        self.maintenance_interval = (
            maintenance_interval
            if maintenance_interval is not None
            else settings.MAINTENANCE_INTERVAL_SECONDS
        )
        self._maintenance_lock = threading.Lock()
        self._last_maintenance: Optional[datetime] = None
        self._threads: List[threading.Thread] = []

    # ── Collaborators ────────────────────────────────────────────────

    @contextmanager
    def _session(self):
        if self._session_factory is None:
            with get_db_session() as session:
                yield session
        else:
            with session_scope(self._session_factory) as session:
                yield session

    def _queue(self, session: Session) -> WorkQueue:
        return WorkQueue(
            session, event_bus=self.event_bus, clock=self._clock, **self._queue_options
        )

    def _store(self, session: Session) -> JobStore:
        return JobStore(session, ttl_seconds=self._job_ttl_seconds, clock=self._clock)

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self):
        """Starts one polling thread per slot."""
        if self.running:
            logger.warning(f"Worker pool '{self.worker_id}' is already running.")
            return

        logger.info(
            f"Worker pool '{self.worker_id}' starting {self.concurrency} slot(s), "
            f"converters for: {[c.value for c in self.registry.categories()]}"
        )
        self._stop_event.clear()
        self._threads = []
        for slot in range(self.concurrency):
            ctx = contextvars.copy_context()
            thread = threading.Thread(
                target=ctx.run,
                args=(self._run_loop, f"{self.worker_id}:{slot}"),
                name=f"Worker-{self.worker_id}-Slot-{slot}",
            )
            thread.start()
            self._threads.append(thread)

    def stop(self, timeout: Optional[float] = None):
        """Stops every slot and waits for in-flight attempts to finish."""
        if not self._threads:
            logger.warning(f"Worker pool '{self.worker_id}' is not running.")
            return

        logger.info(f"Worker pool '{self.worker_id}' stopping. Waiting for slots to join...")
        self._stop_event.set()
        join_timeout = timeout if timeout is not None else self.poll_interval + 1
        for thread in self._threads:
            thread.join(timeout=join_timeout)
            if thread.is_alive():
                logger.warning(f"Slot thread {thread.name} did not terminate gracefully.")
        self._threads = []
        logger.info(f"Worker pool '{self.worker_id}' stopped.")

    def _run_loop(self, slot_id: str):
        while not self._stop_event.is_set():
            processed = False
            try:
                processed = self._poll_once(slot_id)
            except Exception as e:
                logger.error(
                    f"Worker '{slot_id}' encountered an error during polling: {e}",
                    exc_info=True,
                )
            if not processed:
                wait = self.poll_interval
                delay = self.rate_limiter.seconds_until_available()
                if delay:
                    wait = max(wait, delay)
                self._stop_event.wait(wait)

    def run_once(self) -> bool:
        """Leases and processes one task in the current thread. Returns True if one ran."""
        try:
            return self._poll_once(self.worker_id)
        except Exception as e:
            logger.error(f"Worker '{self.worker_id}' error in run_once: {e}", exc_info=True)
        return False

    def _poll_once(self, slot_id: str) -> bool:
        self.reap_expired()
        self._maybe_maintain()
        if not self.rate_limiter.try_acquire():
            logger.debug(f"Worker '{slot_id}' rate limited")
            return False

        with self._session() as session:
            lease = self._queue(session).lease(slot_id)
        if lease is None:
            self.rate_limiter.refund()
            logger.debug(f"Worker '{slot_id}' found no eligible tasks.")
            return False

        self.process(lease)
        return True

    def reap_expired(self) -> int:
        """
        Reclaims expired leases and fails the jobs whose tasks went dead.
        Returns the number of jobs finalised as failed.
        """
        with self._session() as session:
            return reap_expired_leases(self._queue(session), self._store(session))

    def maintain(self) -> Dict[str, int]:
        """Prunes finished tasks and old outbox events and purges expired jobs."""
        with self._session() as session:
            removed = run_maintenance(self._queue(session), self._store(session))
        if any(removed.values()):
            logger.info(f"Worker pool '{self.worker_id}' maintenance removed {removed}")
        return removed

    def _maybe_maintain(self) -> bool:
        """Runs ``maintain()`` at most once per maintenance interval across all slots."""
        if self.maintenance_interval <= 0:
            return False
        now = (self._clock or utcnow)()
        with self._maintenance_lock:
            if (
                self._last_maintenance is not None
                and now - self._last_maintenance
                < timedelta(seconds=self.maintenance_interval)
            ):
                return False
            self._last_maintenance = now
        self.maintain()
        return True

    # ── Attempt execution ────────────────────────────────────────────

    def process(self, lease: Lease) -> None:
        """
        Runs one attempt on a helper thread and guards it against a stalled
        heartbeat. Blocks until the attempt finishes or is abandoned.
        """
        attempt = _Attempt(lease)
        ctx = contextvars.copy_context()
        helper = threading.Thread(
            target=ctx.run,
            args=(self._execute_attempt, attempt),
            name=f"Attempt-{lease.job_id}-{lease.attempt}",
            daemon=True,
        )
        helper.start()

        check_every = max(min(self.lease_timeout / 4.0, 1.0), 0.01)
        while not attempt.done.wait(timeout=check_every):
            if attempt.idle_seconds() >= self.lease_timeout:
                attempt.cancel_event.set()
                logger.error(
                    "Worker '%s' attempt %s of job %s stalled for %.1fs; abandoning",
                    lease.worker_id,
                    lease.attempt,
                    lease.job_id,
                    attempt.idle_seconds(),
                )
                self._handle_failure(
                    lease, LeaseExpiredError(lease.job_id, self.lease_timeout), Phase.CONVERT
                )
                return

    def _execute_attempt(self, attempt: _Attempt) -> None:
        lease = attempt.lease
        phase = Phase.FINALIZE
        try:
            job = self._begin(lease)
            if job is None:
                return

            category = self.catalog.category_of(job.source_format)
            if category is None:
                raise JobFatalError(f"Unknown source format: {job.source_format}")
            converter = self.registry.get(category)

            def on_progress(value: int) -> None:
                self._report_progress(attempt, value)

            phase = Phase.DOWNLOAD
            download = BandedProgressSink(*DOWNLOAD_BAND, on_progress, attempt.cancel_event)
            data = self.storage.get(job.source_key)
            download.report(50)
            download.report(100)

            phase = Phase.CONVERT
            sink = BandedProgressSink(*CONVERT_BAND, on_progress, attempt.cancel_event)
            output = converter.convert(
                data,
                job.source_format,
                job.target_format,
                dict(job.options or {}),
                sink,
            )
            if sink.cancelled:
                raise ConversionCancelled("conversion cancelled")
            if not isinstance(output, (bytes, bytearray)):
                raise TypeError(
                    f"Converter {type(converter).__name__} returned {type(output).__name__}, expected bytes"
                )

            phase = Phase.UPLOAD
            on_progress(UPLOAD_BAND[0])
            result_key = RESULT_KEY_TEMPLATE.format(
                job_id=job.id, target_format=job.target_format
            )
            self.storage.put(
                result_key, bytes(output), self.catalog.mime_type_for(job.target_format)
            )

            phase = Phase.FINALIZE
            self._finalise_success(attempt, result_key)
        except Exception as exc:
            self._handle_failure(lease, exc, phase)
        finally:
            attempt.done.set()

    def _begin(self, lease: Lease) -> Optional[ConversionJob]:
        """Marks the job processing. Returns None when there is nothing to run."""
        with self._session() as session:
            store = self._store(session)
            job = store.get(lease.job_id)
            if job is None:
                raise JobFatalError(f"Job not found: {lease.job_id}")
            if job.job_status.is_terminal:
                logger.info(
                    "Job %s already %s; acknowledging redelivered task",
                    lease.job_id,
                    job.status,
                )
                self._queue(session).complete(
                    lease, {"result_file_id": job.result_file_id, "redelivered": True}
                )
                return None
            logger.info(
                "Worker '%s' executing job %s (%s -> %s) attempt %s/%s",
                lease.worker_id,
                job.id,
                job.source_format,
                job.target_format,
                lease.attempt,
                lease.max_attempts,
            )
            if not store.update_status(job.id, JobStatus.PROCESSING, progress=0):
                raise JobFatalError(f"Job not found: {lease.job_id}")
            return job

    def _report_progress(self, attempt: _Attempt, value: int) -> None:
        if attempt.cancel_event.is_set():
            raise ConversionCancelled("conversion cancelled")
        attempt.beat()
        value = min(int(value), 99)
        lease = attempt.lease
        # The token-checked heartbeat and the job write share one transaction.
        with self._session() as session:
            queue = self._queue(session)
            if not queue.heartbeat(lease, value, commit=False):
                session.rollback()
                raise LeaseLostError(f"Lease of job {lease.job_id} lost")
            if not self._store(session).update_status(
                lease.job_id, JobStatus.PROCESSING, progress=value
            ):
                raise LeaseLostError(f"Job {lease.job_id} no longer accepts progress")
            queue.publish_pending()

    def _finalise_success(self, attempt: _Attempt, result_key: str) -> None:
        lease = attempt.lease
        if attempt.cancel_event.is_set():
            raise LeaseLostError(f"Lease of job {lease.job_id} lost before completion")
        with self._session() as session:
            queue = self._queue(session)
            if not queue.complete(lease, {"result_file_id": result_key}, commit=False):
                session.rollback()
                raise LeaseLostError(f"Lease of job {lease.job_id} lost before completion")
            if not self._store(session).update_status(
                lease.job_id, JobStatus.COMPLETED, result_ref=result_key
            ):
                raise LeaseLostError(f"Job {lease.job_id} could not be marked completed")
            queue.publish_pending()
        logger.info(
            "Worker '%s' completed job %s result=%s", lease.worker_id, lease.job_id, result_key
        )

    def _handle_failure(self, lease: Lease, exc: Exception, phase: Phase) -> None:
        kind, retryable = classify_error(exc, phase)
        message = str(exc) or exc.__class__.__name__
        logger.error(
            "Worker '%s' job %s failed during %s (%s, retryable=%s): %s",
            lease.worker_id,
            lease.job_id,
            phase.value,
            kind.value,
            retryable,
            message,
            exc_info=True,
        )
        try:
            with self._session() as session:
                outcome = self._queue(session).fail(
                    lease, message, kind=kind, retryable=retryable
                )
                if outcome is FailureOutcome.DEAD:
                    self._store(session).update_status(
                        lease.job_id, JobStatus.FAILED, error=message
                    )
        except Exception as e:
            # The lease will expire and the reaper redelivers or buries the task.
            logger.error(
                f"Worker '{lease.worker_id}' could not record failure of job {lease.job_id}: {e}"
            )
