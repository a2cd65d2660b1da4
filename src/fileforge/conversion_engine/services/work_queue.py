"""
Work Queue
Durable task queue with dedup-by-job-id admission, leasing, retry/backoff and
dead-task retention.

Mutual exclusion between executors relies solely on compare-and-set UPDATEs:
a lease is granted only if the row was still waiting, and every follow-up
(heartbeat, complete, fail) is conditioned on the lease token.

Lifecycle events are written to the ff_task_events outbox in the same
transaction as the state change and handed to the local event bus only after
that transaction commits.
"""

import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import asc, delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from fileforge.config import get_settings
from fileforge.conversion_engine.events.domain_events import (
    DomainEvent,
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskProgressEvent,
)
from fileforge.conversion_engine.events.event_bus import EventBus, event_bus as default_event_bus
from fileforge.conversion_engine.models.queue_task import QueueTask, TaskState
from fileforge.conversion_engine.models.task_event import TaskEvent
from fileforge.conversion_engine.services.job_errors import translate_db_errors
from fileforge.exceptions.handlers import ErrorKind
from fileforge.models.base import utcnow

logger = logging.getLogger(__name__)

_LEASE_CANDIDATES = 5


class FailureOutcome(str, enum.Enum):
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD = "dead"
    LEASE_LOST = "lease_lost"


@dataclass(frozen=True)
class Lease:
    job_id: str
    token: str
    worker_id: str
    attempt: int
    max_attempts: int
    expires_at: datetime
    payload: Dict[str, Any] = field(default_factory=dict)


class WorkQueue:
    def __init__(
        self,
        session: Session,
        *,
        event_bus: Optional[EventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        lease_timeout_seconds: Optional[float] = None,
        completed_retention_seconds: Optional[float] = None,
        dead_retention_seconds: Optional[float] = None,
        event_retention_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.session = session
        self.event_bus = event_bus or default_event_bus
        self._clock = clock or utcnow
        self.max_attempts = max_attempts or settings.JOB_MAX_ATTEMPTS_DEFAULT
        self.backoff_seconds = (
            backoff_seconds if backoff_seconds is not None else settings.JOB_RETRY_BACKOFF_SECONDS
        )
        self.lease_timeout = timedelta(
            seconds=lease_timeout_seconds or settings.JOB_LEASE_TIMEOUT_SECONDS
        )
        self.completed_retention = timedelta(
            seconds=completed_retention_seconds
            if completed_retention_seconds is not None
            else settings.QUEUE_COMPLETED_RETENTION_SECONDS
        )
        self.dead_retention = timedelta(
            seconds=dead_retention_seconds
            if dead_retention_seconds is not None
            else settings.QUEUE_DEAD_RETENTION_SECONDS
        )
        self.event_retention = timedelta(
            seconds=event_retention_seconds
            if event_retention_seconds is not None
            else settings.EVENT_RETENTION_SECONDS
        )
        self._pending_events: List[DomainEvent] = []

    def _dialect_name(self) -> str:
        return self.session.get_bind().dialect.name

    # ── Events ───────────────────────────────────────────────────────

    def _record(self, event: DomainEvent, job_id: str) -> None:
        """Adds ``event`` to the outbox of the current transaction."""
        self.session.add(
            TaskEvent(
                job_id=job_id,
                event_type=event.event_type,
                payload=event.model_dump(mode="json"),
                origin=self.event_bus.bus_id,
                created_at=self._clock(),
            )
        )
        self._pending_events.append(event)

    def publish_pending(self) -> int:
        """Publishes events recorded by committed writes to the local bus."""
        events, self._pending_events = self._pending_events, []
        for event in events:
            self.event_bus.publish(event)
        return len(events)

    def discard_pending(self) -> None:
        self._pending_events = []

    # ── Admission ────────────────────────────────────────────────────

    def enqueue(
        self,
        job_id: str,
        payload: Dict[str, Any],
        *,
        max_attempts: Optional[int] = None,
        commit: bool = True,
    ) -> bool:
        """
        Admit a task for ``job_id``. Returns False if a task for that id already
        exists; the check and the insert are a single atomic statement.
        """
        now = self._clock()
        values = {
            "job_id": job_id,
            "payload": payload,
            "state": TaskState.WAITING.value,
            "attempt_count": 0,
            "max_attempts": max_attempts or self.max_attempts,
            "created_at": now,
            "scheduled_at": now,
        }
        dialect = self._dialect_name()

        with translate_db_errors("work queue"):
            if dialect in ("sqlite", "postgresql"):
                if dialect == "postgresql":
                    from sqlalchemy.dialects.postgresql import insert as dialect_insert
                else:
                    from sqlalchemy.dialects.sqlite import insert as dialect_insert
                stmt = (
                    dialect_insert(QueueTask.__table__)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["job_id"])
                )
                admitted = (self.session.execute(stmt).rowcount or 0) == 1
            else:
                # Other dialects: the primary key still rejects the duplicate.
                # The savepoint keeps the caller's uncommitted writes.
                try:
                    with self.session.begin_nested():
                        self.session.execute(insert(QueueTask.__table__).values(**values))
                    admitted = True
                except IntegrityError:
                    admitted = False
            if commit:
                self.session.commit()

        if admitted:
            logger.info("Task %s admitted", job_id)
        else:
            logger.info("Task %s already queued; duplicate admission ignored", job_id)
        return admitted

    # ── Leasing ──────────────────────────────────────────────────────

    def lease(self, worker_id: str) -> Optional[Lease]:
        """Claim the next eligible task for ``worker_id``, or return None."""
        now = self._clock()
        with translate_db_errors("work queue"):
            candidates = (
                self.session.execute(
                    select(QueueTask.job_id)
                    .where(
                        QueueTask.state == TaskState.WAITING.value,
                        QueueTask.scheduled_at <= now,
                    )
                    .order_by(asc(QueueTask.scheduled_at), asc(QueueTask.created_at))
                    .limit(_LEASE_CANDIDATES)
                )
                .scalars()
                .all()
            )
            self.session.commit()
            for job_id in candidates:
                lease = self._try_claim(job_id, worker_id, now)
                if lease is not None:
                    return lease
        return None

    def _try_claim(self, job_id: str, worker_id: str, now: datetime) -> Optional[Lease]:
        token = uuid.uuid4().hex
        expires_at = now + self.lease_timeout
        result = self.session.execute(
            update(QueueTask)
            .where(
                QueueTask.job_id == job_id,
                QueueTask.state == TaskState.WAITING.value,
                QueueTask.scheduled_at <= now,
            )
            .values(
                state=TaskState.ACTIVE.value,
                lease_owner=worker_id,
                lease_token=token,
                lease_expires_at=expires_at,
                attempt_count=QueueTask.attempt_count + 1,
                started_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        if (result.rowcount or 0) != 1:
            return None

        task = self.session.get(QueueTask, job_id, populate_existing=True)
        lease = Lease(
            job_id=job_id,
            token=token,
            worker_id=worker_id,
            attempt=task.attempt_count,
            max_attempts=task.max_attempts,
            expires_at=expires_at,
            payload=dict(task.payload or {}),
        )
        logger.info(
            "Worker '%s' leased task %s (attempt %s/%s)",
            worker_id,
            job_id,
            lease.attempt,
            lease.max_attempts,
        )
        return lease

    def _lease_filter(self, lease: Lease):
        return (
            QueueTask.job_id == lease.job_id,
            QueueTask.lease_token == lease.token,
            QueueTask.state == TaskState.ACTIVE.value,
        )

    def holds_lease(self, lease: Lease) -> bool:
        with translate_db_errors("work queue"):
            found = self.session.execute(
                select(QueueTask.job_id).where(*self._lease_filter(lease))
            ).first()
            self.session.commit()
        return found is not None

    def heartbeat(
        self, lease: Lease, progress: Optional[int] = None, *, commit: bool = True
    ) -> bool:
        """
        Extend the lease; when ``progress`` is given also record it as an event.

        With ``commit=False`` the caller owns the transaction and must call
        ``publish_pending()`` once it has committed.
        """
        now = self._clock()
        with translate_db_errors("work queue"):
            result = self.session.execute(
                update(QueueTask)
                .where(*self._lease_filter(lease))
                .values(lease_expires_at=now + self.lease_timeout)
                .execution_options(synchronize_session=False)
            )
            held = (result.rowcount or 0) == 1
            if held and progress is not None:
                self._record(
                    TaskProgressEvent(
                        job_id=lease.job_id, progress=progress, attempt=lease.attempt
                    ),
                    lease.job_id,
                )
            if commit:
                self.session.commit()
        if held and commit:
            self.publish_pending()
        return held

    # ── Acknowledgement ──────────────────────────────────────────────

    def complete(
        self,
        lease: Lease,
        result: Optional[Dict[str, Any]] = None,
        *,
        commit: bool = True,
    ) -> bool:
        now = self._clock()
        result = dict(result or {})
        with translate_db_errors("work queue"):
            outcome = self.session.execute(
                update(QueueTask)
                .where(*self._lease_filter(lease))
                .values(
                    state=TaskState.COMPLETED.value,
                    lease_owner=None,
                    lease_token=None,
                    lease_expires_at=None,
                    finished_at=now,
                    retain_until=now + self.completed_retention,
                    last_error=None,
                    last_error_kind=None,
                )
                .execution_options(synchronize_session=False)
            )
            held = (outcome.rowcount or 0) == 1
            if held:
                self._record(
                    TaskCompletedEvent(
                        job_id=lease.job_id,
                        result_file_id=result.get("result_file_id"),
                        result=result,
                    ),
                    lease.job_id,
                )
            if commit:
                self.session.commit()
        if not held:
            logger.warning(
                "Worker '%s' lost the lease of task %s before completion",
                lease.worker_id,
                lease.job_id,
            )
            return False
        logger.info("Task %s completed", lease.job_id)
        if commit:
            self.publish_pending()
        return True

    def backoff_for(self, attempt: int) -> timedelta:
        return timedelta(seconds=self.backoff_seconds * (2 ** max(attempt - 1, 0)))

    def fail(
        self,
        lease: Lease,
        message: str,
        *,
        kind: ErrorKind = ErrorKind.CONVERSION,
        retryable: bool = True,
    ) -> FailureOutcome:
        """
        Record a failed attempt. Retryable failures with attempts left are
        rescheduled with exponential backoff; anything else moves the task to
        the dead set.
        """
        now = self._clock()
        retry = retryable and lease.attempt < lease.max_attempts
        if retry:
            values = dict(
                state=TaskState.WAITING.value,
                scheduled_at=now + self.backoff_for(lease.attempt),
            )
        else:
            values = dict(
                state=TaskState.DEAD.value,
                finished_at=now,
                retain_until=now + self.dead_retention,
            )
        values.update(
            lease_owner=None,
            lease_token=None,
            lease_expires_at=None,
            last_error=message,
            last_error_kind=ErrorKind(kind).value,
        )
        with translate_db_errors("work queue"):
            outcome = self.session.execute(
                update(QueueTask)
                .where(*self._lease_filter(lease))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            held = (outcome.rowcount or 0) == 1
            if held and not retry:
                self._record(
                    TaskFailedEvent(
                        job_id=lease.job_id,
                        reason=message,
                        error_kind=ErrorKind(kind).value,
                        attempts=lease.attempt,
                    ),
                    lease.job_id,
                )
            self.session.commit()
        if not held:
            logger.warning(
                "Worker '%s' lost the lease of task %s before recording failure: %s",
                lease.worker_id,
                lease.job_id,
                message,
            )
            return FailureOutcome.LEASE_LOST

        if retry:
            logger.warning(
                "Task %s attempt %s/%s failed (%s), retry in %ss: %s",
                lease.job_id,
                lease.attempt,
                lease.max_attempts,
                ErrorKind(kind).value,
                self.backoff_for(lease.attempt).total_seconds(),
                message,
            )
            return FailureOutcome.RETRY_SCHEDULED

        logger.error(
            "Task %s failed permanently after %s attempt(s) (%s): %s",
            lease.job_id,
            lease.attempt,
            ErrorKind(kind).value,
            message,
        )
        self.publish_pending()
        return FailureOutcome.DEAD

    # ── Maintenance ──────────────────────────────────────────────────

    def reclaim_expired_leases(self) -> List[Tuple[str, str]]:
        """
        Requeue tasks whose lease expired without acknowledgement.

        Returns ``(job_id, reason)`` for every task that went dead because its
        attempts were exhausted.
        """
        now = self._clock()
        with translate_db_errors("work queue"):
            expired = (
                self.session.execute(
                    select(QueueTask).where(
                        QueueTask.state == TaskState.ACTIVE.value,
                        QueueTask.lease_expires_at.isnot(None),
                        QueueTask.lease_expires_at < now,
                    )
                )
                .scalars()
                .all()
            )
            self.session.commit()

        dead: List[Tuple[str, str]] = []
        for task in expired:
            timeout = self.lease_timeout.total_seconds()
            reason = f"Lease expired after {timeout:g}s"
            lease = Lease(
                job_id=task.job_id,
                token=task.lease_token,
                worker_id=task.lease_owner or "",
                attempt=task.attempt_count or 0,
                max_attempts=task.max_attempts or self.max_attempts,
                expires_at=task.lease_expires_at,
            )
            outcome = self.fail(lease, reason, kind=ErrorKind.TIMEOUT, retryable=True)
            if outcome is FailureOutcome.DEAD:
                dead.append((task.job_id, reason))
            elif outcome is FailureOutcome.RETRY_SCHEDULED:
                logger.warning("Reclaimed expired lease of task %s", task.job_id)
        return dead

    def prune_finished(self) -> int:
        """Delete completed and dead tasks whose retention window has elapsed."""
        with translate_db_errors("work queue"):
            result = self.session.execute(
                delete(QueueTask)
                .where(
                    QueueTask.state.in_([TaskState.COMPLETED.value, TaskState.DEAD.value]),
                    QueueTask.retain_until.isnot(None),
                    QueueTask.retain_until <= self._clock(),
                )
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        pruned = result.rowcount or 0
        if pruned:
            logger.info("Pruned %s finished task(s)", pruned)
        return pruned

    def prune_events(self) -> int:
        """Delete outbox events older than the event retention window."""
        with translate_db_errors("work queue"):
            result = self.session.execute(
                delete(TaskEvent)
                .where(TaskEvent.created_at <= self._clock() - self.event_retention)
                .execution_options(synchronize_session=False)
            )
            self.session.commit()
        pruned = result.rowcount or 0
        if pruned:
            logger.info("Pruned %s task event(s)", pruned)
        return pruned

    def get_task(self, job_id: str) -> Optional[QueueTask]:
        with translate_db_errors("work queue"):
            return self.session.get(QueueTask, job_id, populate_existing=True)

    def list_dead(self, limit: int = 100) -> List[QueueTask]:
        with translate_db_errors("work queue"):
            return list(
                self.session.execute(
                    select(QueueTask)
                    .where(QueueTask.state == TaskState.DEAD.value)
                    .order_by(QueueTask.finished_at.desc())
                    .limit(limit)
                )
                .scalars()
                .all()
            )

    def counts(self) -> Dict[str, int]:
        with translate_db_errors("work queue"):
            rows = self.session.execute(
                select(QueueTask.state, func.count()).group_by(QueueTask.state)
            ).all()
        out = {state.value: 0 for state in TaskState}
        out.update({state: count for state, count in rows})
        return out
