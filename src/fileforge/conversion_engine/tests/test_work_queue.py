from __future__ import annotations

import os
import threading
from datetime import timedelta

import pytest
from sqlalchemy import select

from fileforge.conversion_engine.events.domain_events import (
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskProgressEvent,
)
from fileforge.conversion_engine.models.queue_task import TaskState
from fileforge.conversion_engine.models.task_event import TaskEvent
from fileforge.conversion_engine.services.job_store import JobStore
from fileforge.conversion_engine.services.work_queue import FailureOutcome, WorkQueue
from fileforge.exceptions.handlers import ErrorKind


def _queue(session, bus, clock, **kwargs):
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("backoff_seconds", 1.0)
    kwargs.setdefault("lease_timeout_seconds", 30)
    kwargs.setdefault("completed_retention_seconds", 3600)
    kwargs.setdefault("dead_retention_seconds", 86400)
    return WorkQueue(session, event_bus=bus, clock=clock, **kwargs)


@pytest.fixture()
def queue(session, bus, clock):
    return _queue(session, bus, clock)


def _collect(bus, event_type):
    events = []
    bus.subscribe(event_type, events.append)
    return events


def test_enqueue_rejects_duplicate_job_id(queue):
    assert queue.enqueue("job-1", {"jobId": "job-1"})
    assert not queue.enqueue("job-1", {"jobId": "job-1", "again": True})
    assert queue.counts()["waiting"] == 1
    assert queue.get_task("job-1").payload == {"jobId": "job-1"}


def test_duplicate_never_yields_second_lease(queue):
    queue.enqueue("job-1", {})
    lease = queue.lease("w1")
    assert lease is not None
    assert lease.attempt == 1
    assert not queue.enqueue("job-1", {})
    assert queue.lease("w2") is None


def test_concurrent_lease_is_granted_once(session_factory, bus, clock):
    setup = session_factory()
    _queue(setup, bus, clock).enqueue("job-1", {})
    setup.close()

    barrier = threading.Barrier(6)
    granted = []
    errors = []

    def contend(worker_id):
        db = session_factory()
        try:
            barrier.wait()
            lease = _queue(db, bus, clock).lease(worker_id)
            if lease is not None:
                granted.append(lease)
        except Exception as e:  # pragma: no cover
            errors.append(e)
        finally:
            db.close()

    threads = [threading.Thread(target=contend, args=(f"w{i}",)) for i in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert errors == []
    assert len(granted) == 1


def test_retry_uses_exponential_backoff_then_dead(queue, bus, clock):
    failed_events = _collect(bus, TaskFailedEvent)
    queue.enqueue("job-1", {})

    lease = queue.lease("w1")
    assert queue.fail(lease, "boom 1") is FailureOutcome.RETRY_SCHEDULED
    task = queue.get_task("job-1")
    assert task.state == TaskState.WAITING.value
    assert task.scheduled_at == clock() + timedelta(seconds=1)
    assert queue.lease("w1") is None

    clock.advance(1)
    lease = queue.lease("w1")
    assert lease.attempt == 2
    assert queue.fail(lease, "boom 2") is FailureOutcome.RETRY_SCHEDULED
    assert queue.get_task("job-1").scheduled_at == clock() + timedelta(seconds=2)

    clock.advance(2)
    lease = queue.lease("w1")
    assert lease.attempt == 3
    assert queue.fail(lease, "boom 3", kind=ErrorKind.CONVERSION) is FailureOutcome.DEAD

    dead = queue.get_task("job-1")
    assert dead.state == TaskState.DEAD.value
    assert dead.last_error == "boom 3"
    assert dead.last_error_kind == "conversion"
    assert dead.retain_until == clock() + timedelta(seconds=86400)
    assert [t.job_id for t in queue.list_dead()] == ["job-1"]

    assert len(failed_events) == 1
    assert failed_events[0].reason == "boom 3"
    assert failed_events[0].attempts == 3


def test_non_retryable_failure_goes_dead_immediately(queue):
    queue.enqueue("job-1", {})
    lease = queue.lease("w1")
    outcome = queue.fail(lease, "no converter", kind=ErrorKind.FATAL, retryable=False)
    assert outcome is FailureOutcome.DEAD
    assert queue.get_task("job-1").attempt_count == 1


def test_complete_publishes_and_retains(queue, bus, clock):
    completed = _collect(bus, TaskCompletedEvent)
    queue.enqueue("job-1", {})
    lease = queue.lease("w1")
    assert queue.complete(lease, {"result_file_id": "results/job-1.wav"})

    assert completed[0].job_id == "job-1"
    assert completed[0].result_file_id == "results/job-1.wav"
    assert queue.get_task("job-1").state == TaskState.COMPLETED.value

    clock.advance(3599)
    assert queue.prune_finished() == 0
    clock.advance(1)
    assert queue.prune_finished() == 1
    assert queue.get_task("job-1") is None
    # Pruned ids may be admitted again.
    assert queue.enqueue("job-1", {})


def test_dead_tasks_are_kept_for_retention_window(queue, clock):
    queue.enqueue("job-1", {})
    queue.fail(queue.lease("w1"), "fatal", retryable=False)
    clock.advance(86399)
    assert queue.prune_finished() == 0
    clock.advance(1)
    assert queue.prune_finished() == 1


def test_heartbeat_extends_lease_and_publishes_progress(queue, bus, clock):
    progress = _collect(bus, TaskProgressEvent)
    queue.enqueue("job-1", {})
    lease = queue.lease("w1")

    clock.advance(20)
    assert queue.heartbeat(lease, 42)
    assert queue.get_task("job-1").lease_expires_at == clock() + timedelta(seconds=30)
    assert [(e.job_id, e.progress) for e in progress] == [("job-1", 42)]

    clock.advance(20)
    assert queue.reclaim_expired_leases() == []
    assert queue.holds_lease(lease)


def test_expired_lease_is_redelivered_and_old_token_rejected(queue, bus, clock):
    progress = _collect(bus, TaskProgressEvent)
    queue.enqueue("job-1", {})
    stale = queue.lease("w1")

    clock.advance(31)
    assert queue.reclaim_expired_leases() == []
    task = queue.get_task("job-1")
    assert task.state == TaskState.WAITING.value
    assert task.last_error_kind == "timeout"

    clock.advance(1)
    fresh = queue.lease("w2")
    assert fresh.attempt == 2

    assert not queue.holds_lease(stale)
    assert not queue.heartbeat(stale, 50)
    assert not queue.complete(stale)
    assert queue.fail(stale, "late") is FailureOutcome.LEASE_LOST
    assert progress == []
    assert queue.holds_lease(fresh)


def test_expired_lease_on_last_attempt_goes_dead(session, bus, clock):
    queue = _queue(session, bus, clock, max_attempts=1)
    failed = _collect(bus, TaskFailedEvent)
    queue.enqueue("job-1", {})
    queue.lease("w1")

    clock.advance(31)
    assert queue.reclaim_expired_leases() == [("job-1", "Lease expired after 30s")]
    assert queue.get_task("job-1").state == TaskState.DEAD.value
    assert failed[0].error_kind == "timeout"


def test_per_task_attempt_cap_overrides_default(queue):
    queue.enqueue("job-1", {}, max_attempts=1)
    lease = queue.lease("w1")
    assert lease.max_attempts == 1
    assert queue.fail(lease, "boom") is FailureOutcome.DEAD


def test_lease_respects_schedule_order(queue, clock):
    queue.enqueue("job-a", {})
    clock.advance(1)
    queue.enqueue("job-b", {})
    assert queue.lease("w1").job_id == "job-a"
    assert queue.lease("w1").job_id == "job-b"


def test_lifecycle_events_are_written_to_the_outbox(queue, session, bus, clock):
    queue.enqueue("job-1", {})
    lease = queue.lease("w1")
    queue.heartbeat(lease)
    queue.heartbeat(lease, 40)
    queue.complete(lease, {"result_file_id": "results/job-1.wav"})

    queue.enqueue("job-2", {}, max_attempts=2)
    queue.fail(queue.lease("w1"), "first")
    clock.advance(1)
    queue.fail(queue.lease("w1"), "second")

    rows = session.execute(select(TaskEvent).order_by(TaskEvent.id)).scalars().all()
    assert [(r.job_id, r.event_type) for r in rows] == [
        ("job-1", "task.progress"),
        ("job-1", "task.completed"),
        ("job-2", "task.failed"),
    ]
    assert {r.origin for r in rows} == {bus.bus_id}
    assert rows[1].payload["result_file_id"] == "results/job-1.wav"
    assert rows[2].payload["reason"] == "second"

    clock.advance(3598)
    assert queue.prune_events() == 0
    clock.advance(1)
    assert queue.prune_events() == 2
    clock.advance(1)
    assert queue.prune_events() == 1


def test_uncommitted_heartbeat_publishes_only_after_commit(queue, session, bus):
    progress = _collect(bus, TaskProgressEvent)
    queue.enqueue("job-1", {})
    lease = queue.lease("w1")

    assert queue.heartbeat(lease, 30, commit=False)
    assert progress == []
    session.commit()
    assert queue.publish_pending() == 1
    assert queue.publish_pending() == 0
    assert [e.progress for e in progress] == [30]


def test_generic_insert_path_keeps_callers_uncommitted_writes(session, bus, clock, monkeypatch):
    queue = _queue(session, bus, clock)
    monkeypatch.setattr(queue, "_dialect_name", lambda: "generic")
    assert queue.enqueue("job-1", {})

    store = JobStore(session, clock=clock)
    job = store.create("uploads/song.mp3", "mp3", "wav", commit=False)
    assert not queue.enqueue("job-1", {"again": True}, commit=False)
    assert queue.enqueue(job.id, {"jobId": job.id}, commit=False)
    session.commit()

    assert store.get(job.id) is not None
    assert queue.get_task(job.id).payload == {"jobId": job.id}
    assert queue.get_task("job-1").payload == {}
    assert queue.counts()["waiting"] == 2


@pytest.mark.requires_postgres
def test_postgres_admission_and_single_lease(bus, clock):
    from fileforge.database import create_db_engine, create_session_factory, init_db
    from fileforge.models.base import Base

    engine = create_db_engine(os.environ["FILEFORGE_TEST_POSTGRES_URL"])
    init_db(create_tables=True, bind_engine=engine)
    factory = create_session_factory(engine)
    db = factory()
    try:
        queue = _queue(db, bus, clock)
        assert queue.enqueue("pg-job", {"jobId": "pg-job"})
        assert not queue.enqueue("pg-job", {"jobId": "pg-job"})
        assert queue.lease("pg-a") is not None
        assert queue.lease("pg-b") is None
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
