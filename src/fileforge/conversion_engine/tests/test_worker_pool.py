from __future__ import annotations

import threading
import time

import pytest
from sqlalchemy import func, select

from fileforge.conversion_engine.events.domain_events import TaskCompletedEvent
from fileforge.conversion_engine.events.event_bus import EventBus
from fileforge.conversion_engine.events.event_relay import EventRelay
from fileforge.conversion_engine.models.job import ConversionJob, JobStatus
from fileforge.conversion_engine.models.queue_task import QueueTask, TaskState
from fileforge.conversion_engine.models.task_event import TaskEvent
from fileforge.conversion_engine.services.converter_registry import ConverterRegistry
from fileforge.conversion_engine.services.job_errors import LeaseLostError
from fileforge.conversion_engine.services.job_store import JobStore
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator
from fileforge.conversion_engine.services.rate_limiter import RollingWindowRateLimiter
from fileforge.conversion_engine.services.work_queue import WorkQueue
from fileforge.conversion_engine.services.worker_pool import WorkerPool, _Attempt
from fileforge.conversion_engine.tests.fakes import EchoConverter, FailingConverter, MemoryStorage
from fileforge.exceptions.handlers import ConversionError


def _orchestrator(session_factory, bus, storage, **queue_options):
    queue_options.setdefault("backoff_seconds", 0.0)
    return ConversionOrchestrator(
        storage, session_factory=session_factory, event_bus=bus, queue_options=queue_options
    )


def _pool(session_factory, bus, storage, converters, **kwargs):
    kwargs.setdefault("concurrency", 1)
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("rate_limiter", RollingWindowRateLimiter(100, 60))
    kwargs.setdefault("queue_options", {"backoff_seconds": 0.0})
    return WorkerPool(
        ConverterRegistry(converters),
        storage,
        session_factory=session_factory,
        event_bus=bus,
        worker_id="test-worker",
        **kwargs,
    )


def _drain(subscriber, timeout=0.2):
    messages = []
    while True:
        message = subscriber.get(timeout=timeout)
        if message is None:
            return messages
        messages.append(message)


def _task(session_factory, job_id):
    db = session_factory()
    try:
        return WorkQueue(db).get_task(job_id)
    finally:
        db.close()


def test_mp3_to_wav_completes_with_monotonic_progress(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = EchoConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav", {"bitrate": "192k"})
    subscriber = orchestrator.subscribe(submitted.job_id)

    assert pool.run_once()

    messages = _drain(subscriber)
    assert messages[0]["type"] == "progress"
    assert messages[0]["data"]["status"] == "pending"
    progress = [m["data"]["progress"] for m in messages]
    assert progress == sorted(progress)
    assert messages[-1]["type"] == "completed"
    assert messages[-1]["data"]["progress"] == 100
    assert sum(1 for m in messages if m["type"] == "completed") == 1
    assert all(p < 100 for p in progress[:-1])

    result_key = f"results/{submitted.job_id}.wav"
    assert storage.objects[result_key] == b"ID3-audio->wav"
    assert storage.content_types[result_key] == "audio/wav"
    assert converter.calls == [("mp3", "wav", {"bitrate": "192k"})]

    view = orchestrator.status(submitted.job_id)
    assert view.status == "completed"
    assert view.progress == 100
    assert view.download_url == f"memory://{result_key}?ttl=3600"
    assert orchestrator.query(submitted.job_id).result_file_id == result_key
    assert _task(session_factory, submitted.job_id).state == TaskState.COMPLETED.value


def test_failing_converter_exhausts_attempts(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = FailingConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    subscriber = orchestrator.subscribe(submitted.job_id)

    assert pool.run_once()
    assert pool.run_once()
    assert pool.run_once()
    assert not pool.run_once()

    assert converter.calls == 3
    job = orchestrator.query(submitted.job_id)
    assert job.status == "failed"
    assert job.error == "codec exploded #3"

    task = _task(session_factory, submitted.job_id)
    assert task.state == TaskState.DEAD.value
    assert task.attempt_count == 3
    assert task.last_error_kind == "conversion"

    errors = [m for m in _drain(subscriber) if m["type"] == "error"]
    assert len(errors) == 1
    assert errors[0]["data"]["error"] == "codec exploded #3"


def test_missing_converter_is_fatal(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    pool = _pool(session_factory, bus, storage, {"image": EchoConverter()})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    assert pool.run_once()

    job = orchestrator.query(submitted.job_id)
    assert job.status == "failed"
    assert job.error == "No converter registered for category: audio"
    task = _task(session_factory, submitted.job_id)
    assert task.attempt_count == 1
    assert task.last_error_kind == "fatal"


def test_missing_source_artifact_is_fatal(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = EchoConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter})

    submitted = orchestrator.submit("uploads/gone.mp3", "mp3", "wav")
    assert pool.run_once()

    assert converter.calls == []
    job = orchestrator.query(submitted.job_id)
    assert job.status == "failed"
    assert "uploads/gone.mp3" in job.error


def test_terminal_job_is_acknowledged_without_rerun(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = EchoConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    db = session_factory()
    JobStore(db).update_status(submitted.job_id, JobStatus.COMPLETED, result_ref="results/old.wav")
    db.close()

    assert pool.run_once()
    assert converter.calls == []
    assert _task(session_factory, submitted.job_id).state == TaskState.COMPLETED.value
    assert orchestrator.query(submitted.job_id).result_file_id == "results/old.wav"


def test_rate_limiter_caps_task_starts(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    pool = _pool(
        session_factory,
        bus,
        storage,
        {"audio": EchoConverter()},
        rate_limiter=RollingWindowRateLimiter(1, 60),
    )
    first = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    second = orchestrator.submit("uploads/song.mp3", "mp3", "flac")

    assert pool.run_once()
    assert not pool.run_once()
    states = {
        _task(session_factory, first.job_id).state,
        _task(session_factory, second.job_id).state,
    }
    assert states == {TaskState.COMPLETED.value, TaskState.WAITING.value}


def test_empty_queue_refunds_rate_limit(session_factory, bus, storage):
    limiter = RollingWindowRateLimiter(1, 60)
    pool = _pool(session_factory, bus, storage, {"audio": EchoConverter()}, rate_limiter=limiter)
    assert not pool.run_once()
    assert limiter.seconds_until_available() == 0.0


class _StallingConverter:
    def __init__(self):
        self.release = threading.Event()
        self.finished = threading.Event()
        self.raised = None

    def convert(self, data, source_format, target_format, options, progress):
        try:
            self.release.wait(timeout=10)
            progress.report(90)
            return data
        except Exception as e:
            self.raised = e
            raise
        finally:
            self.finished.set()


@pytest.mark.slow
def test_stalled_attempt_times_out_and_cannot_write(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = _StallingConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter}, lease_timeout=0.3)

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    assert pool.run_once()

    task = _task(session_factory, submitted.job_id)
    assert task.state == TaskState.WAITING.value
    assert task.last_error_kind == "timeout"
    assert task.last_error == "Lease expired after 0.3s"

    converter.release.set()
    assert converter.finished.wait(timeout=5)
    time.sleep(0.2)

    assert converter.raised is not None
    job = orchestrator.query(submitted.job_id)
    assert job.status == "processing"
    assert job.progress < 90
    assert not any(key.startswith("results/") for key in storage.objects)


def test_reaper_fails_job_when_expired_lease_exhausts_attempts(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage, max_attempts=1)
    pool = _pool(session_factory, bus, storage, {"audio": EchoConverter()})
    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")

    db = session_factory()
    assert WorkQueue(db, lease_timeout_seconds=0.05).lease("crashed-worker") is not None
    db.close()
    time.sleep(0.1)

    assert pool.reap_expired() == 1
    job = orchestrator.query(submitted.job_id)
    assert job.status == "failed"
    assert job.error.startswith("Lease expired")


@pytest.mark.slow
def test_pool_runs_jobs_concurrently_exactly_once(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = EchoConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter}, concurrency=3)

    targets = ["wav", "flac", "aac", "ogg", "m4a", "wma"]
    job_ids = [orchestrator.submit("uploads/song.mp3", "mp3", t).job_id for t in targets]

    pool.start()
    try:
        deadline = time.monotonic() + 20
        while time.monotonic() < deadline:
            if all(orchestrator.query(j).status == "completed" for j in job_ids):
                break
            time.sleep(0.05)
    finally:
        pool.stop(timeout=5)

    assert [orchestrator.query(j).status for j in job_ids] == ["completed"] * len(job_ids)
    assert sorted(call[1] for call in converter.calls) == sorted(targets)


class _CorruptInputConverter:
    def __init__(self):
        self.calls = 0

    def convert(self, data, source_format, target_format, options, progress):
        self.calls += 1
        raise ConversionError("Input is not a valid MP3 stream", retryable=False)


def test_non_retryable_conversion_error_fails_after_one_attempt(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = _CorruptInputConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    assert pool.run_once()
    assert not pool.run_once()

    assert converter.calls == 1
    job = orchestrator.query(submitted.job_id)
    assert job.status == "failed"
    assert job.error == "Input is not a valid MP3 stream"


def _count(session_factory, model):
    db = session_factory()
    try:
        return db.execute(select(func.count()).select_from(model)).scalar()
    finally:
        db.close()


def test_worker_events_reach_subscribers_on_another_bus(session_factory, storage):
    api_bus, worker_bus = EventBus(), EventBus()
    orchestrator = _orchestrator(session_factory, api_bus, storage)
    relay = EventRelay(api_bus, session_factory, poll_interval=0.01)
    relay.prime()
    pool = _pool(session_factory, worker_bus, storage, {"audio": EchoConverter()})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    subscriber = orchestrator.subscribe(submitted.job_id)
    assert pool.run_once()

    assert relay.poll_once() > 0
    assert relay.poll_once() == 0

    messages = _drain(subscriber)
    assert messages[0]["data"]["status"] == "pending"
    progress = [m["data"]["progress"] for m in messages]
    assert progress == sorted(progress)
    assert any(m["type"] == "progress" and m["data"]["status"] == "processing" for m in messages)
    assert [m["type"] for m in messages].count("completed") == 1
    assert messages[-1]["data"]["resultFileId"] == f"results/{submitted.job_id}.wav"


def test_relay_on_the_worker_bus_does_not_duplicate_events(session_factory, bus, storage):
    orchestrator = _orchestrator(session_factory, bus, storage)
    relay = EventRelay(bus, session_factory)
    relay.prime()
    pool = _pool(session_factory, bus, storage, {"audio": EchoConverter()})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    subscriber = orchestrator.subscribe(submitted.job_id)
    assert pool.run_once()

    assert relay.poll_once() == 0
    assert _count(session_factory, TaskEvent) > 0
    assert [m["type"] for m in _drain(subscriber)].count("completed") == 1


def test_subscriber_joining_after_completion_commits_hears_it_once(
    session_factory, bus, storage, monkeypatch
):
    orchestrator = _orchestrator(session_factory, bus, storage)
    pool = _pool(session_factory, bus, storage, {"audio": EchoConverter()})
    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")

    late = []
    publish_pending = WorkQueue.publish_pending

    def subscribe_then_publish(queue):
        if any(isinstance(e, TaskCompletedEvent) for e in queue._pending_events):
            late.append(orchestrator.subscribe(submitted.job_id))
        return publish_pending(queue)

    monkeypatch.setattr(WorkQueue, "publish_pending", subscribe_then_publish)
    assert pool.run_once()

    assert len(late) == 1
    messages = _drain(late[0])
    assert [m["type"] for m in messages] == ["completed"]
    assert messages[0]["data"]["progress"] == 100


def test_pool_applies_retention_windows_on_its_own(session_factory, bus, storage, clock):
    orchestrator = ConversionOrchestrator(
        storage,
        session_factory=session_factory,
        event_bus=bus,
        queue_options={"backoff_seconds": 0.0},
        clock=clock,
    )
    pool = _pool(
        session_factory,
        bus,
        storage,
        {"audio": EchoConverter()},
        clock=clock,
        maintenance_interval=600,
    )
    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    assert pool.run_once()
    assert _task(session_factory, submitted.job_id).state == TaskState.COMPLETED.value
    assert _count(session_factory, TaskEvent) > 0

    clock.advance(3599)
    assert not pool.run_once()
    assert _count(session_factory, QueueTask) == 1

    # Throttled: the retention window has passed but the interval has not.
    clock.advance(2)
    assert not pool.run_once()
    assert _count(session_factory, QueueTask) == 1

    clock.advance(600)
    assert not pool.run_once()
    assert _count(session_factory, QueueTask) == 0
    assert _count(session_factory, TaskEvent) == 0
    assert _count(session_factory, ConversionJob) == 1

    clock.advance(86400)
    assert not pool.run_once()
    assert _count(session_factory, ConversionJob) == 0


class _FlakyResultStorage(MemoryStorage):
    """Fails the first result upload, then behaves."""

    def __init__(self, objects):
        super().__init__(objects)
        self.upload_failures = 1
        self.downloads = 0

    def get(self, key):
        self.downloads += 1
        return super().get(key)

    def put(self, key, data, content_type):
        if key.startswith("results/") and self.upload_failures:
            self.upload_failures -= 1
            raise ConnectionError("storage unavailable")
        return super().put(key, data, content_type)


def test_upload_failure_reruns_the_whole_unit_on_a_fresh_attempt(session_factory, bus):
    storage = _FlakyResultStorage({"uploads/song.mp3": b"ID3-audio"})
    orchestrator = _orchestrator(session_factory, bus, storage)
    converter = EchoConverter()
    pool = _pool(session_factory, bus, storage, {"audio": converter})

    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")
    subscriber = orchestrator.subscribe(submitted.job_id)

    assert pool.run_once()
    task = _task(session_factory, submitted.job_id)
    assert task.state == TaskState.WAITING.value
    assert task.last_error_kind == "transient"
    assert orchestrator.query(submitted.job_id).status == "processing"

    assert pool.run_once()

    assert storage.downloads == 2
    assert len(converter.calls) == 2
    task = _task(session_factory, submitted.job_id)
    assert task.state == TaskState.COMPLETED.value
    assert task.attempt_count == 2
    assert storage.objects[f"results/{submitted.job_id}.wav"] == b"ID3-audio->wav"

    messages = _drain(subscriber)
    progress = [m["data"]["progress"] for m in messages]
    assert progress == sorted(progress)
    assert [m["type"] for m in messages].count("completed") == 1
    assert not any(m["type"] == "error" for m in messages)


def test_stale_lease_cannot_write_progress_or_complete(session_factory, bus, storage, clock):
    orchestrator = ConversionOrchestrator(
        storage, session_factory=session_factory, event_bus=bus, clock=clock
    )
    pool = _pool(
        session_factory,
        bus,
        storage,
        {"audio": EchoConverter()},
        clock=clock,
        queue_options={"backoff_seconds": 0.0, "lease_timeout_seconds": 60},
    )
    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")

    db = session_factory()
    queue = WorkQueue(db, clock=clock, backoff_seconds=0.0, lease_timeout_seconds=60)
    stale = queue.lease("worker-a")
    JobStore(db, clock=clock).update_status(submitted.job_id, JobStatus.PROCESSING, progress=10)
    clock.advance(61)
    queue.reclaim_expired_leases()
    current = queue.lease("worker-b")
    db.close()
    assert current is not None and current.token != stale.token
    events_before = _count(session_factory, TaskEvent)

    with pytest.raises(LeaseLostError):
        pool._report_progress(_Attempt(stale), 50)
    with pytest.raises(LeaseLostError):
        pool._finalise_success(_Attempt(stale), f"results/{submitted.job_id}.wav")

    job = orchestrator.query(submitted.job_id)
    assert job.status == "processing"
    assert job.progress == 10
    assert job.result_file_id is None
    assert _count(session_factory, TaskEvent) == events_before

    pool._report_progress(_Attempt(current), 50)
    assert orchestrator.query(submitted.job_id).progress == 50
    assert _count(session_factory, TaskEvent) == events_before + 1


def test_rejected_job_write_rolls_back_the_heartbeat(session_factory, bus, storage, clock):
    orchestrator = ConversionOrchestrator(
        storage, session_factory=session_factory, event_bus=bus, clock=clock
    )
    pool = _pool(session_factory, bus, storage, {"audio": EchoConverter()}, clock=clock)
    submitted = orchestrator.submit("uploads/song.mp3", "mp3", "wav")

    db = session_factory()
    lease = WorkQueue(db, clock=clock).lease("worker-a")
    JobStore(db, clock=clock).update_status(submitted.job_id, JobStatus.FAILED, error="cancelled")
    db.close()
    clock.advance(30)

    with pytest.raises(LeaseLostError):
        pool._report_progress(_Attempt(lease), 40)

    task = _task(session_factory, submitted.job_id)
    assert task.lease_expires_at == lease.expires_at
    assert _count(session_factory, TaskEvent) == 0
