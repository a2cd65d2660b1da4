"""
Event Broadcaster
Fans task lifecycle events out to the subscribers registered for a job.

Nothing is replayed: a subscriber receives one snapshot of the job's current
state when it registers, then only events published afterwards.
"""

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol

from fileforge.conversion_engine.events.domain_events import (
    TaskCompletedEvent,
    TaskFailedEvent,
    TaskProgressEvent,
)
from fileforge.conversion_engine.events.event_bus import EventBus

logger = logging.getLogger(__name__)

Message = Dict[str, Any]
SnapshotProvider = Callable[[str], Optional[Dict[str, Any]]]

MESSAGE_PROGRESS = "progress"
MESSAGE_COMPLETED = "completed"
MESSAGE_ERROR = "error"


class SubscriberHandle(Protocol):
    def send(self, message: Message) -> None:
        ...


class QueueSubscriber:
    """Thread-safe subscriber handle that buffers messages for a consumer."""

    _SENTINEL = object()

    def __init__(self, maxsize: int = 0):
        self._queue: "queue.Queue[Any]" = queue.Queue(maxsize=maxsize)
        self._closed = threading.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def send(self, message: Message) -> None:
        if self.closed:
            raise RuntimeError("subscriber closed")
        self._queue.put_nowait(message)

    def get(self, timeout: Optional[float] = None) -> Optional[Message]:
        """Next message, or None on timeout or once closed and drained."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is self._SENTINEL:
            self._queue.put_nowait(self._SENTINEL)
            return None
        return item

    def close(self) -> None:
        if not self.closed:
            self._closed.set()
            self._queue.put_nowait(self._SENTINEL)

    def __iter__(self) -> Iterator[Message]:
        while True:
            message = self.get()
            if message is None:
                return
            yield message


@dataclass
class _Subscription:
    handle: SubscriberHandle
    high_water: int = -1
    terminal: bool = False


def snapshot_message(job_id: str, job: Dict[str, Any]) -> Message:
    status = job.get("status")
    data: Dict[str, Any] = {"status": status, "progress": job.get("progress") or 0}
    if status == "completed":
        data["resultFileId"] = job.get("resultFileId")
        return {"type": MESSAGE_COMPLETED, "jobId": job_id, "data": data}
    if status == "failed":
        data["error"] = job.get("error")
        return {"type": MESSAGE_ERROR, "jobId": job_id, "data": data}
    return {"type": MESSAGE_PROGRESS, "jobId": job_id, "data": data}


class EventBroadcaster:
    def __init__(self, snapshot_provider: Optional[SnapshotProvider] = None):
        self._snapshot_provider = snapshot_provider
        self._lock = threading.RLock()
        self._subscriptions: Dict[str, List[_Subscription]] = {}
        self._bus: Optional[EventBus] = None

    # ── Registration ─────────────────────────────────────────────────

    def subscribe(self, job_id: str, handle: SubscriberHandle) -> None:
        """Registers ``handle`` for ``job_id`` and sends it the current snapshot."""
        with self._lock:
            subs = self._subscriptions.setdefault(job_id, [])
            subscription = next((s for s in subs if s.handle is handle), None)
            if subscription is None:
                subscription = _Subscription(handle)
                subs.append(subscription)

            job = self._snapshot_provider(job_id) if self._snapshot_provider else None
            if job is None:
                logger.debug("Subscribed to unknown job %s; no snapshot", job_id)
                return
            message = snapshot_message(job_id, job)
            self._deliver(job_id, subscription, message)

    def unsubscribe(self, job_id: str, handle: SubscriberHandle) -> None:
        with self._lock:
            subs = self._subscriptions.get(job_id)
            if not subs:
                return
            subs[:] = [s for s in subs if s.handle is not handle]
            if not subs:
                del self._subscriptions[job_id]

    def drop_handle(self, handle: SubscriberHandle) -> None:
        """Removes ``handle`` from every job it is subscribed to."""
        with self._lock:
            for job_id in list(self._subscriptions):
                self.unsubscribe(job_id, handle)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(job_id, []))

    # ── Event bus wiring ─────────────────────────────────────────────

    def attach(self, event_bus: EventBus) -> None:
        if self._bus is event_bus:
            return
        if self._bus is not None:
            self.detach()
        event_bus.subscribe(TaskProgressEvent, self.on_progress)
        event_bus.subscribe(TaskCompletedEvent, self.on_completed)
        event_bus.subscribe(TaskFailedEvent, self.on_failed)
        self._bus = event_bus

    def detach(self) -> None:
        if self._bus is None:
            return
        self._bus.unsubscribe(TaskProgressEvent, self.on_progress)
        self._bus.unsubscribe(TaskCompletedEvent, self.on_completed)
        self._bus.unsubscribe(TaskFailedEvent, self.on_failed)
        self._bus = None

    def on_progress(self, event: TaskProgressEvent) -> None:
        self.publish(
            event.job_id,
            {
                "type": MESSAGE_PROGRESS,
                "jobId": event.job_id,
                "data": {"status": "processing", "progress": event.progress},
            },
        )

    def on_completed(self, event: TaskCompletedEvent) -> None:
        self.publish(
            event.job_id,
            {
                "type": MESSAGE_COMPLETED,
                "jobId": event.job_id,
                "data": {
                    "status": "completed",
                    "progress": 100,
                    "resultFileId": event.result_file_id,
                },
            },
        )

    def on_failed(self, event: TaskFailedEvent) -> None:
        self.publish(
            event.job_id,
            {
                "type": MESSAGE_ERROR,
                "jobId": event.job_id,
                "data": {"status": "failed", "error": event.reason},
            },
        )

    # ── Delivery ─────────────────────────────────────────────────────

    def publish(self, job_id: str, message: Message) -> int:
        """Delivers ``message`` to every live subscriber of ``job_id``."""
        delivered = 0
        with self._lock:
            for subscription in list(self._subscriptions.get(job_id, [])):
                if self._deliver(job_id, subscription, dict(message)):
                    delivered += 1
        return delivered

    def _deliver(self, job_id: str, subscription: _Subscription, message: Message) -> bool:
        handle = subscription.handle
        if getattr(handle, "closed", False):
            self.drop_handle(handle)
            return False

        # A handle hears about completion or failure once.
        if subscription.terminal:
            return False

        data = dict(message.get("data") or {})
        progress = data.get("progress")
        if message["type"] == MESSAGE_PROGRESS and progress is not None:
            if progress <= subscription.high_water:
                return False
        if progress is None:
            data["progress"] = max(subscription.high_water, 0)
        else:
            data["progress"] = max(int(progress), subscription.high_water)
        message["data"] = data

        try:
            handle.send(message)
        except Exception as e:
            logger.debug(f"Dropping subscriber of job {job_id}: {e}")
            self.drop_handle(handle)
            return False
        subscription.high_water = data["progress"]
        if message["type"] in (MESSAGE_COMPLETED, MESSAGE_ERROR):
            subscription.terminal = True
        return True
