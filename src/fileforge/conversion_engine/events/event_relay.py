"""
Event Relay
Tails the ff_task_events outbox and republishes rows written by other
processes on the local event bus, so subscribers served here hear about work
done by worker pools running elsewhere.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Optional, Set

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from fileforge.config import get_settings
from fileforge.conversion_engine.events.domain_events import TASK_EVENT_TYPES
from fileforge.conversion_engine.events.event_bus import EventBus, event_bus as default_event_bus
from fileforge.conversion_engine.models.task_event import TaskEvent
from fileforge.conversion_engine.services.job_errors import translate_db_errors
from fileforge.database import get_db_session, session_scope

logger = logging.getLogger(__name__)

# Ids are assigned at insert but become visible at commit, so a row can appear
# behind the cursor. Rows this far back are re-read and deduplicated by id.
_LOOKBACK_IDS = 200
_BATCH_SIZE = 500


class EventRelay:
    def __init__(
        self,
        event_bus: Optional[EventBus] = None,
        session_factory: Optional[sessionmaker] = None,
        *,
        poll_interval: Optional[float] = None,
    ):
        self.event_bus = event_bus or default_event_bus
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else get_settings().EVENT_RELAY_POLL_SECONDS
        )
        self._session_factory = session_factory
        self._cursor: Optional[int] = None
        self._seen: Set[int] = set()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @contextmanager
    def _session(self):
        if self._session_factory is None:
            with get_db_session() as session:
                yield session
        else:
            with session_scope(self._session_factory) as session:
                yield session

    @property
    def cursor(self) -> Optional[int]:
        return self._cursor

    def prime(self) -> int:
        """Moves the cursor past every existing row; history is never replayed."""
        with self._lock:
            with self._session() as session:
                with translate_db_errors("event relay"):
                    latest = session.execute(select(func.max(TaskEvent.id))).scalar()
            self._cursor = latest or 0
            self._seen.clear()
            return self._cursor

    def poll_once(self) -> int:
        """Publishes outbox rows not seen yet. Returns how many were published."""
        if self._cursor is None:
            self.prime()
            return 0

        with self._lock:
            floor = max(self._cursor - _LOOKBACK_IDS, 0)
            with self._session() as session:
                with translate_db_errors("event relay"):
                    rows = (
                        session.execute(
                            select(TaskEvent)
                            .where(TaskEvent.id > floor)
                            .order_by(TaskEvent.id)
                            .limit(_BATCH_SIZE + len(self._seen))
                        )
                        .scalars()
                        .all()
                    )

            published = 0
            for row in rows:
                if row.id in self._seen or row.id <= floor:
                    continue
                self._seen.add(row.id)
                self._cursor = max(self._cursor, row.id)
                if row.origin == self.event_bus.bus_id:
                    continue
                event_cls = TASK_EVENT_TYPES.get(row.event_type)
                if event_cls is None:
                    logger.warning("Skipping outbox row %s of unknown type %s", row.id, row.event_type)
                    continue
                try:
                    event = event_cls.model_validate(row.payload)
                except PydanticValidationError as e:
                    logger.warning(f"Skipping malformed outbox row {row.id}: {e}")
                    continue
                self.event_bus.publish(event)
                published += 1

            floor = max(self._cursor - _LOOKBACK_IDS, 0)
            self._seen = {event_id for event_id in self._seen if event_id > floor}
        return published

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            logger.warning("Event relay is already running.")
            return
        self.prime()
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="EventRelay", daemon=True)
        self._thread.start()
        logger.info(f"Event relay started (poll every {self.poll_interval}s)")

    def stop(self, timeout: Optional[float] = None):
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=timeout if timeout is not None else self.poll_interval + 1)
        if self._thread.is_alive():
            logger.warning("Event relay thread did not terminate gracefully.")
        self._thread = None
        logger.info("Event relay stopped.")

    def _run_loop(self):
        while not self._stop_event.is_set():
            try:
                self.poll_once()
            except Exception as e:
                logger.error(f"Event relay poll failed: {e}", exc_info=True)
            self._stop_event.wait(self.poll_interval)
