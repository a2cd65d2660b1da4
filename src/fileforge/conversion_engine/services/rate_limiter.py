from __future__ import annotations

import threading
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Optional

from fileforge.models.base import utcnow


class RollingWindowRateLimiter:
    """Allows at most ``max_events`` starts in any rolling ``window_seconds``."""

    def __init__(
        self,
        max_events: int,
        window_seconds: float,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_events < 1:
            raise ValueError("max_events must be >= 1")
        self.max_events = max_events
        self.window = timedelta(seconds=window_seconds)
        self._clock = clock or utcnow
        self._events: Deque[datetime] = deque()
        self._lock = threading.Lock()

    def _evict(self, now: datetime) -> None:
        while self._events and now - self._events[0] >= self.window:
            self._events.popleft()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._events) >= self.max_events:
                return False
            self._events.append(now)
            return True

    def refund(self) -> None:
        """Give back the most recent start, e.g. when no task could be leased."""
        with self._lock:
            if self._events:
                self._events.pop()

    def seconds_until_available(self) -> float:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._events) < self.max_events:
                return 0.0
            return max((self._events[0] + self.window - now).total_seconds(), 0.0)
