"""
Progress sinks handed to converters.

A converter reports a 0-100 value local to its own phase; the sink remaps it
into the job's progress band and forwards it to the orchestration layer.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional, Protocol

from fileforge.conversion_engine.services.job_errors import LeaseLostError

DOWNLOAD_BAND = (0, 20)
CONVERT_BAND = (20, 80)
UPLOAD_BAND = (80, 100)


class ProgressSink(Protocol):
    def report(self, percent: float) -> None:
        ...


class ConversionCancelled(LeaseLostError):
    """Raised from the sink when the attempt was cancelled cooperatively."""


class BandedProgressSink:
    def __init__(
        self,
        start: int,
        end: int,
        on_progress: Callable[[int], None],
        cancel_event: Optional[threading.Event] = None,
    ):
        self.start = start
        self.end = end
        self._on_progress = on_progress
        self._cancel_event = cancel_event
        self._last = start

    def remap(self, percent: float) -> int:
        local = min(max(float(percent), 0.0), 100.0)
        return int(self.start + (self.end - self.start) * local / 100.0)

    def report(self, percent: float) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ConversionCancelled("conversion cancelled")
        value = self.remap(percent)
        if value <= self._last:
            return
        self._last = value
        self._on_progress(value)

    @property
    def cancelled(self) -> bool:
        return self._cancel_event is not None and self._cancel_event.is_set()
