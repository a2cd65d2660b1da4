from __future__ import annotations

import enum
from contextlib import contextmanager
from typing import Iterator, Tuple

from sqlalchemy.exc import DisconnectionError, InterfaceError, OperationalError

from fileforge.exceptions.handlers import ErrorKind, FileForgeException, TransientInfraError


class JobFatalError(RuntimeError):
    """Non-retryable job failure (e.g., missing source file)."""


class ConverterNotRegisteredError(JobFatalError):
    """No converter is bound to the category of the source format."""


class LeaseLostError(RuntimeError):
    """The executor no longer holds the lease of the task it is running."""


class Phase(str, enum.Enum):
    DOWNLOAD = "download"
    CONVERT = "convert"
    UPLOAD = "upload"
    FINALIZE = "finalize"


_DB_UNAVAILABLE = (OperationalError, InterfaceError, DisconnectionError)

_PHASE_DEFAULT_KIND = {
    Phase.DOWNLOAD: ErrorKind.TRANSIENT,
    Phase.CONVERT: ErrorKind.CONVERSION,
    Phase.UPLOAD: ErrorKind.TRANSIENT,
    Phase.FINALIZE: ErrorKind.TRANSIENT,
}


def classify_error(exc: BaseException, phase: Phase) -> Tuple[ErrorKind, bool]:
    """Map an exception raised during a unit of work to (kind, retryable)."""
    if isinstance(exc, FileForgeException):
        return exc.kind, exc.retryable
    if isinstance(exc, JobFatalError):
        return ErrorKind.FATAL, False
    if isinstance(exc, LeaseLostError):
        return ErrorKind.TIMEOUT, True
    if isinstance(exc, _DB_UNAVAILABLE):
        return ErrorKind.TRANSIENT, True
    if phase is Phase.DOWNLOAD and isinstance(exc, FileNotFoundError):
        return ErrorKind.FATAL, False
    return _PHASE_DEFAULT_KIND[phase], True


@contextmanager
def translate_db_errors(component: str) -> Iterator[None]:
    """Surface database connectivity failures as TransientInfraError."""
    try:
        yield
    except _DB_UNAVAILABLE as exc:
        raise TransientInfraError(
            f"{component} unavailable: {exc.__class__.__name__}", component=component
        ) from exc
