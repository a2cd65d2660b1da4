from __future__ import annotations

import enum
from typing import Any, Dict, Optional


class ErrorKind(str, enum.Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    CONVERSION = "conversion"
    TIMEOUT = "timeout"
    FATAL = "fatal"


class FileForgeException(Exception):
    """
    Base exception for the conversion service.

    Every subclass carries:
    - attributes: message/code/status_code/details/user_message
    - kind/retryable: how the work queue treats the failure
    - method: to_dict()
    """

    kind: ErrorKind = ErrorKind.FATAL
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        code: str = "FILEFORGE_ERROR",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
        user_message: Optional[str] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        self.user_message = user_message or message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "kind": self.kind.value,
            "message": self.message,
            "user_message": self.user_message,
            "details": self.details,
        }

    def __str__(self) -> str:  # pragma: no cover
        return self.message


class ValidationError(FileForgeException):
    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"field": field} if field else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=422,
            details=details,
            user_message=message,
        )


class NotFoundError(FileForgeException):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, resource: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"resource": resource} if resource else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details=details,
            user_message=message,
        )


class TransientInfraError(FileForgeException):
    """Store, queue or blob storage temporarily unavailable."""

    kind = ErrorKind.TRANSIENT
    retryable = True

    def __init__(self, message: str, component: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"component": component} if component else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="TRANSIENT_INFRA_ERROR",
            status_code=503,
            details=details,
            user_message="Service temporarily unavailable",
        )


class ConversionError(FileForgeException):
    """The converter rejected its input or crashed."""

    kind = ErrorKind.CONVERSION

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any):
        self.retryable = retryable
        super().__init__(
            message=message,
            code="CONVERSION_ERROR",
            status_code=500,
            details=dict(kwargs),
            user_message=message,
        )


class LeaseExpiredError(FileForgeException):
    kind = ErrorKind.TIMEOUT
    retryable = True

    def __init__(self, job_id: str, timeout_seconds: float, **kwargs: Any):
        message = f"Lease expired after {timeout_seconds:g}s"
        details: Dict[str, Any] = {"job_id": job_id, "timeout_seconds": timeout_seconds}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="LEASE_EXPIRED",
            status_code=504,
            details=details,
            user_message=message,
        )


class ConfigurationError(FileForgeException):
    def __init__(self, message: str, config_key: Optional[str] = None, **kwargs: Any):
        details: Dict[str, Any] = {"config_key": config_key} if config_key else {}
        details.update(kwargs)
        super().__init__(
            message=message,
            code="CONFIGURATION_ERROR",
            status_code=500,
            details=details,
            user_message="System configuration error",
        )
