from fileforge.exceptions.handlers import (
    ConfigurationError,
    ConversionError,
    ErrorKind,
    FileForgeException,
    LeaseExpiredError,
    NotFoundError,
    TransientInfraError,
    ValidationError,
)

__all__ = [
    "FileForgeException",
    "ErrorKind",
    "ValidationError",
    "NotFoundError",
    "TransientInfraError",
    "ConversionError",
    "LeaseExpiredError",
    "ConfigurationError",
]
