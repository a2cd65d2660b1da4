from typing import Optional

from fileforge.config.settings import Settings, get_settings
from fileforge.conversion_engine.storage.local_storage import LocalStorageProvider
from fileforge.conversion_engine.storage.s3_storage import S3StorageProvider
from fileforge.conversion_engine.storage.storage_interface import StorageProvider
from fileforge.exceptions.handlers import ConfigurationError


def get_storage_provider(settings: Optional[Settings] = None) -> StorageProvider:
    """Factory function to get the configured StorageProvider."""
    settings = settings or get_settings()
    if settings.STORAGE_TYPE == "local":
        return LocalStorageProvider(settings)
    elif settings.STORAGE_TYPE == "s3":
        return S3StorageProvider(settings)
    else:
        raise ConfigurationError(f"Unsupported STORAGE_TYPE: {settings.STORAGE_TYPE}")


__all__ = [
    "StorageProvider",
    "LocalStorageProvider",
    "S3StorageProvider",
    "get_storage_provider",
]
