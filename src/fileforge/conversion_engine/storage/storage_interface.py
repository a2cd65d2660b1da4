"""
Storage Service Interface
Abstract base class for the object storage collaborators of the worker pool.
"""

from abc import ABC, abstractmethod


class StorageProvider(ABC):
    """Abstract base class for artifact storage providers."""

    @abstractmethod
    def get(self, key: str) -> bytes:
        """
        Reads an artifact.
        Args:
            key: The storage key of the artifact.
        Returns:
            The artifact bytes.
        Raises:
            FileNotFoundError: if no artifact is stored under ``key``.
        """
        pass

    @abstractmethod
    def put(self, key: str, data: bytes, content_type: str) -> str:
        """
        Stores an artifact, replacing any previous content under ``key``.
        Writes are idempotent so a redelivered attempt can safely re-upload.
        Returns:
            The identifier of the stored artifact (the key).
        """
        pass

    @abstractmethod
    def signed_url(self, key: str, ttl_seconds: int = 3600) -> str:
        """Returns a time-limited URL granting read access to ``key``."""
        pass

    @abstractmethod
    def exists(self, key: str) -> bool:
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        pass
