"""
Local Storage Provider
Implements StorageProvider on the local filesystem with HMAC-signed URLs.
"""

import hashlib
import hmac
import os
import tempfile
import time
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import quote, urlencode

from fileforge.config.settings import Settings
from fileforge.conversion_engine.storage.storage_interface import StorageProvider


class LocalStorageProvider(StorageProvider):
    def __init__(self, settings: Settings, *, clock: Optional[Callable[[], float]] = None):
        self.base_path = Path(settings.LOCAL_STORAGE_PATH)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.public_url_prefix = settings.LOCAL_STORAGE_PUBLIC_URL_PREFIX.rstrip("/")
        self._secret = settings.STORAGE_SIGNING_SECRET.encode("utf-8")
        self._clock = clock or time.time

    def _full_path(self, key: str) -> Path:
        """Returns the absolute path for ``key``; keys may not escape the base path."""
        relative = Path(str(key).lstrip("/"))
        full_path = (self.base_path / relative).resolve()
        if self.base_path.resolve() not in full_path.parents:
            raise ValueError(f"Invalid storage key: {key}")
        return full_path

    def get(self, key: str) -> bytes:
        full_path = self._full_path(key)
        if not full_path.is_file():
            raise FileNotFoundError(f"File not found: {key}")
        return full_path.read_bytes()

    def put(self, key: str, data: bytes, content_type: str) -> str:
        full_path = self._full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so readers never observe a partial artifact.
        fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, full_path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.remove(tmp_name)
            raise
        return key

    def exists(self, key: str) -> bool:
        return self._full_path(key).is_file()

    def delete(self, key: str) -> None:
        full_path = self._full_path(key)
        if full_path.exists():
            os.remove(full_path)

    def get_local_path(self, key: str) -> str:
        return str(self._full_path(key))

    # -- Signed URLs ---------------------------------------------------

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode("utf-8")
        return hmac.new(self._secret, message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl_seconds: int = 3600) -> str:
        if not self.public_url_prefix:
            raise NotImplementedError(
                "Public URL prefix not configured for local storage, cannot generate signed URL."
            )
        expires = int(self._clock()) + int(ttl_seconds)
        query = urlencode({"expires": expires, "signature": self._signature(key, expires)})
        return f"{self.public_url_prefix}/{quote(key)}?{query}"

    def verify_signed_url(self, key: str, expires: int, signature: str) -> bool:
        if int(expires) < int(self._clock()):
            return False
        return hmac.compare_digest(self._signature(key, int(expires)), signature or "")
