from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse

from fileforge.api.dependencies import get_storage
from fileforge.conversion_engine.services.format_catalog import default_catalog
from fileforge.conversion_engine.storage import LocalStorageProvider, StorageProvider
from fileforge.exceptions.handlers import NotFoundError, ValidationError

router = APIRouter(prefix="/files", tags=["Files"])


@router.get("/{key:path}")
def serve_local_file(
    key: str,
    expires: int = Query(...),
    signature: str = Query(...),
    storage: StorageProvider = Depends(get_storage),
) -> FileResponse:
    """Resolves signed URLs issued by the local storage provider."""
    if not isinstance(storage, LocalStorageProvider):
        raise NotFoundError("File not found", resource="file")
    if not storage.verify_signed_url(key, expires, signature):
        raise ValidationError("Invalid or expired download link")
    if not storage.exists(key):
        raise NotFoundError("File not found", resource="file")
    extension = key.rsplit(".", 1)[-1] if "." in key else ""
    return FileResponse(
        storage.get_local_path(key),
        media_type=default_catalog.mime_type_for(extension),
        filename=key.rsplit("/", 1)[-1],
    )
