from __future__ import annotations

import logging
import uuid
from pathlib import PurePath

from fastapi import APIRouter, Depends, File, UploadFile

from fileforge.api.dependencies import get_orchestrator, get_storage
from fileforge.api.envelope import ApiResponse
from fileforge.config import get_settings
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator
from fileforge.conversion_engine.storage.storage_interface import StorageProvider
from fileforge.exceptions.handlers import FileForgeException, ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Upload"])

UPLOAD_KEY_TEMPLATE = "uploads/{file_id}.{extension}"


@router.post("/upload")
def upload_file(
    file: UploadFile = File(...),
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
    storage: StorageProvider = Depends(get_storage),
) -> dict:
    """Stores a source artifact under ``uploads/`` and describes what it converts to."""
    file_name = file.filename or ""
    extension = PurePath(file_name).suffix.lstrip(".").lower()
    fmt = orchestrator.catalog.find_format(extension) if extension else None
    if fmt is None:
        raise ValidationError(f"Unsupported format: {extension}", field="file")

    limit = get_settings().UPLOAD_MAX_BYTES
    data = file.file.read(limit + 1)
    if len(data) > limit:
        raise FileForgeException(
            f"File exceeds the {limit} byte upload limit",
            code="FILE_TOO_LARGE",
            status_code=413,
        )

    file_id = str(uuid.uuid4())
    key = UPLOAD_KEY_TEMPLATE.format(file_id=file_id, extension=fmt.extension)
    storage.put(key, data, fmt.mime_type)
    logger.info("File uploaded: %s (%s, %s bytes)", file_id, file_name, len(data))

    return ApiResponse.ok(
        {
            "fileId": file_id,
            "fileName": file_name,
            "format": fmt.extension,
            "category": fmt.category.value,
            "size": len(data),
            "convertibleTo": sorted(fmt.convertible_to),
            "s3Key": key,
        }
    ).dump()
