from __future__ import annotations

from fastapi import APIRouter, Depends

from fileforge.api.dependencies import get_orchestrator
from fileforge.api.envelope import ApiResponse
from fileforge.conversion_engine.schemas.conversion import ConvertRequest
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator

router = APIRouter(tags=["Conversion"])


@router.post("/convert")
def start_conversion(
    req: ConvertRequest,
    orchestrator: ConversionOrchestrator = Depends(get_orchestrator),
) -> dict:
    result = orchestrator.submit(
        req.source_key,
        req.source_format,
        req.target_format,
        req.options,
        source_file_id=req.file_id,
    )
    return ApiResponse.ok(result.model_dump(by_alias=True)).dump()
