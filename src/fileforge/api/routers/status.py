from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import RedirectResponse

from fileforge.api.dependencies import get_orchestrator
from fileforge.api.envelope import ApiResponse
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator

router = APIRouter(tags=["Conversion"])


@router.get("/status/{job_id}")
def get_status(
    job_id: str, orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> dict:
    view = orchestrator.status(job_id)
    return ApiResponse.ok(
        view.model_dump(mode="json", by_alias=True, exclude_none=True)
    ).dump()


@router.get("/download/{job_id}")
def download_result(
    job_id: str, orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> RedirectResponse:
    return RedirectResponse(orchestrator.download_url(job_id), status_code=302)
