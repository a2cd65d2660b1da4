from __future__ import annotations

from fastapi import APIRouter, Depends

from fileforge.api.dependencies import get_orchestrator
from fileforge.api.envelope import ApiResponse
from fileforge.conversion_engine.services.orchestration_service import ConversionOrchestrator
from fileforge.exceptions.handlers import NotFoundError

router = APIRouter(prefix="/formats", tags=["Formats"])


@router.get("")
def list_formats(orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    return ApiResponse.ok(
        {
            "formats": {f.extension: f.to_dict() for f in orchestrator.list_formats()},
            "categories": [c.value for c in orchestrator.list_categories()],
        }
    ).dump()


@router.get("/categories")
def list_categories(orchestrator: ConversionOrchestrator = Depends(get_orchestrator)) -> dict:
    return ApiResponse.ok(
        {"categories": [c.value for c in orchestrator.list_categories()]}
    ).dump()


@router.get("/category/{category}")
def list_formats_by_category(
    category: str, orchestrator: ConversionOrchestrator = Depends(get_orchestrator)
) -> dict:
    if category.lower() not in {c.value for c in orchestrator.list_categories()}:
        raise NotFoundError(f"Unknown category: {category}", resource="category")
    formats = orchestrator.list_formats(category.lower())
    return ApiResponse.ok({"formats": [f.to_dict() for f in formats]}).dump()
