from __future__ import annotations

from fastapi import APIRouter
from sqlalchemy import text

from fileforge import __version__
from fileforge.api.envelope import ApiResponse
from fileforge.config import get_settings
from fileforge.database import get_db_session

router = APIRouter(tags=["system"])


@router.get("/health")
def health() -> dict:
    settings = get_settings()
    db_ok = True
    try:
        with get_db_session() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        db_ok = False
    return ApiResponse.ok(
        {
            "ok": db_ok,
            "service": "fileforge",
            "version": __version__,
            "schema_mode": settings.SCHEMA_MODE,
            "storage_type": settings.STORAGE_TYPE,
            "database": "ok" if db_ok else "unavailable",
        }
    ).dump()
