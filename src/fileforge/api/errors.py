"""FastAPI error handler registration."""
from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from fileforge.api.envelope import ApiResponse
from fileforge.exceptions.handlers import FileForgeException

logger = logging.getLogger(__name__)


def _describe(exc: RequestValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "Validation error: " + ", ".join(parts)


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(FileForgeException)
    async def _fileforge_error(request: Request, exc: FileForgeException) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.to_dict())
        return JSONResponse(
            status_code=exc.status_code, content=ApiResponse.fail(exc.message).dump()
        )

    @app.exception_handler(RequestValidationError)
    async def _request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content=ApiResponse.fail(_describe(exc)).dump())

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error on %s %s: %s", request.method, request.url.path, exc, exc_info=exc)
        return JSONResponse(status_code=500, content=ApiResponse.fail("Internal server error").dump())
