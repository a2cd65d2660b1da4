from __future__ import annotations

from fastapi import FastAPI

from fileforge import __version__
from fileforge.api.dependencies import get_event_relay
from fileforge.api.errors import register_error_handlers
from fileforge.api.routers.convert import router as convert_router
from fileforge.api.routers.files import router as files_router
from fileforge.api.routers.formats import router as formats_router
from fileforge.api.routers.health import router as health_router
from fileforge.api.routers.status import router as status_router
from fileforge.api.routers.upload import router as upload_router
from fileforge.api.routers.ws import router as ws_router
from fileforge.config import get_settings
from fileforge.database import init_db


def create_app() -> FastAPI:
    app = FastAPI(title="FileForge", version=__version__)
    register_error_handlers(app)
    app.include_router(health_router, prefix="/api/v1")
    app.include_router(formats_router, prefix="/api/v1")
    app.include_router(upload_router, prefix="/api/v1")
    app.include_router(convert_router, prefix="/api/v1")
    app.include_router(status_router, prefix="/api/v1")
    app.include_router(ws_router)
    app.include_router(files_router)

    @app.on_event("startup")
    def _startup() -> None:  # pragma: no cover
        # Dev convenience: auto-create tables. Production uses migrations.
        settings = get_settings()
        if settings.ENVIRONMENT == "dev":
            init_db(create_tables=True)
        if settings.EVENT_RELAY_ENABLED:
            get_event_relay().start()

    @app.on_event("shutdown")
    def _shutdown() -> None:  # pragma: no cover
        if get_settings().EVENT_RELAY_ENABLED:
            get_event_relay().stop()

    return app


app = create_app()
