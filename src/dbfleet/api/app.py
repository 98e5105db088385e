"""FastAPI app entrypoint."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from dbfleet.api.deps import get_project_manager
from dbfleet.api.routes.common import http_status_for
from dbfleet.api.routes.projects import router as projects_router
from dbfleet.core.config import get_settings
from dbfleet.core.errors import FleetError
from dbfleet.core.logs import configure_logging
from dbfleet.core.project_manager import ProjectManager

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    manager = app.dependency_overrides.get(get_project_manager, get_project_manager)()
    await manager.initialize()
    yield


def create_app(*, initialize: bool = True) -> FastAPI:
    app = FastAPI(
        title="dbfleet API",
        version="0.1.0",
        lifespan=lifespan if initialize else None,
    )
    app.include_router(projects_router)

    @app.exception_handler(FleetError)
    async def fleet_error_handler(request: Request, exc: FleetError) -> JSONResponse:
        code = http_status_for(exc)
        if code >= 500:
            log.error("api.error", path=request.url.path, error=str(exc), kind=type(exc).__name__)
        return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})

    @app.get("/api/v1/health", tags=["system"])
    async def health(manager: ProjectManager = Depends(get_project_manager)) -> dict[str, Any]:
        return asdict(await manager.health())

    return app


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(), host=settings.host, port=settings.port, reload=False)
