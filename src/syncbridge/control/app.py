"""FastAPI application for the sync control API."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..api.error_sanitizer import sanitize_error_message
from ..service import SyncService
from .router import router

logger = logging.getLogger(__name__)


def create_app(
    service: SyncService,
    api_key: Optional[str] = None,
    manage_lifecycle: bool = False,
) -> FastAPI:
    """Build the control API around a service.

    Args:
        service: The process's SyncService
        api_key: Expected X-API-Key (defaults to the service config's key)
        manage_lifecycle: Start/stop the service with the application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            logger.info("Starting SyncBridge control API...")
            await service.start()
        try:
            yield
        finally:
            if manage_lifecycle:
                await service.stop()
                logger.info("SyncBridge control API stopped")

    app = FastAPI(
        title="SyncBridge Control API",
        description="Status, reconciliation and health for the protocol engine to legacy platform sync",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service
    app.state.api_key = api_key if api_key is not None else service.config.api_key

    @app.exception_handler(Exception)
    async def unhandled_exception(request: Request, exc: Exception):
        logger.error(f"Unhandled error on {request.url.path}: {exc}", exc_info=exc)
        return JSONResponse(
            status_code=500,
            content={"detail": sanitize_error_message(str(exc), "Internal server error")},
        )

    app.include_router(router)

    @app.get("/")
    async def root():
        return {"service": "syncbridge", "health": "/api/sync/health"}

    return app
