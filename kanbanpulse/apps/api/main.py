from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from kanbanpulse.apps.api.errors import (
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from kanbanpulse.apps.api.routes.health import router as health_router
from kanbanpulse.apps.api.routes.notification_queue import router as notification_queue_router
from kanbanpulse.core.config import get_settings
from kanbanpulse.core.logging import configure_logging
from kanbanpulse.services.pipeline import NotificationPipeline, build_pipeline


logger = logging.getLogger(__name__)

API_VERSION = "v1"


def create_app(pipeline: NotificationPipeline | None = None) -> FastAPI:
    """Build the API app; an injected pipeline is used as-is and never started here."""
    configure_logging()
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if app.state.pipeline is not None:
            yield
            return
        owned = build_pipeline()
        app.state.pipeline = owned
        await owned.start(run_scheduler=settings.notify_scheduler_in_api)
        logger.info(
            "api_pipeline_started scheduler=%s fanout=%s",
            settings.notify_scheduler_in_api,
            owned.fanout.name,
        )
        try:
            yield
        finally:
            await owned.shutdown(flush=True)
            app.state.pipeline = None

    app = FastAPI(title="KanbanPulse API", lifespan=lifespan)
    app.state.pipeline = pipeline

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(notification_queue_router, prefix=f"/{API_VERSION}")
    return app
