from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from panelsync.apps.api.errors import (
    http_exception_handler,
    panelsync_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from panelsync.apps.api.response import API_VERSION
from panelsync.apps.api.routes.events import router as events_router
from panelsync.apps.api.routes.health import router as health_router
from panelsync.apps.api.routes.panels import router as panels_router
from panelsync.apps.api.routes.subscriptions import router as subscriptions_router
from panelsync.core.config import get_settings
from panelsync.core.errors import PanelSyncError
from panelsync.core.logging import configure_logging
from panelsync.providers.panels.http import close_panel_http_client


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    yield
    # Release pooled panel connections on shutdown.
    await close_panel_http_client()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title=f"{settings.app_name} admin API", version=API_VERSION, lifespan=_lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        logger.info(
            "api_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - start) * 1000.0,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(PanelSyncError, panelsync_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    app.include_router(subscriptions_router, prefix=f"/{API_VERSION}")
    app.include_router(panels_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
