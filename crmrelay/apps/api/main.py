from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from crmrelay.apps.api.errors import (
    http_exception_handler,
    relay_error_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from crmrelay.apps.api.response import API_VERSION
from crmrelay.apps.api.routes.health import router as health_router
from crmrelay.apps.api.routes.ops import router as ops_router
from crmrelay.apps.api.routes.webhooks import router as webhooks_router
from crmrelay.core.errors import RelayError
from crmrelay.core.logging import configure_logging
from crmrelay.services.runtime import RelayRuntime, build_runtime
from crmrelay.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def create_app(runtime: RelayRuntime | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Runtimes passed in by the caller are started and closed by the caller.
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = build_runtime()
        await app.state.runtime.start(with_monitor=owned)
        logger.info("relay_api_started queue_configured=%s", app.state.runtime.queue is not None)
        try:
            yield
        finally:
            if owned:
                await app.state.runtime.aclose()
                app.state.runtime = None

    app = FastAPI(title="CRM Relay API", version=API_VERSION, lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_requests_{response.status_code // 100}xx_total")
        logger.debug(
            "http_request path=%s status=%s latency_ms=%.1f request_id=%s",
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(RelayError)
    async def _relay_error_handler(request: Request, exc: RelayError):
        return await relay_error_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    # Expose operator endpoints for self-healing, retries and delivery stats.
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    return app


app = create_app()
