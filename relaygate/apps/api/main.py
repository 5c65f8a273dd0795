from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from relaygate.apps.api.errors import (
    gateway_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from relaygate.apps.api.response import API_VERSION, REQUEST_ID_HEADER, get_request_id
from relaygate.apps.api.routes.events import router as events_router
from relaygate.apps.api.routes.health import router as health_router
from relaygate.apps.api.routes.instances import router as instances_router
from relaygate.apps.api.routes.messages import router as messages_router
from relaygate.apps.api.routes.webhooks import router as webhooks_router
from relaygate.core.config import get_settings
from relaygate.core.errors import RelayGateError
from relaygate.core.logging import configure_logging
from relaygate.persistence.db import SessionLocal
from relaygate.services.runtime import Runtime, build_runtime


logger = logging.getLogger(__name__)


def create_app(runtime: Runtime | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Build the default runtime on startup unless one was injected.
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime(session_factory=SessionLocal)
        active: Runtime = app.state.runtime
        await active.start()
        try:
            yield
        finally:
            await active.shutdown(get_settings().shutdown_grace_s)

    app = FastAPI(title="RelayGate API", lifespan=lifespan)
    app.state.runtime = runtime

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "api_request path=%s status=%s latency_ms=%.1f",
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(RelayGateError)
    async def _gateway_exception_handler(request: Request, exc: RelayGateError):
        return await gateway_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(instances_router, prefix=f"/{API_VERSION}")
    app.include_router(messages_router, prefix=f"/{API_VERSION}")
    app.include_router(webhooks_router, prefix=f"/{API_VERSION}")
    app.include_router(events_router, prefix=f"/{API_VERSION}")
    # Unversioned liveness check for load balancers.
    app.include_router(health_router, include_in_schema=False)

    return app


app = create_app()
