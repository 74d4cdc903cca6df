from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantrag.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenantrag_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantrag.apps.api.response import API_VERSION
from tenantrag.apps.api.routes.documents import router as documents_router
from tenantrag.apps.api.routes.health import router as health_router
from tenantrag.apps.api.routes.indices import admin_router as indices_admin_router
from tenantrag.apps.api.routes.indices import router as indices_router
from tenantrag.apps.api.routes.jobs import router as jobs_router
from tenantrag.apps.api.routes.query import router as query_router
from tenantrag.core.config import get_settings
from tenantrag.core.errors import TenantRAGError
from tenantrag.core.logging import configure_logging
from tenantrag.services.container import Services, build_services
from tenantrag.services.telemetry import record_request


logger = logging.getLogger(__name__)

_ROUTERS = (
    query_router,
    documents_router,
    jobs_router,
    indices_router,
    indices_admin_router,
    health_router,
)


def create_app(services: Services | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Build the service bundle once per process unless a test injected one.
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = await build_services(get_settings())
        await app.state.services.executor.start()
        try:
            yield
        finally:
            if owned:
                await app.state.services.close()
            else:
                await app.state.services.executor.stop()

    app = FastAPI(title="TenantRAG API", lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(TenantRAGError, tenantrag_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # Mount versioned v1 API routes.
    for router in _ROUTERS:
        app.include_router(router, prefix=f"/{API_VERSION}")
    # Keep unversioned aliases for simple clients.
    for router in _ROUTERS:
        app.include_router(router, include_in_schema=False)

    return app


app = create_app()
