from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tenantrag.apps.api.deps import get_services
from tenantrag.apps.api.response import success_response
from tenantrag.services.telemetry import snapshot

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


@router.get("/health")
async def health(request: Request) -> Any:
    # Liveness only; never touches dependencies.
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/ready")
async def ready(request: Request) -> Any:
    services = get_services(request)
    store_ok = await services.store.ping()
    payload = {
        "status": "ready" if store_ok else "degraded",
        "vector_store": "ok" if store_ok else "unavailable",
        "job_executor": "running" if services.executor.running else "stopped",
        "pending_jobs": services.jobs.pending_count(),
        "telemetry": snapshot(),
    }
    body = success_response(request=request, data=payload)
    return JSONResponse(content=body, status_code=200 if store_ok else 503)
