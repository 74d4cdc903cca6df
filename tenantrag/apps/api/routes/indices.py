from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from tenantrag.apps.api.deps import get_services, require_admission, require_tenant, set_remaining_header
from tenantrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantrag.apps.api.response import success_response
from tenantrag.core.errors import IndexNotFound, ValidationError
from tenantrag.domain.types import JobType, RateLimitOperation
from tenantrag.services.admission import Admission
from tenantrag.services.container import Services
from tenantrag.services.jobs import ReindexJobPayload

router = APIRouter(prefix="/index", tags=["index"], responses=DEFAULT_ERROR_RESPONSES)
# Index administration; every index is shared storage, so each call only sees the caller's rows.
admin_router = APIRouter(prefix="/indices", tags=["index"], responses=DEFAULT_ERROR_RESPONSES)


class CreateIndexRequest(BaseModel):
    name: str
    dimensions: int | None = Field(default=None, ge=1)

    model_config = {"extra": "forbid"}


class ReindexRequest(BaseModel):
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_overlap: int | None = Field(default=None, ge=0)
    rebuild_index: bool = True

    model_config = {"extra": "forbid"}


class ReindexAccepted(BaseModel):
    job_id: str
    status: str
    status_url: str


class PurgeResponse(BaseModel):
    name: str
    chunks_deleted: int


def _require_index(services: Services, name: str) -> None:
    if name != services.store.config.table_name:
        raise IndexNotFound(f"Index {name} not found")


async def _stats(services: Services, tenant_id: str) -> dict[str, Any]:
    data = asdict(await services.store.stats(tenant_id))
    data["name"] = services.store.config.table_name
    return data


@router.get("")
async def index_stats(request: Request, admission: Admission = Depends(require_tenant)) -> Any:
    # Counts are scoped to the caller's tenant.
    stats = await get_services(request).store.stats(admission.tenant.tenant_id)
    return success_response(request=request, data=asdict(stats))


@admin_router.get("")
async def list_indices(request: Request, admission: Admission = Depends(require_tenant)) -> Any:
    services = get_services(request)
    return success_response(
        request=request, data={"indices": [await _stats(services, admission.tenant.tenant_id)]}
    )


@admin_router.post("", status_code=status.HTTP_201_CREATED)
async def create_index(
    request: Request,
    payload: CreateIndexRequest,
    admission: Admission = Depends(require_tenant),
) -> Any:
    # Create-if-absent for the configured index; repeated calls are harmless.
    services = get_services(request)
    _require_index(services, payload.name)
    dimensions = services.store.config.dimensions
    if payload.dimensions is not None and payload.dimensions != dimensions:
        raise ValidationError(
            f"index {payload.name} has {dimensions} dimensions, requested {payload.dimensions}"
        )
    await services.store.ensure_schema()
    return success_response(request=request, data=await _stats(services, admission.tenant.tenant_id))


@admin_router.get("/{name}")
async def get_index(request: Request, name: str, admission: Admission = Depends(require_tenant)) -> Any:
    services = get_services(request)
    _require_index(services, name)
    return success_response(request=request, data=await _stats(services, admission.tenant.tenant_id))


@admin_router.delete("/{name}")
async def purge_index(
    request: Request,
    response: Response,
    name: str,
    admission: Admission = Depends(require_admission(RateLimitOperation.INGEST)),
) -> Any:
    # Removes the caller's rows only; the table and its ANN index stay for other tenants.
    services = get_services(request)
    _require_index(services, name)
    deleted, remaining = await services.admission.execute(
        admission, lambda: services.pipeline.purge_tenant(admission.tenant)
    )
    set_remaining_header(request, response, remaining)
    return success_response(request=request, data=PurgeResponse(name=name, chunks_deleted=deleted))


@admin_router.post("/{name}/reindex", status_code=status.HTTP_202_ACCEPTED)
async def reindex(
    request: Request,
    response: Response,
    name: str,
    payload: ReindexRequest | None = None,
    admission: Admission = Depends(require_admission(RateLimitOperation.REINDEX)),
) -> Any:
    services = get_services(request)
    _require_index(services, name)
    job_payload = ReindexJobPayload(**(payload or ReindexRequest()).model_dump())

    async def _enqueue() -> str:
        return services.jobs.enqueue(admission.tenant.tenant_id, JobType.REINDEX, job_payload.model_dump())

    job_id, remaining = await services.admission.execute(admission, _enqueue)
    set_remaining_header(request, response, remaining)
    prefix = "/v1" if request.url.path.startswith("/v1/") else ""
    return success_response(
        request=request,
        data=ReindexAccepted(job_id=job_id, status="pending", status_url=f"{prefix}/jobs/{job_id}"),
    )
