from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request

from tenantrag.apps.api.deps import get_services, require_tenant
from tenantrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantrag.apps.api.response import success_response
from tenantrag.core.errors import ValidationError
from tenantrag.domain.types import JobStatus
from tenantrag.services.admission import Admission

router = APIRouter(prefix="/jobs", tags=["jobs"], responses=DEFAULT_ERROR_RESPONSES)


@router.get("")
async def list_jobs(
    request: Request,
    status: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    admission: Admission = Depends(require_tenant),
) -> Any:
    services = get_services(request)
    status_filter: JobStatus | None = None
    if status is not None:
        try:
            status_filter = JobStatus(status)
        except ValueError as exc:
            raise ValidationError(f"unknown job status: {status}") from exc
    jobs = services.jobs.list_jobs(admission.tenant.tenant_id, status=status_filter, limit=limit)
    return success_response(request=request, data={"jobs": [job.to_dict() for job in jobs]})


@router.get("/{job_id}")
async def get_job(
    request: Request,
    job_id: str,
    admission: Admission = Depends(require_tenant),
) -> Any:
    job = get_services(request).jobs.get(job_id, admission.tenant.tenant_id)
    return success_response(request=request, data=job.to_dict())


@router.delete("/{job_id}")
async def cancel_job(
    request: Request,
    job_id: str,
    admission: Admission = Depends(require_tenant),
) -> Any:
    # Terminal jobs are reported unchanged; running jobs stop cooperatively.
    services = get_services(request)
    job = services.jobs.cancel(job_id, admission.tenant.tenant_id)
    data = job.to_dict()
    data["cancel_requested"] = services.jobs.is_cancel_requested(job_id)
    return success_response(request=request, data=data)
