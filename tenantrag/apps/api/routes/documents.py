from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import APIRouter, Depends, Request, Response, status
from pydantic import BaseModel, Field

from tenantrag.apps.api.deps import get_services, require_admission, set_remaining_header
from tenantrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantrag.apps.api.response import success_response
from tenantrag.domain.types import Document, JobType, RateLimitOperation
from tenantrag.services.admission import Admission
from tenantrag.services.jobs import DocumentPayload, IngestJobPayload


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/documents", tags=["documents"], responses=DEFAULT_ERROR_RESPONSES)


class DocumentIngestRequest(BaseModel):
    text: str
    id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_overlap: int | None = Field(default=None, ge=0)

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [
                {
                    "id": "france-facts",
                    "text": "The capital of France is Paris.",
                    "metadata": {"topic": "geography"},
                    "source": "atlas.txt",
                }
            ]
        },
    }


class BatchIngestRequest(BaseModel):
    documents: list[DocumentIngestRequest] = Field(min_length=1, max_length=1000)
    chunk_size: int | None = Field(default=None, ge=1)
    chunk_overlap: int | None = Field(default=None, ge=0)

    model_config = {"extra": "forbid"}


class IngestResponse(BaseModel):
    document_id: str
    chunks_created: int
    embedding_batches: int


class BatchAccepted(BaseModel):
    job_id: str
    status: str
    document_count: int
    status_url: str


class DeleteResponse(BaseModel):
    document_id: str
    chunks_deleted: int


def _document_payload(item: DocumentIngestRequest) -> DocumentPayload:
    return DocumentPayload(
        id=item.id or uuid4().hex,
        text=item.text,
        metadata=dict(item.metadata),
        source=item.source,
    )


def _accepted(request: Request, job_id: str, *, document_count: int) -> BatchAccepted:
    prefix = "/v1" if request.url.path.startswith("/v1/") else ""
    return BatchAccepted(
        job_id=job_id,
        status="pending",
        document_count=document_count,
        status_url=f"{prefix}/jobs/{job_id}",
    )


@router.post("", status_code=status.HTTP_201_CREATED)
async def ingest_document(
    request: Request,
    response: Response,
    payload: DocumentIngestRequest,
    admission: Admission = Depends(require_admission(RateLimitOperation.INGEST)),
) -> Any:
    services = get_services(request)
    document = Document(
        id=payload.id or uuid4().hex,
        text=payload.text,
        metadata=dict(payload.metadata),
        source=payload.source,
    )
    summary, remaining = await services.admission.execute(
        admission,
        lambda: services.pipeline.ingest(
            admission.tenant,
            document,
            chunk_size=payload.chunk_size,
            chunk_overlap=payload.chunk_overlap,
        ),
    )
    set_remaining_header(request, response, remaining)
    data = IngestResponse(
        document_id=summary.document_id,
        chunks_created=summary.chunks_created,
        embedding_batches=summary.embedding_batches,
    )
    return success_response(request=request, data=data)


@router.post("/async", status_code=status.HTTP_202_ACCEPTED)
async def ingest_document_async(
    request: Request,
    response: Response,
    payload: DocumentIngestRequest,
    admission: Admission = Depends(require_admission(RateLimitOperation.INGEST)),
) -> Any:
    # Same bucket as synchronous ingest; the work runs on the job executor.
    services = get_services(request)
    job_payload = IngestJobPayload(
        documents=[_document_payload(payload)],
        chunk_size=payload.chunk_size,
        chunk_overlap=payload.chunk_overlap,
    )

    async def _enqueue() -> str:
        return services.jobs.enqueue(admission.tenant.tenant_id, JobType.INGEST, job_payload.model_dump())

    job_id, remaining = await services.admission.execute(admission, _enqueue)
    set_remaining_header(request, response, remaining)
    return success_response(request=request, data=_accepted(request, job_id, document_count=1))


@router.post("/batch", status_code=status.HTTP_202_ACCEPTED)
async def ingest_batch(
    request: Request,
    response: Response,
    payload: BatchIngestRequest,
    admission: Admission = Depends(require_admission(RateLimitOperation.BATCH_INGEST)),
) -> Any:
    services = get_services(request)
    job_payload = IngestJobPayload(
        documents=[_document_payload(item) for item in payload.documents],
        chunk_size=payload.chunk_size,
        chunk_overlap=payload.chunk_overlap,
    )

    async def _enqueue() -> str:
        return services.jobs.enqueue(
            admission.tenant.tenant_id, JobType.BATCH_INGEST, job_payload.model_dump()
        )

    job_id, remaining = await services.admission.execute(admission, _enqueue)
    set_remaining_header(request, response, remaining)
    return success_response(
        request=request, data=_accepted(request, job_id, document_count=len(job_payload.documents))
    )


@router.delete("/{document_id}")
async def delete_document(
    request: Request,
    response: Response,
    document_id: str,
    admission: Admission = Depends(require_admission(RateLimitOperation.INGEST)),
) -> Any:
    services = get_services(request)
    deleted, remaining = await services.admission.execute(
        admission, lambda: services.pipeline.delete_document(admission.tenant, document_id)
    )
    set_remaining_header(request, response, remaining)
    return success_response(
        request=request, data=DeleteResponse(document_id=document_id, chunks_deleted=deleted)
    )
