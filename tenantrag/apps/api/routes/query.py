from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from tenantrag.apps.api.deps import get_services, require_admission, set_remaining_header
from tenantrag.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantrag.apps.api.response import success_response
from tenantrag.core.errors import ValidationError
from tenantrag.domain.types import QueryOptions, QueryResult, RateLimitOperation
from tenantrag.services.admission import Admission

router = APIRouter(prefix="/query", tags=["query"], responses=DEFAULT_ERROR_RESPONSES)

_DEFAULT_RETRIEVE_LIMIT = 5


class QueryRequest(BaseModel):
    query: str
    retrieval_limit: int = 5
    generate: bool = True
    filter: dict[str, Any] | None = None
    system_prompt: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_context_chars: int | None = Field(default=None, ge=1)

    # Tenancy comes from the credential, never the body.
    model_config = {
        "extra": "forbid",
        "json_schema_extra": {
            "examples": [{"query": "What is the capital of France?", "retrieval_limit": 3}]
        },
    }


class SourceResponse(BaseModel):
    id: str
    document_id: str
    text: str
    ordinal: int
    score: float
    metadata: dict[str, Any]


class QueryResponse(BaseModel):
    answer: str | None
    sources: list[SourceResponse]
    metadata: dict[str, Any]


class RetrieveResponse(BaseModel):
    query: str
    sources: list[SourceResponse]


def _query_response(result: QueryResult) -> QueryResponse:
    return QueryResponse(
        answer=result.answer,
        sources=[SourceResponse(**source.to_dict()) for source in result.sources],
        metadata=result.metadata,
    )


def parse_limit(raw: str | None, default: int = _DEFAULT_RETRIEVE_LIMIT) -> int:
    # Absent or unparsable limits fall back to the default instead of failing.
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@router.post("")
async def query(
    request: Request,
    response: Response,
    payload: QueryRequest,
    admission: Admission = Depends(require_admission(RateLimitOperation.QUERY)),
) -> Any:
    services = get_services(request)
    options = QueryOptions(
        retrieval_limit=payload.retrieval_limit,
        generate=payload.generate,
        filter=payload.filter,
        system_prompt=payload.system_prompt,
        temperature=payload.temperature,
        max_context_chars=payload.max_context_chars,
    )
    result, remaining = await services.admission.execute(
        admission, lambda: services.pipeline.query(admission.tenant, payload.query, options)
    )
    set_remaining_header(request, response, remaining)
    return success_response(request=request, data=_query_response(result))


@router.get("/retrieve")
async def retrieve(
    request: Request,
    response: Response,
    q: str | None = None,
    limit: str | None = None,
    admission: Admission = Depends(require_admission(RateLimitOperation.QUERY)),
) -> Any:
    if q is None or not q.strip():
        raise ValidationError("query parameter q is required")
    services = get_services(request)
    resolved_limit = parse_limit(limit)
    sources, remaining = await services.admission.execute(
        admission, lambda: services.pipeline.retrieve(admission.tenant, q, resolved_limit)
    )
    set_remaining_header(request, response, remaining)
    payload = RetrieveResponse(
        query=q, sources=[SourceResponse(**source.to_dict()) for source in sources]
    )
    return success_response(request=request, data=payload)
