from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)
    # Set once a credential resolved; absent on public and unauthenticated responses.
    tenant_id: str | None = None
    # Tokens left in the bucket charged by this request; absent when nothing was charged.
    rate_limit_remaining: int | None = None


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Honour a caller-supplied X-Request-Id so traces line up across services.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}/")


def build_meta(request: Request) -> ResponseMeta:
    remaining = getattr(request.state, "rate_limit_remaining", None)
    return ResponseMeta(
        request_id=get_request_id(request),
        tenant_id=getattr(request.state, "tenant_id", None),
        rate_limit_remaining=remaining if remaining is not None and remaining >= 0 else None,
    )


def success_response(*, request: Request, data: Any) -> Any:
    # Unversioned routes return the bare payload; /v1 wraps it with request metadata.
    if isinstance(data, BaseModel):
        data = data.model_dump()
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": build_meta(request).model_dump(exclude_none=True)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {
        "error": error.model_dump(exclude_none=True),
        "meta": build_meta(request).model_dump(exclude_none=True),
    }
