from __future__ import annotations

from typing import Awaitable, Callable

from fastapi import Header, Request, Response

from tenantrag.domain.types import RateLimitOperation
from tenantrag.services.admission import Admission
from tenantrag.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


def credential_from_request(request: Request) -> str | None:
    # Prefer the configured auth header; fall back to the raw API key header.
    settings = get_services(request).settings
    value = request.headers.get(settings.auth_api_key_header)
    if value:
        return value
    return request.headers.get(settings.auth_alt_api_key_header)


def idempotency_key_header(
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key", max_length=128),
) -> str | None:
    # Expose Idempotency-Key in OpenAPI without forcing usage in handlers.
    return idempotency_key


def require_admission(operation: RateLimitOperation) -> Callable[..., Awaitable[Admission]]:
    # Authenticate and check the operation's bucket before the handler runs.
    async def _dependency(request: Request) -> Admission:
        services = get_services(request)
        raw_key = (request.headers.get("Idempotency-Key") or "").strip()
        # Keys are scoped to the route so one key cannot replay another endpoint.
        request_key = f"{request.method} {request.url.path} {raw_key}" if raw_key else None
        admission = await services.admission.admit(
            credential_from_request(request),
            operation,
            request_key=request_key,
        )
        request.state.tenant_id = admission.tenant.tenant_id
        return admission

    return _dependency


async def require_tenant(request: Request) -> Admission:
    # Authentication only; used by read/administrative endpoints without a bucket.
    services = get_services(request)
    admission = await services.admission.authenticate(credential_from_request(request))
    request.state.tenant_id = admission.tenant.tenant_id
    return admission


def set_remaining_header(request: Request, response: Response, remaining: int) -> None:
    # Negative means limiting is disabled; omit the header rather than lie.
    request.state.rate_limit_remaining = remaining
    if remaining >= 0:
        response.headers["X-RateLimit-Remaining"] = str(remaining)
