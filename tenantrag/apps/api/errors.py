from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantrag.apps.api.response import error_response, is_versioned_request
from tenantrag.core.errors import GenerationFailed, RateLimited, TenantRAGError, Unauthorized


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _render(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # Unversioned routes keep FastAPI's {"detail": ...} shape; v1 routes use the envelope.
    if is_versioned_request(request):
        content = error_response(request=request, code=code, message=message, details=details)
    else:
        detail: dict[str, Any] = {"code": code, "message": message}
        if details:
            detail.update(details)
        content = {"detail": detail}
    return JSONResponse(content=jsonable_encoder(content), status_code=status_code, headers=headers)


def _error_details(exc: TenantRAGError) -> dict[str, Any] | None:
    if isinstance(exc, RateLimited):
        return {"retry_after": exc.retry_after, "operation": exc.operation}
    if isinstance(exc, GenerationFailed):
        # Surface already-retrieved evidence alongside the failure.
        return {"sources": [source.to_dict() for source in exc.sources]}
    return None


def _error_headers(exc: TenantRAGError) -> dict[str, str] | None:
    if isinstance(exc, RateLimited):
        return {"Retry-After": str(exc.retry_after)}
    if isinstance(exc, Unauthorized):
        return {"WWW-Authenticate": "Bearer"}
    return None


async def tenantrag_exception_handler(request: Request, exc: TenantRAGError) -> JSONResponse:
    # Every domain error maps to one stable status and code.
    if exc.status_code >= 500:
        logger.warning(
            "request_failed path=%s code=%s status=%s", request.url.path, exc.code, exc.status_code
        )
    return _render(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
        details=_error_details(exc),
        headers=_error_headers(exc),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions (404, 405) are wrapped consistently.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _render(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Malformed bodies and params are plain bad requests.
    return _render(
        request,
        status_code=400,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error.
    logger.exception("unhandled_error path=%s", request.url.path)
    return _render(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
