from __future__ import annotations

from typing import Any

from tenantrag.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "VALIDATION_ERROR", "query text is empty"),
    401: _response("Unauthorized", "UNAUTHORIZED", "Missing credential"),
    403: _response("Forbidden", "FORBIDDEN", "API key revoked"),
    429: _response(
        "Rate limited",
        "RATE_LIMITED",
        "Rate limit exceeded",
        details={"retry_after": 1, "operation": "query"},
    ),
    503: _response("Service unavailable", "VECTOR_STORE_UNAVAILABLE", "vector store unavailable during search"),
}
