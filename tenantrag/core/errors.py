from __future__ import annotations

from typing import Any


class TenantRAGError(Exception):
    """Base error for TenantRAG."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = message or (self.__class__.__doc__ or self.code).strip()


class ProviderConfigError(TenantRAGError):
    """Missing or invalid provider configuration."""


class Unauthorized(TenantRAGError):
    """Missing, malformed or expired credential."""

    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(TenantRAGError):
    """Credential is valid in form but not accepted."""

    code = "FORBIDDEN"
    status_code = 403


class RateLimited(TenantRAGError):
    """Tenant exhausted its token bucket for this operation."""

    code = "RATE_LIMITED"
    status_code = 429

    def __init__(self, retry_after: int, *, operation: str | None = None) -> None:
        super().__init__("Rate limit exceeded")
        # Never advertise a zero wait to clients.
        self.retry_after = max(1, int(retry_after))
        self.operation = operation


class ValidationError(TenantRAGError):
    """Input rejected before any side effect."""

    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail


class DimensionMismatchError(ValidationError):
    """Embedding length differs from the configured dimensions."""

    def __init__(self, *, expected: int, actual: int) -> None:
        super().__init__(f"embedding has {actual} dimensions, expected {expected}")
        self.expected = expected
        self.actual = actual


class VectorStoreConnectionFailed(TenantRAGError):
    """Vector store is unreachable or misconfigured."""

    code = "VECTOR_STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class StorageFailure(TenantRAGError):
    """Vector store rejected or failed an operation."""

    code = "STORAGE_FAILURE"
    status_code = 500


class EmbeddingFailed(TenantRAGError):
    """Embedding provider failed after retries."""

    code = "EMBEDDING_FAILED"
    status_code = 502


class GenerationFailed(TenantRAGError):
    """Generation provider failed after retrieval succeeded."""

    code = "GENERATION_FAILED"
    status_code = 502

    def __init__(self, message: str | None = None, *, sources: list[Any] | None = None) -> None:
        super().__init__(message)
        self.sources = list(sources or [])


class JobNotFound(TenantRAGError):
    """Job id is unknown to the caller's tenant."""

    code = "JOB_NOT_FOUND"
    status_code = 404


class JobCancelled(TenantRAGError):
    """Job observed a cancellation request."""

    code = "JOB_CANCELLED"
    status_code = 409


class IndexNotFound(TenantRAGError):
    """Index name is not served by this deployment."""

    code = "INDEX_NOT_FOUND"
    status_code = 404
