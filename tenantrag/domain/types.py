from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


MIB = 1024 * 1024


class TenantTier(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


@dataclass(frozen=True)
class TierLimits:
    # Capacity envelope for a tier; rate-limit buckets derive from these numbers.
    queries_per_minute: int
    documents_per_day: int
    max_document_chars: int
    max_chunks_per_document: int


TIER_PRESETS: dict[TenantTier, TierLimits] = {
    TenantTier.FREE: TierLimits(10, 100, 1 * MIB, 100),
    TenantTier.STANDARD: TierLimits(60, 1000, 10 * MIB, 1000),
    TenantTier.PROFESSIONAL: TierLimits(300, 10000, 50 * MIB, 5000),
    TenantTier.ENTERPRISE: TierLimits(1000, 100000, 100 * MIB, 10000),
}


def limits_for_tier(tier: TenantTier | str) -> TierLimits:
    return TIER_PRESETS[TenantTier(tier)]


def _freeze(value: Any) -> Any:
    # Recursively wrap mappings so shared tenant config cannot be mutated in place.
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(item) for item in value)
    return value


@dataclass(frozen=True)
class TenantContext:
    """Resolved, read-only tenant identity shared by every in-flight request."""

    tenant_id: str
    tier: TenantTier = TenantTier.STANDARD
    limits: TierLimits | None = None
    config: Mapping[str, Any] = field(default_factory=dict)
    name: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "tier", TenantTier(self.tier))
        if self.limits is None:
            object.__setattr__(self, "limits", limits_for_tier(self.tier))
        object.__setattr__(self, "config", _freeze(dict(self.config)))


class RateLimitOperation(str, Enum):
    QUERY = "query"
    INGEST = "ingest"
    BATCH_INGEST = "batch_ingest"
    REINDEX = "reindex"


@dataclass(frozen=True)
class BucketConfig:
    # Configure rate limits with a sustained rate and burst capacity.
    rps: float
    burst: int


@dataclass(frozen=True)
class Document:
    id: str
    text: str
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str | None = None


@dataclass
class Chunk:
    id: str
    tenant_id: str
    document_id: str
    text: str
    ordinal: int
    embedding: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)
    start_offset: int | None = None
    end_offset: int | None = None


@dataclass(frozen=True)
class ScoredChunk:
    chunk: Chunk
    score: float

    def to_dict(self, *, include_embedding: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.chunk.id,
            "document_id": self.chunk.document_id,
            "text": self.chunk.text,
            "ordinal": self.chunk.ordinal,
            "score": self.score,
            "metadata": dict(self.chunk.metadata),
        }
        if include_embedding:
            payload["embedding"] = list(self.chunk.embedding)
        return payload


@dataclass(frozen=True)
class IndexStats:
    tenant_id: str
    document_count: int
    chunk_count: int
    dimensions: int
    index_type: str
    table_name: str


@dataclass
class QueryOptions:
    retrieval_limit: int = 5
    generate: bool = True
    filter: dict[str, Any] | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    max_context_chars: int | None = None


@dataclass
class QueryResult:
    answer: str | None
    sources: list[ScoredChunk]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class IngestSummary:
    document_id: str
    chunks_created: int
    embedding_batches: int


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES


_TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class JobType(str, Enum):
    INGEST = "ingest"
    BATCH_INGEST = "batch_ingest"
    REINDEX = "reindex"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    id: str
    tenant_id: str
    type: JobType
    payload: dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    result: dict[str, Any] | None = None
    error: str | None = None
    progress: float = 0.0
    attempts: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "type": self.type.value,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "result": self.result,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
