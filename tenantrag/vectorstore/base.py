from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import re
from typing import Any, Protocol, Sequence
from urllib.parse import urlsplit

from tenantrag.core.errors import DimensionMismatchError, ValidationError, VectorStoreConnectionFailed
from tenantrag.domain.types import Chunk, IndexStats, ScoredChunk


_TABLE_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]{0,62}$")

_ALLOWED_SCHEMES = frozenset({"postgres", "postgresql", "postgresql+asyncpg"})

_ITERATIVE_SCAN_MODES = frozenset({"off", "relaxed_order", "strict_order"})


class IndexType(str, Enum):
    # ivfflat: fast build, moderate recall, tolerant of churn.
    IVFFLAT = "ivfflat"
    # hnsw: slower build, higher recall and lower latency for read-heavy data.
    HNSW = "hnsw"


@dataclass(frozen=True)
class VectorStoreConfig:
    table_name: str = "chunks"
    dimensions: int = 768
    index_type: IndexType = IndexType.HNSW
    ivfflat_lists: int = 100
    ivfflat_probes: int = 10
    hnsw_m: int = 16
    hnsw_ef_construction: int = 64
    hnsw_ef_search: int = 40
    iterative_scan: str = "relaxed_order"

    def __post_init__(self) -> None:
        object.__setattr__(self, "index_type", IndexType(self.index_type))
        if self.iterative_scan not in _ITERATIVE_SCAN_MODES:
            raise ValidationError(f"invalid iterative_scan mode: {self.iterative_scan!r}")
        validate_table_name(self.table_name)
        if self.dimensions < 1:
            raise ValidationError("dimensions must be >= 1")


def validate_table_name(name: str) -> str:
    # Table names are interpolated into DDL, so only plain identifiers pass.
    if not _TABLE_NAME_RE.match(name or ""):
        raise ValidationError(f"invalid table name: {name!r}")
    return name


@dataclass(frozen=True)
class StoreURL:
    scheme: str
    host: str
    port: int | None
    database: str
    username: str | None

    def redacted(self) -> str:
        # Never surface credentials in logs or errors.
        port = f":{self.port}" if self.port else ""
        return f"{self.scheme}://{self.host}{port}/{self.database}"


def parse_store_url(url: str) -> StoreURL:
    # Validate scheme and shape before any connection attempt.
    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        raise VectorStoreConnectionFailed("malformed store URL") from exc
    if parts.scheme not in _ALLOWED_SCHEMES:
        raise VectorStoreConnectionFailed(f"unsupported store URL scheme: {parts.scheme or '<none>'}")
    if not parts.hostname:
        raise VectorStoreConnectionFailed("store URL is missing a host")
    database = parts.path.lstrip("/")
    if not database or "/" in database:
        raise VectorStoreConnectionFailed("store URL is missing a database name")
    return StoreURL(
        scheme=parts.scheme,
        host=parts.hostname,
        port=port,
        database=database,
        username=parts.username,
    )


def to_asyncpg_url(url: str) -> str:
    # SQLAlchemy needs the explicit async driver in the scheme.
    scheme, _, rest = url.partition("://")
    if scheme in {"postgres", "postgresql"}:
        return f"postgresql+asyncpg://{rest}"
    return url


def validate_embedding(embedding: Sequence[float], dimensions: int) -> None:
    if len(embedding) != dimensions:
        raise DimensionMismatchError(expected=dimensions, actual=len(embedding))
    if not all(math.isfinite(value) for value in embedding):
        raise ValidationError("embedding contains non-finite values")


def validate_chunks(chunks: Sequence[Chunk], dimensions: int) -> None:
    # Reject the whole batch before any write so upserts stay all-or-nothing.
    for chunk in chunks:
        if not chunk.id or not chunk.document_id or not chunk.tenant_id:
            raise ValidationError("chunk requires id, document_id and tenant_id")
        validate_embedding(chunk.embedding, dimensions)


def validate_limit(limit: int) -> int:
    if limit <= 0:
        raise ValidationError("limit must be greater than zero")
    return int(limit)


class VectorStore(Protocol):
    config: VectorStoreConfig

    async def upsert(self, chunks: Sequence[Chunk]) -> int:
        ...

    async def replace_document(self, tenant_id: str, document_id: str, chunks: Sequence[Chunk]) -> int:
        ...

    async def similarity_search(
        self,
        tenant_id: str,
        query_vector: Sequence[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        ...

    async def delete_by_document(self, tenant_id: str, document_id: str) -> int:
        ...

    async def stats(self, tenant_id: str) -> IndexStats:
        ...

    async def list_chunks(self, tenant_id: str) -> list[Chunk]:
        ...

    async def delete_tenant(self, tenant_id: str) -> int:
        ...

    async def rebuild_index(self) -> None:
        ...

    async def ensure_schema(self) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...
