from __future__ import annotations

from dataclasses import replace
import math
from typing import Any, Sequence

from tenantrag.domain.types import Chunk, IndexStats, ScoredChunk
from tenantrag.vectorstore.base import (
    VectorStoreConfig,
    validate_chunks,
    validate_embedding,
    validate_limit,
)


def cosine_similarity(left: Sequence[float], right: Sequence[float]) -> float:
    dot = sum(a * b for a, b in zip(left, right))
    left_norm = math.sqrt(sum(a * a for a in left))
    right_norm = math.sqrt(sum(b * b for b in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)


def _matches(metadata: dict[str, Any], filter: dict[str, Any] | None) -> bool:
    if not filter:
        return True
    return all(metadata.get(key) == value for key, value in filter.items())


class InMemoryVectorStore:
    """Brute-force cosine store with the same contract as the pgvector store."""

    def __init__(self, config: VectorStoreConfig | None = None) -> None:
        self.config = config or VectorStoreConfig()
        # Rows keyed by (tenant_id, document_id, chunk_id); dict assignment is last-write-wins.
        self._rows: dict[tuple[str, str, str], Chunk] = {}

    async def upsert(self, chunks: Sequence[Chunk]) -> int:
        validate_chunks(chunks, self.config.dimensions)
        for chunk in chunks:
            self._rows[(chunk.tenant_id, chunk.document_id, chunk.id)] = replace(
                chunk, embedding=list(chunk.embedding), metadata=dict(chunk.metadata)
            )
        return len(chunks)

    async def replace_document(self, tenant_id: str, document_id: str, chunks: Sequence[Chunk]) -> int:
        validate_chunks(chunks, self.config.dimensions)
        # No await between delete and insert, so readers never see a half-replaced document.
        for key in [key for key in self._rows if key[0] == tenant_id and key[1] == document_id]:
            del self._rows[key]
        for chunk in chunks:
            self._rows[(chunk.tenant_id, chunk.document_id, chunk.id)] = replace(
                chunk, embedding=list(chunk.embedding), metadata=dict(chunk.metadata)
            )
        return len(chunks)

    async def similarity_search(
        self,
        tenant_id: str,
        query_vector: Sequence[float],
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        limit = validate_limit(limit)
        validate_embedding(query_vector, self.config.dimensions)
        scored = [
            ScoredChunk(chunk=chunk, score=cosine_similarity(query_vector, chunk.embedding))
            for (row_tenant, _, _), chunk in list(self._rows.items())
            if row_tenant == tenant_id and _matches(chunk.metadata, filter)
        ]
        # Secondary ordering keeps tie-breaking deterministic.
        scored.sort(key=lambda item: (-item.score, item.chunk.id))
        return scored[:limit]

    async def delete_by_document(self, tenant_id: str, document_id: str) -> int:
        keys = [key for key in self._rows if key[0] == tenant_id and key[1] == document_id]
        for key in keys:
            del self._rows[key]
        return len(keys)

    async def stats(self, tenant_id: str) -> IndexStats:
        rows = [key for key in self._rows if key[0] == tenant_id]
        return IndexStats(
            tenant_id=tenant_id,
            document_count=len({key[1] for key in rows}),
            chunk_count=len(rows),
            dimensions=self.config.dimensions,
            index_type="memory",
            table_name=self.config.table_name,
        )

    async def list_chunks(self, tenant_id: str) -> list[Chunk]:
        chunks = [chunk for (row_tenant, _, _), chunk in list(self._rows.items()) if row_tenant == tenant_id]
        chunks.sort(key=lambda chunk: (chunk.document_id, chunk.ordinal))
        return chunks

    async def delete_tenant(self, tenant_id: str) -> int:
        keys = [key for key in self._rows if key[0] == tenant_id]
        for key in keys:
            del self._rows[key]
        return len(keys)

    async def rebuild_index(self) -> None:
        # Brute-force search has no index to rebuild.
        return None

    async def ensure_schema(self) -> None:
        return None

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
