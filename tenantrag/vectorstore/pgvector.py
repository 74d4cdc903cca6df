from __future__ import annotations

import hashlib
import logging
from typing import Any, Sequence

from pgvector.sqlalchemy import Vector
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, delete, func, select, text
from sqlalchemy.dialects.postgresql import JSONB, insert as pg_insert
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.sql import Delete, Select
from sqlalchemy.sql.dml import Insert

from tenantrag.core.errors import StorageFailure, VectorStoreConnectionFailed
from tenantrag.domain.types import Chunk, IndexStats, ScoredChunk
from tenantrag.persistence.db import build_engine
from tenantrag.vectorstore.base import (
    IndexType,
    VectorStoreConfig,
    parse_store_url,
    to_asyncpg_url,
    validate_chunks,
    validate_embedding,
    validate_limit,
)


logger = logging.getLogger(__name__)


def build_chunk_table(config: VectorStoreConfig) -> Table:
    # Mirrors the DDL in build_schema_statements; used only for query building.
    return Table(
        config.table_name,
        MetaData(),
        Column("tenant_id", String, primary_key=True),
        Column("document_id", String, primary_key=True),
        Column("id", String, primary_key=True),
        Column("ordinal", Integer, nullable=False),
        Column("content", Text, nullable=False),
        Column("embedding", Vector(config.dimensions), nullable=False),
        Column("metadata_json", JSONB, nullable=False),
        Column("start_offset", Integer, nullable=True),
        Column("end_offset", Integer, nullable=True),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
    )


def _advisory_key(table_name: str) -> int:
    # Stable signed 63-bit key so every instance serializes DDL on the same lock.
    digest = hashlib.sha256(f"tenantrag:{table_name}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True) >> 1


def build_schema_statements(config: VectorStoreConfig) -> list[str]:
    # Identifiers are validated by VectorStoreConfig; numeric knobs are ints.
    table = config.table_name
    statements = [
        "CREATE EXTENSION IF NOT EXISTS vector",
        (
            f"CREATE TABLE IF NOT EXISTS {table} ("
            "tenant_id TEXT NOT NULL, "
            "document_id TEXT NOT NULL, "
            "id TEXT NOT NULL, "
            "ordinal INTEGER NOT NULL, "
            "content TEXT NOT NULL, "
            f"embedding vector({int(config.dimensions)}) NOT NULL, "
            "metadata_json JSONB NOT NULL DEFAULT '{}'::jsonb, "
            "start_offset INTEGER, "
            "end_offset INTEGER, "
            "created_at TIMESTAMPTZ NOT NULL DEFAULT now(), "
            "PRIMARY KEY (tenant_id, document_id, id))"
        ),
        f"CREATE INDEX IF NOT EXISTS ix_{table}_tenant_document ON {table} (tenant_id, document_id)",
    ]
    if config.index_type == IndexType.HNSW:
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {embedding_index_name(config)} ON {table} "
            f"USING hnsw (embedding vector_cosine_ops) "
            f"WITH (m = {int(config.hnsw_m)}, ef_construction = {int(config.hnsw_ef_construction)})"
        )
    else:
        statements.append(
            f"CREATE INDEX IF NOT EXISTS {embedding_index_name(config)} ON {table} "
            f"USING ivfflat (embedding vector_cosine_ops) WITH (lists = {int(config.ivfflat_lists)})"
        )
    return statements


def embedding_index_name(config: VectorStoreConfig) -> str:
    return f"ix_{config.table_name}_embedding_{config.index_type.value}"


def search_settings_statements(config: VectorStoreConfig) -> list[str]:
    # SET LOCAL scopes the knobs to the search transaction.
    # The tenant filter runs after the ANN scan, so without iterative scans a small tenant
    # in a large table can see fewer rows than requested.
    if config.index_type == IndexType.HNSW:
        statements = [f"SET LOCAL hnsw.ef_search = {int(config.hnsw_ef_search)}"]
        if config.iterative_scan != "off":
            statements.append(f"SET LOCAL hnsw.iterative_scan = {config.iterative_scan}")
        return statements
    statements = [f"SET LOCAL ivfflat.probes = {int(config.ivfflat_probes)}"]
    if config.iterative_scan != "off":
        # ivfflat only supports relaxed ordering.
        statements.append("SET LOCAL ivfflat.iterative_scan = relaxed_order")
    return statements


# Disables index scans for one transaction so the planner falls back to an exact, tenant-filtered scan.
EXACT_SCAN_STATEMENT = "SET LOCAL enable_indexscan = off"


def _chunk_row(chunk: Chunk) -> dict[str, Any]:
    return {
        "tenant_id": chunk.tenant_id,
        "document_id": chunk.document_id,
        "id": chunk.id,
        "ordinal": chunk.ordinal,
        "content": chunk.text,
        "embedding": list(chunk.embedding),
        "metadata_json": dict(chunk.metadata),
        "start_offset": chunk.start_offset,
        "end_offset": chunk.end_offset,
    }


def build_upsert_statement(table: Table, chunks: Sequence[Chunk]) -> Insert:
    # Single statement so concurrent writers of one key resolve last-write-wins in the database.
    stmt = pg_insert(table).values([_chunk_row(chunk) for chunk in chunks])
    return stmt.on_conflict_do_update(
        index_elements=[table.c.tenant_id, table.c.document_id, table.c.id],
        set_={
            "ordinal": stmt.excluded.ordinal,
            "content": stmt.excluded.content,
            "embedding": stmt.excluded.embedding,
            "metadata_json": stmt.excluded.metadata_json,
            "start_offset": stmt.excluded.start_offset,
            "end_offset": stmt.excluded.end_offset,
        },
    )


def build_search_statement(
    table: Table,
    *,
    tenant_id: str,
    query_vector: Sequence[float],
    limit: int,
    filter: dict[str, Any] | None = None,
) -> Select:
    # Use cosine distance from pgvector; lower is more similar.
    distance_expr = table.c.embedding.cosine_distance(list(query_vector))
    stmt = select(table, distance_expr.label("distance")).where(table.c.tenant_id == tenant_id)
    if filter:
        stmt = stmt.where(table.c.metadata_json.contains(filter))
    # Secondary ordering keeps tie-breaking deterministic.
    return stmt.order_by(distance_expr.asc(), table.c.id.asc()).limit(limit)


def build_delete_statement(table: Table, *, tenant_id: str, document_id: str) -> Delete:
    return delete(table).where(table.c.tenant_id == tenant_id, table.c.document_id == document_id)


def build_tenant_delete_statement(table: Table, *, tenant_id: str) -> Delete:
    return delete(table).where(table.c.tenant_id == tenant_id)


def build_list_statement(table: Table, *, tenant_id: str) -> Select:
    return (
        select(table)
        .where(table.c.tenant_id == tenant_id)
        .order_by(table.c.document_id.asc(), table.c.ordinal.asc())
    )


def _row_to_chunk(row: Any) -> Chunk:
    return Chunk(
        id=row["id"],
        tenant_id=row["tenant_id"],
        document_id=row["document_id"],
        text=row["content"],
        ordinal=int(row["ordinal"]),
        embedding=[float(value) for value in row["embedding"]],
        metadata=dict(row["metadata_json"] or {}),
        start_offset=row["start_offset"],
        end_offset=row["end_offset"],
    )


def _map_error(exc: Exception, action: str) -> Exception:
    # Convert driver errors into stable store errors without leaking connection details.
    if isinstance(exc, (OperationalError, InterfaceError, OSError)):
        return VectorStoreConnectionFailed(f"vector store unavailable during {action}")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return VectorStoreConnectionFailed(f"vector store connection lost during {action}")
    return StorageFailure(f"vector store {action} failed")


class PgVectorStore:
    """Postgres + pgvector store scoped per tenant."""

    def __init__(self, engine: AsyncEngine, config: VectorStoreConfig) -> None:
        self._engine = engine
        self.config = config
        self._table = build_chunk_table(config)

    @classmethod
    async def connect(
        cls,
        config: VectorStoreConfig,
        url: str,
        *,
        engine: AsyncEngine | None = None,
    ) -> "PgVectorStore":
        parsed = parse_store_url(url)
        engine = engine or build_engine(to_asyncpg_url(url))
        store = cls(engine, config)
        try:
            await store.ensure_schema()
        except VectorStoreConnectionFailed:
            await engine.dispose()
            raise
        except (SQLAlchemyError, OSError) as exc:
            await engine.dispose()
            logger.error("vector_store_connect_failed target=%s error=%s", parsed.redacted(), type(exc).__name__)
            raise VectorStoreConnectionFailed(
                f"could not initialize vector store at {parsed.redacted()}"
            ) from exc
        logger.info(
            "vector_store_ready target=%s table=%s index=%s dimensions=%s",
            parsed.redacted(),
            config.table_name,
            config.index_type.value,
            config.dimensions,
        )
        return store

    async def ensure_schema(self) -> None:
        # Advisory lock serializes concurrent initializers across instances.
        async with self._engine.begin() as conn:
            await conn.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": _advisory_key(self.config.table_name)},
            )
            statements = build_schema_statements(self.config)
            await conn.execute(text(statements[0]))
            await self._check_dimensions(conn)
            for statement in statements[1:]:
                await conn.execute(text(statement))

    async def _check_dimensions(self, conn: AsyncConnection) -> None:
        result = await conn.execute(
            text(
                "SELECT atttypmod FROM pg_attribute "
                "WHERE attrelid = to_regclass(:table) AND attname = 'embedding' AND NOT attisdropped"
            ),
            {"table": self.config.table_name},
        )
        existing = result.scalar_one_or_none()
        if existing is not None and int(existing) != self.config.dimensions:
            raise VectorStoreConnectionFailed(
                f"table {self.config.table_name} has embedding dimension {existing}, "
                f"configured {self.config.dimensions}"
            )

    async def upsert(self, chunks: Sequence[Chunk]) -> int:
        validate_chunks(chunks, self.config.dimensions)
        if not chunks:
            return 0
        try:
            async with self._engine.begin() as conn:
                await conn.execute(build_upsert_statement(self._table, chunks))
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "upsert") from exc
        return len(chunks)

    async def replace_document(self, tenant_id: str, document_id: str, chunks: Sequence[Chunk]) -> int:
        validate_chunks(chunks, self.config.dimensions)
        try:
            # One transaction so a shorter re-ingest never leaves stale tail chunks.
            async with self._engine.begin() as conn:
                await conn.execute(
                    build_delete_statement(self._table, tenant_id=tenant_id, document_id=document_id)
                )
                if chunks:
                    await conn.execute(build_upsert_statement(self._table, chunks))
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "replace") from exc
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
        stmt = build_search_statement(
            self._table, tenant_id=tenant_id, query_vector=query_vector, limit=limit, filter=filter
        )
        rows = await self._search_rows(stmt, search_settings_statements(self.config))
        if len(rows) < limit:
            # The ANN scan may have run out of candidates before the tenant filter was satisfied;
            # an exact scan is bounded by the tenant's own rows.
            rows = await self._search_rows(stmt, [EXACT_SCAN_STATEMENT])

        # Convert cosine distance to similarity; higher is closer.
        items = [ScoredChunk(chunk=_row_to_chunk(row), score=1.0 - float(row["distance"])) for row in rows]
        # relaxed_order iterative scans may return rows slightly out of order.
        items.sort(key=lambda item: (-item.score, item.chunk.id))
        return items

    async def _search_rows(self, stmt: Select, settings: Sequence[str]) -> list[Any]:
        try:
            async with self._engine.begin() as conn:
                for statement in settings:
                    await conn.execute(text(statement))
                result = await conn.execute(stmt)
                return list(result.mappings().all())
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "search") from exc

    async def list_chunks(self, tenant_id: str) -> list[Chunk]:
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(build_list_statement(self._table, tenant_id=tenant_id))
                rows = result.mappings().all()
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "list") from exc
        return [_row_to_chunk(row) for row in rows]

    async def delete_tenant(self, tenant_id: str) -> int:
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(build_tenant_delete_statement(self._table, tenant_id=tenant_id))
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "purge") from exc
        return int(result.rowcount or 0)

    async def rebuild_index(self) -> None:
        # The ANN index is shared by every tenant in the table; rebuilds block writers until done.
        index_name = embedding_index_name(self.config)
        try:
            async with self._engine.begin() as conn:
                await conn.execute(text(f"REINDEX INDEX {index_name}"))
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "reindex") from exc
        logger.info("vector_index_rebuilt index=%s", index_name)

    async def delete_by_document(self, tenant_id: str, document_id: str) -> int:
        try:
            async with self._engine.begin() as conn:
                result = await conn.execute(
                    build_delete_statement(self._table, tenant_id=tenant_id, document_id=document_id)
                )
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "delete") from exc
        return int(result.rowcount or 0)

    async def stats(self, tenant_id: str) -> IndexStats:
        stmt = select(
            func.count(),
            func.count(func.distinct(self._table.c.document_id)),
        ).where(self._table.c.tenant_id == tenant_id)
        try:
            async with self._engine.connect() as conn:
                chunk_count, document_count = (await conn.execute(stmt)).one()
        except (SQLAlchemyError, OSError) as exc:
            raise _map_error(exc, "stats") from exc
        return IndexStats(
            tenant_id=tenant_id,
            document_count=int(document_count or 0),
            chunk_count=int(chunk_count or 0),
            dimensions=self.config.dimensions,
            index_type=self.config.index_type.value,
            table_name=self.config.table_name,
        )

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError):
            logger.warning("vector_store_ping_failed table=%s", self.config.table_name)
            return False
        return True

    async def close(self) -> None:
        await self._engine.dispose()
