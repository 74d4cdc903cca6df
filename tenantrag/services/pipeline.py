from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time
from typing import Any, Awaitable, Callable, Sequence, TypeVar

from tenantrag.core.config import Settings, get_settings
from tenantrag.core.errors import (
    EmbeddingFailed,
    GenerationFailed,
    JobCancelled,
    StorageFailure,
    TenantRAGError,
    ValidationError,
    VectorStoreConnectionFailed,
)
from tenantrag.domain.types import (
    Chunk,
    Document,
    IngestSummary,
    QueryOptions,
    QueryResult,
    ScoredChunk,
    TenantContext,
)
from tenantrag.ingestion.chunking import split_text
from tenantrag.providers.embeddings.base import EmbeddingProvider
from tenantrag.providers.llm.base import GenerationContext, LLMProvider
from tenantrag.services.prompts import (
    DEFAULT_SYSTEM_PROMPT,
    NO_RESULTS_MESSAGE,
    build_context,
    build_prompt,
)
from tenantrag.services.resilience import RetryPolicy, retry_async, storage_retryable
from tenantrag.services.telemetry import increment_counter, record_external_call
from tenantrag.vectorstore.base import VectorStore


logger = logging.getLogger(__name__)

T = TypeVar("T")


def chunk_id_for(document_id: str, ordinal: int) -> str:
    # Deterministic ids make re-ingestion overwrite instead of duplicate.
    return f"{document_id}#{ordinal}"


def reconstruct_documents(chunks: Sequence[Chunk]) -> list[Document]:
    """Rebuild source documents from their stored chunks.

    Chunks carry offsets into the original text, so overlapping prefixes are
    skipped and the text comes back exactly as ingested. Chunks without
    offsets are concatenated in ordinal order.
    """
    grouped: dict[str, list[Chunk]] = {}
    for chunk in chunks:
        grouped.setdefault(chunk.document_id, []).append(chunk)
    documents: list[Document] = []
    for document_id in sorted(grouped):
        parts = sorted(grouped[document_id], key=lambda chunk: chunk.ordinal)
        text = ""
        for chunk in parts:
            if chunk.start_offset is None or chunk.start_offset > len(text):
                text += chunk.text
            else:
                text += chunk.text[len(text) - chunk.start_offset :]
        metadata = dict(parts[0].metadata)
        documents.append(
            Document(id=document_id, text=text, metadata=metadata, source=metadata.get("source"))
        )
    return documents


@dataclass(frozen=True)
class _Timer:
    started: float

    @classmethod
    def start(cls) -> "_Timer":
        return cls(time.perf_counter())

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self.started) * 1000.0, 3)


class RAGPipeline:
    """Ingest documents into the vector store and answer questions over them."""

    def __init__(
        self,
        *,
        store: VectorStore,
        embedder: EmbeddingProvider,
        llm: LLMProvider,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._embedder = embedder
        self._llm = llm
        self._settings = settings or get_settings()
        self._retry_policy = retry_policy or RetryPolicy(
            timeout_ms=self._settings.ext_call_timeout_ms,
            max_attempts=self._settings.ext_retry_max_attempts,
            backoff_ms=self._settings.ext_retry_backoff_ms,
        )

    @property
    def store(self) -> VectorStore:
        return self._store

    @property
    def llm(self) -> LLMProvider:
        return self._llm

    async def _timed(self, integration: str, call: Callable[[], Awaitable[T]], **kwargs: Any) -> T:
        timer = _Timer.start()
        success = False
        try:
            result = await retry_async(call, policy=self._retry_policy, name=integration, **kwargs)
            success = True
            return result
        finally:
            record_external_call(integration=integration, latency_ms=timer.elapsed_ms(), success=success)

    async def _embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = await self._timed("embedding", lambda: self._embedder.embed(texts))
        except Exception as exc:  # noqa: BLE001 - any provider failure surfaces as EmbeddingFailed
            logger.warning("embedding_failed batch=%s error=%s", len(texts), type(exc).__name__)
            raise EmbeddingFailed("Embedding provider failed") from exc
        if len(vectors) != len(texts):
            raise EmbeddingFailed(f"Embedding provider returned {len(vectors)} vectors for {len(texts)} inputs")
        expected = self._store.config.dimensions
        for vector in vectors:
            if len(vector) != expected:
                raise EmbeddingFailed(
                    f"Embedding provider returned {len(vector)} dimensions, store expects {expected}"
                )
        return vectors

    async def _store_call(self, call: Callable[[], Awaitable[T]]) -> T:
        return await self._timed("vector_store", call, retryable=storage_retryable)

    def _validate_document(self, tenant: TenantContext, document: Document) -> None:
        if not document.id or not document.id.strip():
            raise ValidationError("document id is required")
        if not document.text or not document.text.strip():
            raise ValidationError("document text is empty")
        if len(document.text) > tenant.limits.max_document_chars:
            raise ValidationError(
                f"document exceeds {tenant.limits.max_document_chars} characters for tier {tenant.tier.value}"
            )

    async def ingest(
        self,
        tenant: TenantContext,
        document: Document,
        *,
        chunk_size: int | None = None,
        chunk_overlap: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> IngestSummary:
        """Chunk, embed and store one document; all-or-nothing.

        Nothing is written until every embedding succeeded, and the store
        write replaces the document atomically. ``cancel_event`` is checked
        before each embedding batch and before the write.
        """
        self._validate_document(tenant, document)
        size = chunk_size or self._settings.chunk_size_chars
        overlap = self._settings.chunk_overlap_chars if chunk_overlap is None else chunk_overlap
        # Keep the default overlap valid for small explicit chunk sizes.
        if chunk_overlap is None and overlap >= size:
            overlap = size // 4
        try:
            pieces = split_text(document.text, max_chunk_size=size, overlap=overlap)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        if len(pieces) > tenant.limits.max_chunks_per_document:
            raise ValidationError(
                f"document produces {len(pieces)} chunks, limit is {tenant.limits.max_chunks_per_document}"
            )

        def _check_cancelled() -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelled(f"ingestion of {document.id} cancelled")

        batch_size = max(1, self._settings.embedding_batch_size)
        embeddings: list[list[float]] = []
        batches = 0
        for start in range(0, len(pieces), batch_size):
            _check_cancelled()
            batch = pieces[start : start + batch_size]
            embeddings.extend(await self._embed([piece.text for piece in batch]))
            batches += 1
        _check_cancelled()

        base_metadata: dict[str, Any] = dict(document.metadata)
        if document.source:
            base_metadata.setdefault("source", document.source)
        chunks = [
            Chunk(
                id=chunk_id_for(document.id, piece.ordinal),
                tenant_id=tenant.tenant_id,
                document_id=document.id,
                text=piece.text,
                ordinal=piece.ordinal,
                embedding=vector,
                metadata=dict(base_metadata),
                start_offset=piece.start,
                end_offset=piece.end,
            )
            for piece, vector in zip(pieces, embeddings)
        ]

        try:
            await self._store_call(
                lambda: self._store.replace_document(tenant.tenant_id, document.id, chunks)
            )
        except (VectorStoreConnectionFailed, StorageFailure):
            await self._cleanup_document(tenant, document.id)
            raise

        increment_counter("documents_ingested_total")
        logger.info(
            "ingest_complete tenant_id=%s document_id=%s chunks=%s batches=%s",
            tenant.tenant_id,
            document.id,
            len(chunks),
            batches,
        )
        return IngestSummary(document_id=document.id, chunks_created=len(chunks), embedding_batches=batches)

    async def _cleanup_document(self, tenant: TenantContext, document_id: str) -> None:
        # Best-effort removal of anything a failed write may have left behind.
        try:
            await self._store.delete_by_document(tenant.tenant_id, document_id)
        except TenantRAGError as exc:
            logger.warning(
                "ingest_cleanup_failed tenant_id=%s document_id=%s error=%s",
                tenant.tenant_id,
                document_id,
                exc.code,
            )

    def _validate_query(self, text: str, limit: int) -> None:
        if not text or not text.strip():
            raise ValidationError("query text is empty")
        if limit <= 0 or limit > self._settings.retrieval_max_limit:
            raise ValidationError(
                f"retrieval limit must be between 1 and {self._settings.retrieval_max_limit}"
            )

    async def query(
        self, tenant: TenantContext, text: str, options: QueryOptions | None = None
    ) -> QueryResult:
        options = options or QueryOptions(retrieval_limit=self._settings.retrieval_default_limit)
        self._validate_query(text, options.retrieval_limit)
        total = _Timer.start()

        query_vector = (await self._embed([text]))[0]
        sources = await self._store_call(
            lambda: self._store.similarity_search(
                tenant.tenant_id, query_vector, options.retrieval_limit, options.filter
            )
        )
        retrieval_ms = total.elapsed_ms()
        metadata: dict[str, Any] = {
            "retrieval_ms": retrieval_ms,
            "generation_ms": None,
            "chunks_retrieved": len(sources),
            "model": None,
        }
        increment_counter("queries_total")

        answer: str | None = None
        if options.generate:
            if not sources:
                # Nothing to ground an answer on; skip the model entirely.
                answer = NO_RESULTS_MESSAGE
            else:
                generation = _Timer.start()
                answer = await self._generate(tenant, text, sources, options)
                metadata["generation_ms"] = generation.elapsed_ms()
                metadata["model"] = getattr(self._llm, "model", None)

        metadata["total_ms"] = total.elapsed_ms()
        logger.info(
            "query_complete tenant_id=%s chunks=%s generate=%s total_ms=%s",
            tenant.tenant_id,
            len(sources),
            options.generate,
            metadata["total_ms"],
        )
        return QueryResult(answer=answer, sources=sources, metadata=metadata)

    async def _generate(
        self,
        tenant: TenantContext,
        text: str,
        sources: list[ScoredChunk],
        options: QueryOptions,
    ) -> str:
        max_chars = options.max_context_chars or self._settings.max_context_chars
        blocks = build_context(sources, max_chars=max_chars)
        system_prompt = options.system_prompt or tenant.config.get("system_prompt") or DEFAULT_SYSTEM_PROMPT
        context = GenerationContext(
            system_prompt=system_prompt,
            sources=tuple(blocks),
            temperature=options.temperature,
        )
        prompt = build_prompt(text, blocks)
        try:
            return await self._timed("generation", lambda: self._llm.generate(prompt, context))
        except Exception as exc:  # noqa: BLE001 - any provider failure surfaces as GenerationFailed
            logger.warning(
                "generation_failed tenant_id=%s error=%s", tenant.tenant_id, type(exc).__name__
            )
            raise GenerationFailed("Generation provider failed", sources=sources) from exc

    async def retrieve(
        self,
        tenant: TenantContext,
        text: str,
        limit: int,
        filter: dict[str, Any] | None = None,
    ) -> list[ScoredChunk]:
        result = await self.query(
            tenant, text, QueryOptions(retrieval_limit=limit, generate=False, filter=filter)
        )
        return result.sources

    async def delete_document(self, tenant: TenantContext, document_id: str) -> int:
        if not document_id or not document_id.strip():
            raise ValidationError("document id is required")
        deleted = await self._store_call(
            lambda: self._store.delete_by_document(tenant.tenant_id, document_id)
        )
        logger.info(
            "document_deleted tenant_id=%s document_id=%s chunks=%s", tenant.tenant_id, document_id, deleted
        )
        return deleted

    async def stored_documents(self, tenant: TenantContext) -> list[Document]:
        chunks = await self._store_call(lambda: self._store.list_chunks(tenant.tenant_id))
        return reconstruct_documents(chunks)

    async def rebuild_index(self) -> None:
        await self._store_call(self._store.rebuild_index)

    async def purge_tenant(self, tenant: TenantContext) -> int:
        deleted = await self._store_call(lambda: self._store.delete_tenant(tenant.tenant_id))
        logger.info("tenant_index_purged tenant_id=%s chunks=%s", tenant.tenant_id, deleted)
        return deleted
