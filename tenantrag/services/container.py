from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Any

from tenantrag.core.config import Settings
from tenantrag.persistence.db import build_engine, build_sessionmaker
from tenantrag.persistence.tenants import InMemoryTenantStore, SqlTenantStore, TenantStore, seed_tenants
from tenantrag.providers.embeddings.base import EmbeddingProvider
from tenantrag.providers.embeddings.factory import get_embedding_provider
from tenantrag.providers.llm.base import LLMProvider
from tenantrag.providers.llm.factory import get_llm_provider
from tenantrag.services.admission import AdmissionController
from tenantrag.services.auth.tenants import TenantDirectory
from tenantrag.services.jobs import JobExecutor, JobQueue
from tenantrag.services.pipeline import RAGPipeline
from tenantrag.services.rate_limit import RateLimiterLike, build_rate_limiter
from tenantrag.vectorstore.base import VectorStore, VectorStoreConfig
from tenantrag.vectorstore.memory import InMemoryVectorStore
from tenantrag.vectorstore.pgvector import PgVectorStore


logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request or job needs, built once per process."""

    settings: Settings
    tenant_store: TenantStore
    directory: TenantDirectory
    limiter: RateLimiterLike | None
    store: VectorStore
    embedder: EmbeddingProvider
    llm: LLMProvider
    pipeline: RAGPipeline
    jobs: JobQueue
    executor: JobExecutor
    admission: AdmissionController
    _closeables: list[Any] = field(default_factory=list)

    async def close(self) -> None:
        await self.executor.stop()
        await self.store.close()
        for resource in self._closeables:
            closer = getattr(resource, "aclose", None) or getattr(resource, "close", None)
            if closer is not None:
                await closer()


def vector_store_config(settings: Settings) -> VectorStoreConfig:
    return VectorStoreConfig(
        table_name=settings.vector_table_name,
        dimensions=settings.embedding_dimensions,
        index_type=settings.vector_index_type,
        ivfflat_lists=settings.ivfflat_lists,
        ivfflat_probes=settings.ivfflat_probes,
        hnsw_m=settings.hnsw_m,
        hnsw_ef_construction=settings.hnsw_ef_construction,
        hnsw_ef_search=settings.hnsw_ef_search,
        iterative_scan=settings.vector_iterative_scan,
    )


async def open_vector_store(settings: Settings) -> VectorStore:
    config = vector_store_config(settings)
    backend = settings.vector_store_backend.lower()
    if backend == "memory":
        return InMemoryVectorStore(config)
    if backend == "pgvector":
        return await PgVectorStore.connect(config, settings.vector_store_url or settings.database_url)
    raise ValueError(f"Unsupported vector store backend: {settings.vector_store_backend}")


async def open_tenant_store(settings: Settings) -> tuple[TenantStore, list[Any]]:
    backend = settings.tenant_store.lower()
    if backend == "memory":
        store = InMemoryTenantStore()
        seed_tenants(store, settings.seed_tenants_json)
        return store, []
    if backend == "sql":
        engine = build_engine(settings.database_url)
        await SqlTenantStore.create_schema(engine)
        # Engines expose dispose(), not close(); wrap so Services.close can treat them alike.
        return SqlTenantStore(build_sessionmaker(engine)), [_EngineCloser(engine)]
    raise ValueError(f"Unsupported tenant store: {settings.tenant_store}")


class _EngineCloser:
    def __init__(self, engine: Any) -> None:
        self._engine = engine

    async def aclose(self) -> None:
        await self._engine.dispose()


def assemble_services(
    settings: Settings,
    *,
    tenant_store: TenantStore,
    store: VectorStore,
    embedder: EmbeddingProvider,
    llm: LLMProvider,
    limiter: RateLimiterLike | None,
    closeables: list[Any] | None = None,
) -> Services:
    # Wire components explicitly; tests call this with fakes.
    directory = TenantDirectory.from_settings(tenant_store, settings)
    pipeline = RAGPipeline(store=store, embedder=embedder, llm=llm, settings=settings)
    jobs = JobQueue()
    executor = JobExecutor(
        jobs,
        pipeline,
        directory.lookup_tenant,
        worker_count=settings.job_worker_count,
        poll_interval_s=settings.job_poll_interval_s,
        retention_s=settings.job_retention_s,
    )
    admission = AdmissionController(
        directory, limiter, idempotency_window_s=settings.idempotency_window_s
    )
    return Services(
        settings=settings,
        tenant_store=tenant_store,
        directory=directory,
        limiter=limiter,
        store=store,
        embedder=embedder,
        llm=llm,
        pipeline=pipeline,
        jobs=jobs,
        executor=executor,
        admission=admission,
        _closeables=list(closeables or []),
    )


async def build_services(settings: Settings) -> Services:
    tenant_store, closeables = await open_tenant_store(settings)
    store = await open_vector_store(settings)
    embedder = get_embedding_provider(settings)
    llm = get_llm_provider(settings)
    limiter = build_rate_limiter(settings)
    for resource in (embedder, llm, limiter):
        if resource is not None and (hasattr(resource, "aclose") or hasattr(resource, "close")):
            closeables.append(resource)
    logger.info(
        "services_ready tenant_store=%s vector_store=%s embedding=%s llm=%s rate_limit=%s",
        settings.tenant_store,
        settings.vector_store_backend,
        settings.embedding_provider,
        settings.llm_provider,
        settings.rate_limit_backend if limiter is not None else "disabled",
    )
    return assemble_services(
        settings,
        tenant_store=tenant_store,
        store=store,
        embedder=embedder,
        llm=llm,
        limiter=limiter,
        closeables=closeables,
    )
