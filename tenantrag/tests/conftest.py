from __future__ import annotations

import pytest

from tenantrag.core.config import Settings, get_settings
from tenantrag.domain.types import TenantTier
from tenantrag.persistence.tenants import InMemoryTenantStore, TenantRecord
from tenantrag.providers.embeddings.hashing import HashingEmbeddingProvider
from tenantrag.providers.llm.fake import FakeLLMProvider
from tenantrag.services.container import Services, assemble_services
from tenantrag.services.rate_limit import TokenBucketLimiter
from tenantrag.services.telemetry import reset_telemetry
from tenantrag.vectorstore.base import VectorStoreConfig
from tenantrag.vectorstore.memory import InMemoryVectorStore


ALPHA_KEY = "trk_alpha_secret"
BETA_KEY = "trk_beta_secret"
TEST_DIMENSIONS = 64


class FakeClock:
    # Manually advanced monotonic clock for bucket and cache tests.
    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def _reset_state() -> None:
    # Clear cached settings and process counters so env overrides never leak between tests.
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_telemetry()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        embedding_dimensions=TEST_DIMENSIONS,
        ext_retry_max_attempts=1,
        ext_retry_backoff_ms=1,
        chunk_size_chars=200,
        chunk_overlap_chars=20,
        job_poll_interval_s=0.01,
    )


@pytest.fixture
def tenant_store() -> InMemoryTenantStore:
    store = InMemoryTenantStore()
    store.add_tenant(TenantRecord(id="alpha", tier=TenantTier.STANDARD, name="Alpha"))
    store.add_tenant(TenantRecord(id="beta", tier=TenantTier.FREE, name="Beta"))
    store.add_api_key("alpha", ALPHA_KEY)
    store.add_api_key("beta", BETA_KEY)
    return store


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore(VectorStoreConfig(dimensions=TEST_DIMENSIONS))


@pytest.fixture
def fake_llm() -> FakeLLMProvider:
    return FakeLLMProvider(response="Paris is the capital of France.")


@pytest.fixture
def services(
    settings: Settings,
    tenant_store: InMemoryTenantStore,
    vector_store: InMemoryVectorStore,
    fake_llm: FakeLLMProvider,
    clock: FakeClock,
) -> Services:
    return assemble_services(
        settings,
        tenant_store=tenant_store,
        store=vector_store,
        embedder=HashingEmbeddingProvider(TEST_DIMENSIONS),
        llm=fake_llm,
        limiter=TokenBucketLimiter(time_provider=clock),
    )
