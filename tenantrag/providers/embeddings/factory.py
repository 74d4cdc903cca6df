from __future__ import annotations

from tenantrag.core.config import Settings
from tenantrag.core.errors import ProviderConfigError
from tenantrag.providers.embeddings.base import EmbeddingProvider
from tenantrag.providers.embeddings.hashing import HashingEmbeddingProvider
from tenantrag.providers.embeddings.openai_compat import OpenAICompatibleEmbeddingProvider


def get_embedding_provider(settings: Settings) -> EmbeddingProvider:
    provider = (settings.embedding_provider or "hash").lower()

    if provider == "hash":
        return HashingEmbeddingProvider(settings.embedding_dimensions)
    if provider == "openai":
        return OpenAICompatibleEmbeddingProvider(
            base_url=settings.embedding_base_url,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
        )
    raise ProviderConfigError(f"Unsupported embedding provider: {settings.embedding_provider}")
