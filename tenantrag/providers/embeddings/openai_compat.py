from __future__ import annotations

import logging
from typing import Any

import httpx

from tenantrag.core.errors import ProviderConfigError


logger = logging.getLogger(__name__)


class OpenAICompatibleEmbeddingProvider:
    """Embedding adapter for any server exposing the OpenAI /embeddings API."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        dimensions: int,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError("Embedding config missing: set EMBEDDING_API_KEY in .env.")
        self.model = model
        self.dimensions = dimensions
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}
        # Allow injecting a client (e.g. MockTransport) for tests.
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        payload: dict[str, Any] = {"model": self.model, "input": texts}
        response = await self._client.post(
            f"{self._base_url}/embeddings", json=payload, headers=self._headers
        )
        response.raise_for_status()
        data = sorted(response.json().get("data", []), key=lambda item: item.get("index", 0))
        if len(data) != len(texts):
            raise ValueError(f"embedding response returned {len(data)} vectors for {len(texts)} inputs")
        vectors = [[float(value) for value in item["embedding"]] for item in data]
        logger.debug("embedding_batch model=%s size=%s", self.model, len(vectors))
        return vectors

    async def aclose(self) -> None:
        await self._client.aclose()
