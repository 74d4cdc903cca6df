from __future__ import annotations

from typing import Protocol


class EmbeddingProvider(Protocol):
    # Fixed output width; the vector store rejects anything else.
    dimensions: int
    model: str

    async def embed(self, texts: list[str]) -> list[list[float]]:
        ...
