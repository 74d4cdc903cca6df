from __future__ import annotations

import hashlib
import math
import re

from tenantrag.core.config import EMBED_DIM

_TOKEN_RE = re.compile(r"[A-Za-z0-9_]+")


def _hash_token(token: str, dimensions: int) -> tuple[int, float]:
    digest = hashlib.sha256(token.encode("utf-8")).hexdigest()
    # Hash to a stable index within the fixed embedding dimension.
    idx = int(digest[:8], 16) % dimensions
    sign = 1.0 if int(digest[8:12], 16) % 2 == 0 else -1.0
    magnitude = (int(digest[12:20], 16) % 1000) / 1000.0
    return idx, sign * (0.2 + magnitude)


def embed_text(text: str, dimensions: int = EMBED_DIM) -> list[float]:
    # Always allocate the full embedding dimension to match the store schema.
    vector = [0.0] * dimensions
    tokens = _TOKEN_RE.findall(text.lower())
    if not tokens:
        return vector

    for token in tokens:
        idx, value = _hash_token(token, dimensions)
        vector[idx] += value

    norm = math.sqrt(sum(v * v for v in vector))
    if norm == 0:
        return vector
    return [v / norm for v in vector]


class HashingEmbeddingProvider:
    """Deterministic bag-of-tokens embedder that needs no network access.

    Texts sharing tokens land close in cosine space, which is enough for
    development, tests and offline demos.
    """

    model = "hashing-v1"

    def __init__(self, dimensions: int = EMBED_DIM) -> None:
        if dimensions < 1:
            raise ValueError("dimensions must be >= 1")
        self.dimensions = dimensions

    async def embed(self, texts: list[str]) -> list[list[float]]:
        return [embed_text(text, self.dimensions) for text in texts]
