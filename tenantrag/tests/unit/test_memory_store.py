from __future__ import annotations

import pytest

from tenantrag.core.errors import DimensionMismatchError, ValidationError
from tenantrag.domain.types import Chunk
from tenantrag.vectorstore.base import VectorStoreConfig
from tenantrag.vectorstore.memory import InMemoryVectorStore, cosine_similarity


def _chunk(tenant_id: str, document_id: str, ordinal: int, embedding: list[float], **metadata) -> Chunk:
    return Chunk(
        id=f"{document_id}#{ordinal}",
        tenant_id=tenant_id,
        document_id=document_id,
        text=f"{document_id} chunk {ordinal}",
        ordinal=ordinal,
        embedding=embedding,
        metadata=metadata,
    )


def _store() -> InMemoryVectorStore:
    return InMemoryVectorStore(VectorStoreConfig(dimensions=3))


def test_cosine_similarity_handles_zero_vectors() -> None:
    assert cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert cosine_similarity([1.0, 0.0], [0.0, 1.0]) == pytest.approx(0.0)
    assert cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0


@pytest.mark.asyncio
async def test_search_orders_by_score_and_scopes_tenant() -> None:
    store = _store()
    await store.upsert(
        [
            _chunk("t1", "d1", 0, [1.0, 0.0, 0.0]),
            _chunk("t1", "d2", 0, [0.7, 0.7, 0.0]),
            _chunk("t1", "d3", 0, [0.0, 0.0, 1.0]),
            _chunk("t2", "d9", 0, [1.0, 0.0, 0.0]),
        ]
    )

    results = await store.similarity_search("t1", [1.0, 0.0, 0.0], 10)

    assert [item.chunk.id for item in results] == ["d1#0", "d2#0", "d3#0"]
    assert results[0].score == pytest.approx(1.0)
    assert all(item.chunk.tenant_id == "t1" for item in results)
    assert results[0].score >= results[1].score >= results[2].score


@pytest.mark.asyncio
async def test_search_ties_break_by_id_and_limit_applies() -> None:
    store = _store()
    await store.upsert([_chunk("t1", name, 0, [0.0, 1.0, 0.0]) for name in ("c", "a", "b")])

    results = await store.similarity_search("t1", [0.0, 1.0, 0.0], 2)

    assert [item.chunk.id for item in results] == ["a#0", "b#0"]


@pytest.mark.asyncio
async def test_metadata_filter() -> None:
    store = _store()
    await store.upsert(
        [
            _chunk("t1", "d1", 0, [1.0, 0.0, 0.0], lang="en"),
            _chunk("t1", "d2", 0, [1.0, 0.0, 0.0], lang="fr"),
        ]
    )

    results = await store.similarity_search("t1", [1.0, 0.0, 0.0], 5, {"lang": "fr"})

    assert [item.chunk.document_id for item in results] == ["d2"]


@pytest.mark.asyncio
async def test_upsert_is_last_write_wins() -> None:
    store = _store()
    await store.upsert([_chunk("t1", "d1", 0, [1.0, 0.0, 0.0])])
    updated = _chunk("t1", "d1", 0, [0.0, 1.0, 0.0])
    updated.text = "rewritten"
    await store.upsert([updated])

    results = await store.similarity_search("t1", [0.0, 1.0, 0.0], 5)

    assert len(results) == 1
    assert results[0].chunk.text == "rewritten"


@pytest.mark.asyncio
async def test_same_chunk_id_is_distinct_across_tenants() -> None:
    store = _store()
    await store.upsert([_chunk("t1", "d1", 0, [1.0, 0.0, 0.0]), _chunk("t2", "d1", 0, [1.0, 0.0, 0.0])])

    await store.delete_by_document("t1", "d1")

    assert (await store.stats("t1")).chunk_count == 0
    assert (await store.stats("t2")).chunk_count == 1


@pytest.mark.asyncio
async def test_replace_document_drops_stale_chunks() -> None:
    store = _store()
    await store.upsert([_chunk("t1", "d1", index, [1.0, 0.0, 0.0]) for index in range(3)])

    await store.replace_document("t1", "d1", [_chunk("t1", "d1", 0, [0.0, 1.0, 0.0])])

    stats = await store.stats("t1")
    assert stats.chunk_count == 1
    assert stats.document_count == 1


@pytest.mark.asyncio
async def test_dimension_mismatch_rejects_whole_batch() -> None:
    store = _store()
    with pytest.raises(DimensionMismatchError):
        await store.upsert([_chunk("t1", "d1", 0, [1.0, 0.0, 0.0]), _chunk("t1", "d1", 1, [1.0, 0.0])])

    assert (await store.stats("t1")).chunk_count == 0
    with pytest.raises(DimensionMismatchError):
        await store.similarity_search("t1", [1.0], 5)


@pytest.mark.asyncio
async def test_non_positive_limit_rejected() -> None:
    store = _store()
    with pytest.raises(ValidationError):
        await store.similarity_search("t1", [1.0, 0.0, 0.0], 0)


@pytest.mark.asyncio
async def test_delete_unknown_document_returns_zero() -> None:
    assert await _store().delete_by_document("t1", "missing") == 0


def test_invalid_table_name_rejected() -> None:
    with pytest.raises(ValidationError):
        VectorStoreConfig(table_name="chunks; DROP TABLE x")
