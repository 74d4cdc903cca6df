from __future__ import annotations

from tenantrag.domain.types import Chunk, ScoredChunk
from tenantrag.services.prompts import CHUNK_SEPARATOR, build_context, build_prompt


def _scored(document_id: str, text: str, score: float, **metadata) -> ScoredChunk:
    chunk = Chunk(
        id=f"{document_id}#0",
        tenant_id="t1",
        document_id=document_id,
        text=text,
        ordinal=0,
        embedding=[1.0],
        metadata=metadata,
    )
    return ScoredChunk(chunk=chunk, score=score)


def test_build_context_numbers_sources_and_prefers_source_label() -> None:
    blocks = build_context(
        [_scored("d1", "Paris is in France.", 0.9, source="atlas.txt"), _scored("d2", "Rome.", 0.5)],
        max_chars=1000,
    )

    assert blocks[0] == "[Source 1] (atlas.txt)\nParis is in France."
    assert blocks[1] == "[Source 2] (d2)\nRome."


def test_build_context_stops_at_budget_but_keeps_top_source() -> None:
    sources = [_scored("d1", "a" * 50, 0.9), _scored("d2", "b" * 50, 0.8)]

    assert len(build_context(sources, max_chars=80)) == 1
    truncated = build_context(sources, max_chars=20)
    assert len(truncated) == 1
    assert len(truncated[0]) == 20


def test_build_prompt_embeds_question_and_context() -> None:
    prompt = build_prompt("Where is Paris?", ["[Source 1] (d1)\nParis is in France.", "[Source 2] (d2)\nRome."])

    assert "Question: Where is Paris?" in prompt
    assert CHUNK_SEPARATOR.join(["[Source 1] (d1)\nParis is in France.", "[Source 2] (d2)\nRome."]) in prompt
