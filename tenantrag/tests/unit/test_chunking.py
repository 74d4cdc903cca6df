from __future__ import annotations

import pytest

from tenantrag.ingestion.chunking import split_text, validate_chunk_params


def _sample_text() -> str:
    paragraphs = [
        "Paris is the capital and most populous city of France. " * 6,
        "Berlin is the capital of Germany.\nIt sits on the Spree.\n" * 4,
        "Madrid is the capital of Spain. " * 5,
    ]
    return "\n\n".join(paragraphs)


_SEPARATOR_FREE = "abcdefghijklmnopqrstuvwxyz0123456789" * 9
_MIXED = "One. Two three.\nFour five six seven.\n\nEight nine ten eleven twelve." * 7
_WHITESPACE_HEAVY = "  \n\n word \n  \n\n. .  " * 12


@pytest.mark.parametrize("text", [_sample_text(), _SEPARATOR_FREE, _MIXED, _WHITESPACE_HEAVY, "a", "é🙂ü" * 40])
@pytest.mark.parametrize(("size", "overlap"), [(1, 0), (2, 1), (7, 3), (16, 0), (50, 49), (120, 20), (5000, 100)])
def test_bodies_reconstruct_any_text(text: str, size: int, overlap: int) -> None:
    chunks = split_text(text, max_chunk_size=size, overlap=overlap)

    assert "".join(chunk.body for chunk in chunks) == text
    assert all(1 <= len(chunk.text) <= size for chunk in chunks)
    assert all(text[chunk.start : chunk.end] == chunk.text for chunk in chunks)
    assert [chunk.ordinal for chunk in chunks] == list(range(len(chunks)))


def test_chunks_respect_max_size_and_reconstruct_text() -> None:
    text = _sample_text()

    chunks = split_text(text, max_chunk_size=120, overlap=20)

    assert len(chunks) > 1
    assert all(len(chunk.text) <= 120 for chunk in chunks)
    assert "".join(chunk.body for chunk in chunks) == text
    assert [chunk.ordinal for chunk in chunks] == list(range(len(chunks)))


def test_consecutive_chunks_share_overlap() -> None:
    text = _sample_text()

    chunks = split_text(text, max_chunk_size=150, overlap=30)

    assert chunks[0].overlap == 0
    for previous, current in zip(chunks, chunks[1:]):
        assert current.overlap == 30
        assert previous.text.endswith(current.text[: current.overlap])
        assert text[current.start : current.end] == current.text


def test_prefers_paragraph_boundaries() -> None:
    text = "first paragraph here.\n\nsecond paragraph here."

    chunks = split_text(text, max_chunk_size=30, overlap=0)

    assert [chunk.text for chunk in chunks] == ["first paragraph here.\n\n", "second paragraph here."]


def test_hard_cut_when_no_separator() -> None:
    text = "x" * 25

    chunks = split_text(text, max_chunk_size=10, overlap=0)

    assert [len(chunk.text) for chunk in chunks] == [10, 10, 5]


def test_short_text_is_single_chunk() -> None:
    chunks = split_text("tiny", max_chunk_size=100, overlap=10)
    assert len(chunks) == 1
    assert chunks[0].text == "tiny"
    assert chunks[0].start == 0 and chunks[0].end == 4


def test_empty_text_yields_no_chunks() -> None:
    assert split_text("", max_chunk_size=100, overlap=10) == []


def test_deterministic_output() -> None:
    text = _sample_text()
    assert split_text(text, max_chunk_size=90, overlap=15) == split_text(text, max_chunk_size=90, overlap=15)


@pytest.mark.parametrize(
    ("size", "overlap"),
    [(0, 0), (10, -1), (10, 10), (10, 11)],
)
def test_invalid_parameters_rejected(size: int, overlap: int) -> None:
    with pytest.raises(ValueError):
        validate_chunk_params(max_chunk_size=size, overlap=overlap)
