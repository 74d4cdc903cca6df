from __future__ import annotations

from dataclasses import dataclass


# Chunking constants keep ingestion deterministic across runs.
CHUNK_SIZE_CHARS = 1200
CHUNK_OVERLAP_CHARS = 150

# Natural boundaries from coarse to fine; anything longer is hard cut.
SEPARATORS: tuple[str, ...] = ("\n\n", "\n", ". ", " ")


@dataclass(frozen=True)
class TextChunk:
    text: str
    ordinal: int
    # Offsets of the chunk (including its overlap prefix) in the source text.
    start: int
    end: int
    # Number of leading characters repeated from the previous chunk.
    overlap: int

    @property
    def body(self) -> str:
        return self.text[self.overlap:]


def validate_chunk_params(*, max_chunk_size: int, overlap: int) -> None:
    # Guard chunking invariants before any text is touched.
    if max_chunk_size < 1:
        raise ValueError("max_chunk_size must be >= 1")
    if overlap < 0:
        raise ValueError("overlap must be >= 0")
    if overlap >= max_chunk_size:
        raise ValueError("overlap must be smaller than max_chunk_size")


def _separator_spans(text: str, start: int, end: int, separator: str) -> list[tuple[int, int]]:
    # Split [start, end) after each separator so spans stay contiguous.
    spans: list[tuple[int, int]] = []
    cursor = start
    while cursor < end:
        found = text.find(separator, cursor, end)
        if found == -1:
            break
        cut = found + len(separator)
        spans.append((cursor, cut))
        cursor = cut
    if cursor < end:
        spans.append((cursor, end))
    return spans


def _split_spans(
    text: str, start: int, end: int, budget: int, separators: tuple[str, ...]
) -> list[tuple[int, int]]:
    if end - start <= budget:
        return [(start, end)]
    for index, separator in enumerate(separators):
        spans = _separator_spans(text, start, end, separator)
        if len(spans) < 2:
            continue
        result: list[tuple[int, int]] = []
        for span_start, span_end in spans:
            result.extend(
                _split_spans(text, span_start, span_end, budget, separators[index + 1 :])
            )
        return result
    # No boundary inside the span; fall back to a hard cut.
    return [(pos, min(end, pos + budget)) for pos in range(start, end, budget)]


def _merge_spans(spans: list[tuple[int, int]], budget: int) -> list[tuple[int, int]]:
    # Greedily pack adjacent spans so chunks use the budget without crossing it.
    merged: list[tuple[int, int]] = []
    for span_start, span_end in spans:
        if merged and span_end - merged[-1][0] <= budget:
            merged[-1] = (merged[-1][0], span_end)
        else:
            merged.append((span_start, span_end))
    return merged


def split_text(
    text: str,
    *,
    max_chunk_size: int = CHUNK_SIZE_CHARS,
    overlap: int = CHUNK_OVERLAP_CHARS,
) -> list[TextChunk]:
    """Split text into ordered, overlapping chunks of at most max_chunk_size.

    Boundaries are tried from paragraph to line to sentence to whitespace
    before falling back to a hard cut. Each chunk after the first repeats
    the preceding ``overlap`` characters, so joining ``chunk.body`` for all
    chunks reconstructs the input exactly.
    """
    validate_chunk_params(max_chunk_size=max_chunk_size, overlap=overlap)
    if not text:
        return []

    budget = max_chunk_size - overlap
    spans = _merge_spans(_split_spans(text, 0, len(text), budget, SEPARATORS), budget)

    chunks: list[TextChunk] = []
    for ordinal, (span_start, span_end) in enumerate(spans):
        chunk_start = max(0, span_start - overlap)
        chunks.append(
            TextChunk(
                text=text[chunk_start:span_end],
                ordinal=ordinal,
                start=chunk_start,
                end=span_end,
                overlap=span_start - chunk_start,
            )
        )
    return chunks
