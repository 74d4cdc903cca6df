from __future__ import annotations

from typing import Sequence

from tenantrag.domain.types import ScoredChunk


DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant that answers questions based on the provided context.

Guidelines:
1. Answer the question using ONLY the information from the provided context.
2. If the context contains relevant information, provide a comprehensive answer.
3. Cite your sources by referencing [Source N] where N is the source number.
4. If the context does not contain enough information to answer the question, clearly state: "I don't have enough information in the provided context to answer this question."
5. Do not make up or hallucinate information that is not in the context.
6. Be concise but thorough in your responses.
7. If multiple sources support your answer, cite all relevant sources."""

COMPACT_TEMPLATE = """Context information is provided below.

---------------------
{context}
---------------------

Given the context information above and no prior knowledge, answer the following question.

Question: {query}

Answer:"""

NO_RESULTS_MESSAGE = (
    "I could not find any relevant information to answer your question. "
    "Please try rephrasing your query or ensure the knowledge base contains relevant documents."
)

CHUNK_SEPARATOR = "\n\n---\n\n"


def format_source(index: int, item: ScoredChunk) -> str:
    source = item.chunk.metadata.get("source") or item.chunk.document_id
    return f"[Source {index}] ({source})\n{item.chunk.text}"


def build_context(sources: Sequence[ScoredChunk], *, max_chars: int) -> list[str]:
    # Keep whole sources in rank order until the character budget is spent.
    blocks: list[str] = []
    used = 0
    for index, item in enumerate(sources, start=1):
        block = format_source(index, item)
        cost = len(block) + (len(CHUNK_SEPARATOR) if blocks else 0)
        if blocks and used + cost > max_chars:
            break
        if not blocks and len(block) > max_chars:
            # Always keep the top source, truncated if it alone exceeds the budget.
            block = block[:max_chars]
            cost = len(block)
        blocks.append(block)
        used += cost
    return blocks


def build_prompt(query: str, context_blocks: Sequence[str]) -> str:
    return COMPACT_TEMPLATE.format(context=CHUNK_SEPARATOR.join(context_blocks), query=query)
