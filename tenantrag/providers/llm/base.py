from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class GenerationContext:
    # Everything besides the user prompt that shapes one generation call.
    system_prompt: str
    sources: tuple[str, ...] = ()
    temperature: float | None = None
    max_tokens: int | None = None


class LLMProvider(Protocol):
    model: str

    async def generate(self, prompt: str, context: GenerationContext) -> str:
        ...
