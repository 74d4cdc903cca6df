from __future__ import annotations

from tenantrag.providers.llm.base import GenerationContext


class FakeLLMProvider:
    model = "fake"

    def __init__(self, response: str = "This is a fake response.") -> None:
        # Deterministic response keeps tests stable without external calls.
        self._response = response
        self.calls: list[tuple[str, GenerationContext]] = []

    async def generate(self, prompt: str, context: GenerationContext) -> str:
        # Record calls so tests can assert the model was (or was not) invoked.
        self.calls.append((prompt, context))
        return self._response
