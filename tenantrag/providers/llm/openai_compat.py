from __future__ import annotations

import logging
from typing import Any

import httpx

from tenantrag.core.errors import ProviderConfigError
from tenantrag.providers.llm.base import GenerationContext


logger = logging.getLogger(__name__)


class OpenAICompatibleLLMProvider:
    """Chat-completions adapter for OpenAI and API-compatible servers."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str | None,
        model: str,
        temperature: float = 0.2,
        max_tokens: int = 1024,
        timeout_s: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if not api_key:
            raise ProviderConfigError("LLM config missing: set LLM_API_KEY in .env.")
        self.model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def generate(self, prompt: str, context: GenerationContext) -> str:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": context.system_prompt},
                {"role": "user", "content": prompt},
            ],
            "temperature": context.temperature if context.temperature is not None else self._temperature,
            "max_tokens": context.max_tokens or self._max_tokens,
        }
        response = await self._client.post(
            f"{self._base_url}/chat/completions", json=payload, headers=self._headers
        )
        response.raise_for_status()
        choices = response.json().get("choices") or []
        if not choices:
            raise ValueError("chat completion returned no choices")
        content = (choices[0].get("message") or {}).get("content") or ""
        logger.debug("llm_generate model=%s chars=%s", self.model, len(content))
        return content

    async def aclose(self) -> None:
        await self._client.aclose()
