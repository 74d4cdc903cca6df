from __future__ import annotations

from tenantrag.core.config import Settings
from tenantrag.core.errors import ProviderConfigError
from tenantrag.providers.llm.base import LLMProvider
from tenantrag.providers.llm.fake import FakeLLMProvider
from tenantrag.providers.llm.gemini_vertex import GeminiVertexProvider
from tenantrag.providers.llm.openai_compat import OpenAICompatibleLLMProvider


def get_llm_provider(settings: Settings) -> LLMProvider:
    provider = (settings.llm_provider or "fake").lower()

    if provider == "fake":
        return FakeLLMProvider()
    if provider == "openai":
        return OpenAICompatibleLLMProvider(
            base_url=settings.llm_base_url,
            api_key=settings.llm_api_key,
            model=settings.llm_model,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout_s=settings.ext_call_timeout_ms / 1000.0,
        )
    if provider == "vertex":
        return GeminiVertexProvider(settings)
    raise ProviderConfigError(f"Unsupported LLM provider: {settings.llm_provider}")
