from __future__ import annotations

import asyncio
import logging

from tenantrag.core.config import Settings
from tenantrag.core.errors import ProviderConfigError
from tenantrag.providers.llm.base import GenerationContext

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self.model = settings.gemini_model

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(
                f"Vertex config missing: set {', '.join(missing)} in .env."
            )
        return project, location, model

    def _generate_sync(self, prompt: str, context: GenerationContext) -> str:
        project, location, model_name = self._validate_config()
        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
        except ImportError as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        init(project=project, location=location)
        model = GenerativeModel(model_name, system_instruction=context.system_prompt)
        config = GenerationConfig(
            temperature=context.temperature if context.temperature is not None else self._settings.llm_temperature,
            max_output_tokens=context.max_tokens or self._settings.llm_max_tokens,
        )
        response = model.generate_content(prompt, generation_config=config)
        return getattr(response, "text", "") or ""

    async def generate(self, prompt: str, context: GenerationContext) -> str:
        # The SDK call is blocking; keep it off the event loop.
        logger.info("vertex_generate_start model=%s", self.model)
        return await asyncio.to_thread(self._generate_sync, prompt, context)
