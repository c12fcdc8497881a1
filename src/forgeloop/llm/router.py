"""Provider selection from settings and per-role model hints."""

from __future__ import annotations

import logging

from forgeloop.core.config import Settings
from forgeloop.core.errors import ConfigurationError
from forgeloop.llm.base import BaseLLMProvider
from forgeloop.llm.client import ClaudeProvider
from forgeloop.llm.ollama import OllamaProvider
from forgeloop.llm.types import LLMConfig, Provider

logger = logging.getLogger(__name__)


class ProviderRouter:
    """Caches one provider instance per model.

    Role configs carry a recommended model; ``for_model`` returns a provider
    bound to that model, falling back to the default one when the hint is
    empty.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._providers: dict[str, BaseLLMProvider] = {}

    @property
    def default(self) -> BaseLLMProvider:
        return self.for_model("")

    def for_model(self, model: str) -> BaseLLMProvider:
        key = model or ""
        if key not in self._providers:
            self._providers[key] = self._build(model)
        return self._providers[key]

    def _build(self, model: str) -> BaseLLMProvider:
        s = self._settings
        name = s.default_provider.lower()
        if model.startswith("ollama:"):
            name, model = "ollama", model.split(":", 1)[1]

        if name == Provider.OLLAMA.value:
            config = LLMConfig(
                provider=Provider.OLLAMA,
                model=model if model and not model.startswith("claude") else s.ollama_model,
                max_tokens=s.max_tokens,
                temperature=s.temperature,
                base_url=s.ollama_base_url,
            )
            logger.debug("Creating Ollama provider for %s", config.model)
            return OllamaProvider(config)

        if name == Provider.CLAUDE.value:
            if not s.anthropic_api_key:
                raise ConfigurationError("ANTHROPIC_API_KEY is not set")
            config = LLMConfig(
                provider=Provider.CLAUDE,
                model=model if model.startswith("claude") else s.model,
                max_tokens=s.max_tokens,
                temperature=s.temperature,
                api_key=s.anthropic_api_key,
                input_cost_per_mtok=s.input_cost_per_mtok,
                output_cost_per_mtok=s.output_cost_per_mtok,
            )
            logger.debug("Creating Claude provider for %s", config.model)
            return ClaudeProvider(config)

        raise ConfigurationError(f"Unknown provider: {s.default_provider}")

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()


def create_provider(settings: Settings) -> BaseLLMProvider:
    return ProviderRouter(settings).default
