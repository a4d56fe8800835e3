"""
Provider selection. Configuration is re-read for every batch run so a
changed provider or key takes effect without restarting the scheduler.
"""
from __future__ import annotations

import logging
from typing import Callable

from ...config import Config, load_config
from ...errors import ProviderNotConfiguredError
from .base import LLMProvider

logger = logging.getLogger(__name__)


def build_provider(config: Config) -> LLMProvider:
    kind = config.provider.kind
    tolerance = config.analysis.observation_tolerance_seconds

    if kind == "gemini":
        from .gemini import GeminiProvider
        return GeminiProvider(config.gemini, observation_tolerance=tolerance)
    if kind == "ollama":
        from .ollama_provider import OllamaProvider
        return OllamaProvider(config.ollama, observation_tolerance=tolerance)
    if kind == "backend":
        from .backend import BackendProvider
        return BackendProvider(config.backend, observation_tolerance=tolerance)

    raise ProviderNotConfiguredError(
        "No AI provider configured. Set provider.kind to gemini, ollama or backend"
    )


def provider_from_config(loader: Callable[[], Config] = load_config) -> Callable[[], LLMProvider]:
    """Factory for the orchestrator: each call loads config and builds a provider."""
    def factory() -> LLMProvider:
        config = loader()
        provider = build_provider(config)
        logger.debug(f"Using provider {provider.name} ({provider.model})")
        return provider
    return factory
