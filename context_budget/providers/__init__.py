from __future__ import annotations

import logging
import os

from ..types import SummarizationConfig
from .anthropic import AnthropicProvider
from .base import BaseProvider, LLMProviderError
from .generic_openai import GenericOpenAIProvider

logger = logging.getLogger(__name__)

OPENAI_COMPATIBLE_TYPES = ("generic_openai", "openai", "ollama")


def build_provider(
    provider_name: str,
    provider_config: dict,
    summarization: SummarizationConfig,
) -> BaseProvider | None:
    """Build an LLM provider from config. None when it cannot be built."""
    ptype = provider_config.get("type", provider_name)

    if ptype in OPENAI_COMPATIBLE_TYPES:
        return GenericOpenAIProvider(
            base_url=provider_config.get("base_url", "http://127.0.0.1:11434/v1"),
            model=provider_config.get("model", summarization.model),
            temperature=summarization.temperature,
            api_key=provider_config.get("api_key", "not-needed"),
            timeout=provider_config.get("timeout", summarization.timeout),
        )

    if ptype == "anthropic":
        api_key_env = provider_config.get("api_key_env", "ANTHROPIC_API_KEY")
        api_key = provider_config.get("api_key") or os.environ.get(api_key_env, "")
        if api_key:
            return AnthropicProvider(
                api_key=api_key,
                model=provider_config.get("model", summarization.model),
                temperature=summarization.temperature,
                timeout=provider_config.get("timeout", summarization.timeout),
            )
        logger.warning("No API key in %s, summarization disabled", api_key_env)
        return None

    logger.warning("Unknown provider type '%s', summarization disabled", ptype)
    return None


__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "GenericOpenAIProvider",
    "LLMProviderError",
    "build_provider",
]
