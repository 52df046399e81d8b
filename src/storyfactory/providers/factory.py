"""
Provider factory.

Chooses a TextGenerationProvider from explicit arguments or, when they are
omitted, from the environment:
- LLM_PROVIDER: Provider name (default: 'gemini')
- GOOGLE_API_KEY: Google API key (required for gemini)
- LLM_MODEL: Model name (default: gemini-2.5-flash)
- LLM_TEMPERATURE: Temperature (default: 0.8)
- LLM_MAX_TOKENS: Output token cap (default: 8192)
"""

import os
import logging
from typing import Optional

from .base import TextGenerationProvider
from .gemini import GeminiProvider, DEFAULT_GEMINI_MODEL, DEFAULT_MAX_OUTPUT_TOKENS

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("gemini",)


def create_provider(provider_name: Optional[str] = None, **kwargs) -> TextGenerationProvider:
    """
    Create a text-generation provider instance.

    Args:
        provider_name: Name of provider to create ('gemini' or None for env lookup)
        **kwargs: Provider-specific configuration (api_key, model_name, temperature, max_tokens)

    Returns:
        TextGenerationProvider instance

    Raises:
        ValueError: If provider_name is unknown or the provider cannot be configured
    """
    if provider_name is None:
        provider_name = os.getenv("LLM_PROVIDER", "gemini")
    provider_name = provider_name.lower()

    if provider_name == "gemini":
        model_name = kwargs.get("model_name") or os.getenv("LLM_MODEL", DEFAULT_GEMINI_MODEL)
        temperature = kwargs.get("temperature")
        if temperature is None:
            temperature = float(os.getenv("LLM_TEMPERATURE", "0.8"))
        max_tokens = kwargs.get("max_tokens")
        if max_tokens is None:
            max_tokens = int(os.getenv("LLM_MAX_TOKENS", str(DEFAULT_MAX_OUTPUT_TOKENS)))

        provider = GeminiProvider(
            api_key=kwargs.get("api_key"),
            model_name=model_name,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        logger.info(f"Created LLM provider: {type(provider).__name__}")
        return provider

    raise ValueError(
        f"Unknown LLM provider: {provider_name}. "
        f"Supported providers: {', '.join(SUPPORTED_PROVIDERS)}"
    )
