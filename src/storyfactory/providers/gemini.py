"""
Google Gemini text-generation provider.

All Gemini-specific code is isolated here. Policy refusals surface as
ContentBlockedError (never retried); every other failure surfaces as a
retryable ProviderError.
"""

import os
import logging
import time
from typing import Optional

import google.generativeai as genai
from google.generativeai.types import GenerationConfig

from .base import TextGenerationProvider
from ..utils.errors import ContentBlockedError, ProviderError

logger = logging.getLogger(__name__)

DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_MAX_OUTPUT_TOKENS = 8192

# Finish reasons that mean the provider refused the content
BLOCKING_FINISH_REASONS = {"SAFETY", "RECITATION", "BLOCKLIST", "PROHIBITED_CONTENT", "SPII"}


def _reason_name(reason) -> str:
    """Normalize a finish/block reason (enum, int or str) to its name."""
    if reason is None:
        return ""
    name = getattr(reason, "name", None)
    return str(name if name is not None else reason).upper()


class GeminiProvider(TextGenerationProvider):
    """
    Provider for Google's Generative AI models.

    The API key defaults to GOOGLE_API_KEY. A GenerativeModel is built per
    call because the system instruction changes with every production's
    author persona.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model_name: str = DEFAULT_GEMINI_MODEL,
        temperature: float = 0.8,
        max_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS
    ):
        """
        Initialize Gemini provider.

        Args:
            api_key: Google API key (if None, uses GOOGLE_API_KEY env var)
            model_name: Model name (default: gemini-2.5-flash)
            temperature: Default sampling temperature
            max_tokens: Default output token cap

        Raises:
            ValueError: If no API key is available
        """
        self.api_key = api_key or os.getenv("GOOGLE_API_KEY")
        if not self.api_key:
            raise ValueError("GOOGLE_API_KEY environment variable is required")

        genai.configure(api_key=self.api_key)
        self._model_name = model_name.replace("models/", "")
        self.temperature = temperature
        self.max_tokens = max_tokens

        logger.info(f"Initialized GeminiProvider with model: {self._model_name}")

    @property
    def model_name(self) -> str:
        return self._model_name

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        model_name = (model or self._model_name).replace("models/", "")
        start_time = time.time()

        try:
            generative_model = genai.GenerativeModel(
                model_name,
                system_instruction=system_prompt or None,
            )
            generation_config = GenerationConfig(
                temperature=temperature if temperature is not None else self.temperature,
                max_output_tokens=max_tokens or self.max_tokens,
            )
            response = generative_model.generate_content(
                user_prompt,
                generation_config=generation_config,
            )
        except Exception as e:
            logger.error(f"Gemini request failed for model {model_name}: {e}", exc_info=True)
            raise ProviderError(
                f"Gemini request failed: {e}",
                provider=self.name,
                details={"model": model_name},
            ) from e

        prompt_feedback = getattr(response, "prompt_feedback", None)
        block_reason = _reason_name(getattr(prompt_feedback, "block_reason", None))
        if block_reason and block_reason not in ("BLOCK_REASON_UNSPECIFIED", "0"):
            logger.warning(f"Gemini blocked the prompt: {block_reason}")
            raise ContentBlockedError(
                "Prompt was blocked by content policy",
                provider=self.name,
                reason=block_reason,
            )

        finish_reason = "STOP"
        candidates = getattr(response, "candidates", None)
        if candidates:
            finish_reason = _reason_name(getattr(candidates[0], "finish_reason", None)) or "STOP"
        if finish_reason in BLOCKING_FINISH_REASONS:
            logger.warning(f"Gemini stopped generation with reason: {finish_reason}")
            raise ContentBlockedError(
                "Generated content was blocked by content policy",
                provider=self.name,
                reason=finish_reason,
            )

        try:
            text = (response.text or "").strip()
        except ValueError as e:
            # response.text raises when the candidate carries no parts
            raise ProviderError(
                f"Gemini returned no usable text (finish reason: {finish_reason})",
                provider=self.name,
                details={"model": model_name, "finish_reason": finish_reason},
            ) from e

        if not text:
            raise ProviderError(
                f"Gemini returned an empty response (finish reason: {finish_reason})",
                provider=self.name,
                error_code="EMPTY_RESPONSE",
                details={"model": model_name, "finish_reason": finish_reason},
            )

        if finish_reason == "MAX_TOKENS":
            logger.warning(
                f"Gemini generation hit MAX_TOKENS limit. Output may be truncated. "
                f"Text length: {len(text)} chars"
            )

        duration = time.time() - start_time
        logger.debug(f"Gemini generated {len(text)} chars in {duration:.2f}s with {model_name}")
        return text
