"""
Abstract interfaces for text generation and quality scoring.

The writer orchestrator and the job handlers receive implementations of
these through their constructors; nothing in the factory reaches for a
global client.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ..models import QualityResult


class TextGenerationProvider(ABC):
    """
    Submit a prompt, receive text.

    Implementations raise ContentBlockedError when the provider refuses the
    prompt on policy grounds and ProviderError for every other failure.
    """

    name = "base"

    @abstractmethod
    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None
    ) -> str:
        """
        Generate text.

        Args:
            system_prompt: Persona and standing instructions
            user_prompt: The concrete request
            model: Model override (default: provider setting)
            temperature: Sampling temperature override
            max_tokens: Output token cap override

        Returns:
            Generated text (never empty)

        Raises:
            ContentBlockedError: If the request was refused by content policy
            ProviderError: On any other generation failure
        """
        pass


class QualityScorer(ABC):
    """Score a chapter draft on a 0-100 scale."""

    @abstractmethod
    def score(self, text: str, chapter_number: int, genre: str) -> QualityResult:
        pass
