"""
Text-generation providers.

This package isolates vendor SDKs behind the TextGenerationProvider
interface so the rest of the factory stays provider-agnostic.
"""

from .base import TextGenerationProvider, QualityScorer
from .factory import create_provider

__all__ = [
    "TextGenerationProvider",
    "QualityScorer",
    "create_provider",
]
