"""
Utility modules for the serial fiction factory.

Modules:
- errors: Exception hierarchy and Flask error handlers
- repository: ContentStore interface and factory
- db_storage: SQLite content store
- chapter_prompt_builder: Prompts for chapters, rewrites and summaries
- word_count: Word counting and chapter title extraction
- timestamps: UTC ISO-8601 helpers
"""

from .errors import (
    APIError,
    ValidationError,
    NotFoundError,
    ConflictError,
    ProviderError,
    ContentBlockedError,
    is_retryable,
)
from .repository import ContentStore, create_content_store
from .word_count import WordCountValidator, count_words, extract_title

__all__ = [
    "APIError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "ProviderError",
    "ContentBlockedError",
    "is_retryable",
    "ContentStore",
    "create_content_store",
    "WordCountValidator",
    "count_words",
    "extract_title",
]
