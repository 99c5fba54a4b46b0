"""Utility modules for kb-ingest.

- **errors** -- exception hierarchy rooted at KnowledgeBaseError.
- **logging** -- structlog setup with console/JSON dual rendering.
"""

from kb_ingest.utils.errors import (
    ConfigurationError,
    DuplicateTitleError,
    EmbeddingProviderError,
    ExtractionError,
    JobPayloadError,
    KnowledgeBaseError,
    KnowledgeNotFoundError,
    KnowledgeStoreError,
    OCRExtractionError,
    QueueUnavailableError,
    RateLimitError,
    ReplaceRaceError,
    UnsupportedFormatError,
    VectorStoreError,
)
from kb_ingest.utils.logging import configure_logging, get_logger

__all__ = [
    "ConfigurationError",
    "DuplicateTitleError",
    "EmbeddingProviderError",
    "ExtractionError",
    "JobPayloadError",
    "KnowledgeBaseError",
    "KnowledgeNotFoundError",
    "KnowledgeStoreError",
    "OCRExtractionError",
    "QueueUnavailableError",
    "RateLimitError",
    "ReplaceRaceError",
    "UnsupportedFormatError",
    "VectorStoreError",
    "configure_logging",
    "get_logger",
]
