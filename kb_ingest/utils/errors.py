"""Custom exception hierarchy for kb-ingest.

All application exceptions inherit from :class:`KnowledgeBaseError`, which
carries an optional ``provider_name`` so handlers and log lines can tell
which backend (``"openai"``, ``"tesseract"``, ``"chromadb"``, ``"redis"``,
...) caused the failure.

    KnowledgeBaseError  (base)
    +-- ExtractionError          (document unreadable, no usable text)
    |   +-- UnsupportedFormatError
    +-- OCRExtractionError       (one page failed OCR; degraded, usually non-fatal)
    +-- EmbeddingProviderError   (embedding endpoint failed)
    |   +-- RateLimitError
    +-- VectorStoreError         (vector backend read/write failed)
    +-- KnowledgeStoreError      (relational store failed)
    +-- KnowledgeNotFoundError
    +-- DuplicateTitleError      (same-title conflict on the sync path)
    +-- ReplaceRaceError         (stale replace token committed)
    +-- QueueUnavailableError    (broker unreachable, publish fails fast)
    +-- JobPayloadError          (malformed job envelope or payload)
    +-- ConfigurationError

Synchronous callers see these raised directly.  The queue consumer catches
everything around a job, logs it, pushes a failure notification and drops
the message.
"""

from __future__ import annotations

from typing import Any


class KnowledgeBaseError(Exception):
    """Base exception for all kb-ingest errors.

    ``__str__`` prefixes the provider name in brackets, e.g.
    ``[chromadb] Failed to add chunks``.
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Extraction errors
# ---------------------------------------------------------------------------

class ExtractionError(KnowledgeBaseError):
    """Raised when a document cannot be read or yields no usable text."""

    def __init__(
        self,
        message: str = "Text extraction failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class UnsupportedFormatError(ExtractionError):
    """Raised when no reader is registered for a file's format."""

    def __init__(
        self,
        message: str = "Unsupported document format",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class OCRExtractionError(KnowledgeBaseError):
    """Raised by an OCR provider when a single page cannot be recognised.

    The extractor downgrades this to an empty page unless the whole
    document would otherwise be empty.
    """

    def __init__(
        self,
        message: str = "OCR text extraction failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Provider errors
# ---------------------------------------------------------------------------

class EmbeddingProviderError(KnowledgeBaseError):
    """Raised when the embedding endpoint rejects or fails a request."""

    def __init__(
        self,
        message: str = "Embedding request failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class RateLimitError(EmbeddingProviderError):
    """Raised when the embedding provider's rate limit is exceeded."""

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        provider_name: str | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> float | None:
        return self._retry_after


class VectorStoreError(KnowledgeBaseError):
    """Raised when the vector backend fails a read or write."""

    def __init__(
        self,
        message: str = "Vector store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class KnowledgeStoreError(KnowledgeBaseError):
    """Raised when the relational knowledge store fails."""

    def __init__(
        self,
        message: str = "Knowledge store operation failed",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Orchestration errors
# ---------------------------------------------------------------------------

class KnowledgeNotFoundError(KnowledgeBaseError):
    """Raised when a knowledge id (or storage path) has no record."""

    def __init__(
        self,
        message: str = "Knowledge record not found",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class DuplicateTitleError(KnowledgeBaseError):
    """Raised when a same-title record exists and the policy is to refuse.

    ``existing`` holds the conflicting record so callers can offer an
    update instead.
    """

    def __init__(
        self,
        message: str = "A knowledge record with this title already exists",
        provider_name: str | None = None,
        existing: Any = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
        self._existing = existing

    @property
    def existing(self) -> Any:
        return self._existing


class ReplaceRaceError(KnowledgeBaseError):
    """Raised when a replace is committed after a newer replace began."""

    def __init__(
        self,
        message: str = "Replace token was superseded by a newer replace",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


# ---------------------------------------------------------------------------
# Queue errors
# ---------------------------------------------------------------------------

class QueueUnavailableError(KnowledgeBaseError):
    """Raised when the job broker cannot be reached."""

    def __init__(
        self,
        message: str = "Job queue is unavailable",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class JobPayloadError(KnowledgeBaseError):
    """Raised when a job envelope or payload cannot be parsed."""

    def __init__(
        self,
        message: str = "Malformed job payload",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)


class ConfigurationError(KnowledgeBaseError):
    """Raised for missing or invalid configuration at startup."""

    def __init__(
        self,
        message: str = "Invalid configuration",
        provider_name: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name)
