"""Abstract base class for text-embedding service providers.

Implementations wrap an embedding endpoint.  The default is any
OpenAI-compatible ``/embeddings`` API (OpenAI itself, DashScope's
compatible mode, a local gateway).
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementation: OpenAIEmbeddingProvider (kb_ingest/providers/embedding/)
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by the ingestion pipeline
    and by query-time similarity search."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for a list of texts.

        Parameters
        ----------
        texts:
            Texts to embed.  Implementations batch internally up to the
            provider's per-call limit and send batches sequentially.

        Returns
        -------
        list[list[float]]
            Vectors corresponding positionally to *texts*.

        Raises
        ------
        kb_ingest.utils.errors.EmbeddingProviderError
            If any batch fails.  No partial result is returned.
        """

    @abstractmethod
    async def embed_single(self, text: str) -> list[float]:
        """Embed one text, typically a search query."""

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier, e.g. ``"openai-text-embedding-3-small"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if credentials are configured."""
