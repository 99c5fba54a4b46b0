"""OpenAI-compatible embedding provider adapter.

Wraps the ``openai`` async client to implement :class:`IEmbeddingProvider`.
Any endpoint that speaks the OpenAI ``/embeddings`` protocol works (OpenAI,
DashScope compatible mode, local gateways) via ``openai_base_url``.

Inputs are sent in batches of ``embedding_batch_size`` (default 10, the
DashScope per-call ceiling), one batch at a time.
"""

from __future__ import annotations

import openai
import structlog

from kb_ingest.config.settings import Settings
from kb_ingest.interfaces.embedding_provider import IEmbeddingProvider
from kb_ingest.utils.errors import EmbeddingProviderError, RateLimitError

logger = structlog.get_logger(logger_name=__name__)

# Known embedding model dimensions; anything else uses settings.embedding_dimension.
_MODEL_DIMENSIONS: dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
    "text-embedding-v1": 1536,
    "text-embedding-v2": 1536,
    "text-embedding-v3": 1024,
}


def _retry_after_seconds(exc: openai.RateLimitError) -> float | None:
    """Seconds from the ``Retry-After`` header, when the server sent a number."""
    headers = getattr(exc.response, "headers", None) or {}
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class OpenAIEmbeddingProvider(IEmbeddingProvider):
    """Embedding provider backed by an OpenAI-compatible embeddings API."""

    def __init__(self, settings: Settings, client: openai.AsyncOpenAI | None = None) -> None:
        self._api_key = settings.openai_api_key
        self._model = settings.embedding_model
        self._batch_size = max(1, settings.embedding_batch_size)
        self._dimension = _MODEL_DIMENSIONS.get(self._model, settings.embedding_dimension)
        self._provider_label = (
            "openai-compatible_embedding" if settings.openai_base_url else "openai_embedding"
        )

        if client is None:
            client_kwargs: dict = {
                "api_key": self._api_key or "missing",
                "timeout": settings.embedding_timeout_seconds,
            }
            if settings.openai_base_url:
                client_kwargs["base_url"] = settings.openai_base_url
            client = openai.AsyncOpenAI(**client_kwargs)
        self._client = client

    # ------------------------------------------------------------------
    # IEmbeddingProvider implementation
    # ------------------------------------------------------------------

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts* in sequential batches.

        A failure in any batch aborts the whole call; callers never see a
        partial list.
        """
        if not texts:
            return []

        all_embeddings: list[list[float]] = []
        for start in range(0, len(texts), self._batch_size):
            batch = texts[start : start + self._batch_size]
            try:
                response = await self._client.embeddings.create(input=batch, model=self._model)
            except openai.RateLimitError as exc:
                raise RateLimitError(
                    message=f"{self._provider_label} rate limit: {exc}",
                    provider_name=self.get_provider_name(),
                    retry_after=_retry_after_seconds(exc),
                ) from exc
            except openai.APIError as exc:
                raise EmbeddingProviderError(
                    message=f"{self._provider_label} API error: {exc}",
                    provider_name=self.get_provider_name(),
                ) from exc

            # Some compatible servers do not echo items in input order.
            items = sorted(response.data, key=lambda item: item.index)
            if len(items) != len(batch):
                raise EmbeddingProviderError(
                    message=(
                        f"Expected {len(batch)} embeddings, received {len(items)}"
                    ),
                    provider_name=self.get_provider_name(),
                )
            all_embeddings.extend(item.embedding for item in items)
            logger.debug(
                "embedding_batch",
                model=self._model,
                batch_start=start,
                batch_size=len(batch),
                tokens=response.usage.total_tokens if response.usage else None,
            )

        logger.info("embedding_complete", model=self._model, count=len(all_embeddings))
        return all_embeddings

    async def embed_single(self, text: str) -> list[float]:
        result = await self.embed([text])
        return result[0]

    def get_dimension(self) -> int:
        return self._dimension

    def get_provider_name(self) -> str:
        return self._provider_label

    def is_available(self) -> bool:
        """Return ``True`` if an API key is configured."""
        return bool(self._api_key)
