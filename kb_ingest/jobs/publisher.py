"""Job publisher for the Redis-backed ingestion queue.

The queue is one durable Redis list (``queue_name``).  Publishing is an
``LPUSH`` of the JSON envelope; the consumer pops from the other end, so
jobs are processed in publish order.

The client is created lazily on first publish and cached.  Any Redis error
drops the cached client so the next publish reconnects, and surfaces as
:class:`QueueUnavailableError` so callers fail fast while the broker is
down.
"""

from __future__ import annotations

import redis.asyncio as aioredis
import redis.exceptions
import structlog

from kb_ingest.models.jobs import Job
from kb_ingest.utils.errors import QueueUnavailableError

logger = structlog.get_logger(logger_name=__name__)


class JobPublisher:
    """Publishes :class:`Job` envelopes to the ingestion queue."""

    def __init__(
        self,
        queue_url: str,
        queue_name: str = "kb:ingest",
        client: aioredis.Redis | None = None,
    ) -> None:
        self._queue_url = queue_url
        self._queue_name = queue_name
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self._queue_url) or self._client is not None

    @property
    def queue_name(self) -> str:
        return self._queue_name

    def _get_client(self) -> aioredis.Redis:
        if not self.enabled:
            raise QueueUnavailableError(
                message="Job queue is not configured (queue_url is empty)",
                provider_name="redis",
            )
        if self._client is None:
            self._client = aioredis.from_url(
                self._queue_url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("queue_client_created", queue=self._queue_name)
        return self._client

    async def publish(self, job: Job) -> None:
        """Append *job* to the queue.

        Raises:
            QueueUnavailableError: If the queue is disabled or Redis is unreachable.
        """
        client = self._get_client()
        try:
            await client.lpush(self._queue_name, job.to_wire())
        except redis.exceptions.RedisError as exc:
            logger.error("queue_publish_failed", queue=self._queue_name, error=str(exc))
            self._client = None
            raise QueueUnavailableError(
                message=f"Could not publish {job.type.value} job: {exc}",
                provider_name="redis",
            ) from exc
        logger.info("job_published", queue=self._queue_name, job_type=job.type.value)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
