"""Queue consumer for background ingestion (reliable-queue pattern).

Each consumer owns a processing list ``<queue>:processing:<consumer id>``::

    <queue> ──BLMOVE──→ <processing list> ──handler ok──→ LREM  (ack)
                                          ──handler raises─→ LREM + error log (nack, no requeue)

At most one message sits in the processing list at a time (prefetch = 1),
so jobs are handled strictly one after another.  Anything still in the
processing list when the consumer starts was left by a crashed run; it is
logged and dropped.
"""

from __future__ import annotations

import asyncio
import os
import socket
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
import redis.exceptions
import structlog

from kb_ingest.models.jobs import Job
from kb_ingest.utils.errors import JobPayloadError

if TYPE_CHECKING:
    from kb_ingest.services.notification_service import NotificationService

logger = structlog.get_logger(logger_name=__name__)

JobHandler = Callable[[Job], Awaitable[None]]


def _default_consumer_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class JobConsumer:
    """Pulls jobs one at a time and acks or nacks each after handling."""

    def __init__(
        self,
        queue_url: str,
        handler: JobHandler,
        queue_name: str = "kb:ingest",
        consumer_id: str | None = None,
        poll_timeout: float = 5,
        reconnect_delay: float = 5,
        notifications: NotificationService | None = None,
        client: aioredis.Redis | None = None,
    ) -> None:
        self._queue_url = queue_url
        self._handler = handler
        self._queue_name = queue_name
        self._consumer_id = consumer_id or _default_consumer_id()
        self._poll_timeout = poll_timeout
        self._reconnect_delay = reconnect_delay
        self._notifications = notifications
        self._client = client
        self._running = False

    @property
    def processing_list(self) -> str:
        return f"{self._queue_name}:processing:{self._consumer_id}"

    def _get_client(self) -> aioredis.Redis:
        if self._client is None:
            self._client = aioredis.from_url(
                self._queue_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume until :meth:`stop` is called, reconnecting after broker errors."""
        self._running = True
        recovered = False
        logger.info("consumer_started", queue=self._queue_name, consumer=self._consumer_id)
        while self._running:
            try:
                if not recovered:
                    await self.drop_orphans()
                    recovered = True
                await self.consume_one()
            except (redis.exceptions.ConnectionError, redis.exceptions.TimeoutError) as exc:
                logger.error(
                    "queue_connection_lost",
                    error=str(exc),
                    retry_in_s=self._reconnect_delay,
                )
                await self._reset_client()
                await asyncio.sleep(self._reconnect_delay)
        logger.info("consumer_stopped", consumer=self._consumer_id)

    def stop(self) -> None:
        self._running = False

    async def close(self) -> None:
        self.stop()
        await self._reset_client()

    async def _reset_client(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            try:
                await client.aclose()
            except redis.exceptions.RedisError as exc:
                logger.debug("queue_client_close_failed", error=str(exc))

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def drop_orphans(self) -> int:
        """Drop messages a crashed run left in this consumer's processing list."""
        client = self._get_client()
        orphans = await client.lrange(self.processing_list, 0, -1)
        for raw in orphans:
            logger.error("orphaned_job_dropped", consumer=self._consumer_id, message=raw[:500])
        if orphans:
            await client.delete(self.processing_list)
        return len(orphans)

    async def consume_one(self) -> bool | None:
        """Wait up to ``poll_timeout`` for one job and handle it.

        Returns ``None`` when nothing arrived, otherwise whether it was acked.
        """
        client = self._get_client()
        raw = await client.blmove(
            self._queue_name,
            self.processing_list,
            self._poll_timeout,
            "RIGHT",
            "LEFT",
        )
        if raw is None:
            return None
        return await self.handle_message(raw)

    async def handle_message(self, raw: str) -> bool:
        """Run the handler for one message, then remove it from the processing list."""
        client = self._get_client()
        try:
            job = Job.from_wire(raw)
        except JobPayloadError as exc:
            logger.error("job_undecodable_dropped", error=str(exc), message=raw[:500])
            await client.lrem(self.processing_list, 1, raw)
            if self._notifications is not None:
                await self._notifications.notify_failed(None, str(exc))
            return False

        try:
            await self._handler(job)
        except Exception as exc:
            logger.error(
                "job_failed_dropped",
                job_type=job.type.value,
                error=str(exc),
                exc_info=True,
            )
            await client.lrem(self.processing_list, 1, raw)
            return False
        await client.lrem(self.processing_list, 1, raw)
        logger.debug("job_acked", job_type=job.type.value)
        return True
