"""Completion and failure notifications for background ingestion.

Implements the Observer pattern::

    job handler ──notify_processed()──→ NotificationService ──callback()──→ SSE push
                ──notify_failed()────→                      ──callback()──→ (any other listener)

Listeners receive one :class:`IngestionEvent` per finished job.  Both sync
and async callbacks are supported; a listener that raises is logged and
skipped so it cannot block the queue consumer or the other listeners.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict

from kb_ingest.utils.logging import get_logger


class IngestionEventStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class IngestionEvent(BaseModel):
    """Payload pushed to every listener."""

    model_config = ConfigDict(frozen=True)

    knowledge_id: int | None
    status: IngestionEventStatus
    message: str
    filename: str = ""
    chunks: int = 0
    error: str | None = None


class NotificationService:
    """Broadcasts ingestion outcomes to registered listeners."""

    def __init__(self) -> None:
        self._listeners: list[Callable] = []
        self._logger: structlog.BoundLogger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register_listener(self, callback: Callable) -> None:
        """Register an async or sync callable accepting one ``IngestionEvent``."""
        if callback not in self._listeners:
            self._listeners.append(callback)
            self._logger.debug("listener_registered", total_listeners=len(self._listeners))

    def unregister_listener(self, callback: Callable) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)
            self._logger.debug("listener_unregistered", remaining_listeners=len(self._listeners))

    async def notify_processed(
        self,
        knowledge_id: int,
        chunks: int,
        filename: str = "",
        is_update: bool = False,
    ) -> IngestionEvent:
        event = IngestionEvent(
            knowledge_id=knowledge_id,
            status=IngestionEventStatus.COMPLETED,
            message="File update completed" if is_update else "File processing completed",
            filename=filename,
            chunks=chunks,
        )
        await self._broadcast(event)
        return event

    async def notify_failed(
        self,
        knowledge_id: int | None,
        error: str,
        filename: str = "",
    ) -> IngestionEvent:
        event = IngestionEvent(
            knowledge_id=knowledge_id,
            status=IngestionEventStatus.FAILED,
            message="File processing failed",
            filename=filename,
            error=error,
        )
        await self._broadcast(event)
        return event

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _broadcast(self, event: IngestionEvent) -> None:
        self._logger.debug(
            "ingestion_event",
            knowledge_id=event.knowledge_id,
            status=event.status.value,
            listeners=len(self._listeners),
        )
        for callback in list(self._listeners):
            try:
                result = callback(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as exc:
                self._logger.warning(
                    "listener_callback_error",
                    knowledge_id=event.knowledge_id,
                    error=str(exc),
                    callback=getattr(callback, "__name__", repr(callback)),
                )
