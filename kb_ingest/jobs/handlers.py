"""Dispatch of decoded queue jobs to the knowledge orchestrator.

Every handler either completes or raises; the consumer turns a raise into
a nack.  Document and text jobs push their own completion/failure
notifications (they know the file name); path jobs are notified here.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING

import structlog

from kb_ingest.models.jobs import (
    BatchIngestPayload,
    DocumentIngestPayload,
    ExpireTogglePathsPayload,
    ExpireTogglePayload,
    Job,
    JobType,
    PathPayload,
    PathsPayload,
    TextIngestPayload,
)
from kb_ingest.utils.errors import JobPayloadError

if TYPE_CHECKING:
    from pydantic import BaseModel

    from kb_ingest.services.knowledge_service import KnowledgeService
    from kb_ingest.services.notification_service import NotificationService

logger = structlog.get_logger(logger_name=__name__)


class JobHandlers:
    """Maps each :class:`JobType` to a :class:`KnowledgeService` call."""

    def __init__(self, knowledge_service: KnowledgeService, notifications: NotificationService) -> None:
        self._service = knowledge_service
        self._notifications = notifications
        self._handlers: dict[JobType, Callable[[BaseModel], Awaitable[None]]] = {
            JobType.DOCUMENT_INGEST: self._document_ingest,
            JobType.BATCH_INGEST: self._batch_ingest,
            JobType.TEXT_INGEST: self._text_ingest,
            JobType.DELETE_BY_PATH: self._delete_by_path,
            JobType.DELETE_BY_PATHS: self._delete_by_paths,
            JobType.EXPIRE_TOGGLE_BY_PATH: self._expire_by_path,
            JobType.EXPIRE_TOGGLE_BY_PATHS: self._expire_by_paths,
        }

    async def handle(self, job: Job) -> None:
        """Validate the payload and run the matching handler."""
        try:
            payload = job.parse_payload()
        except JobPayloadError as exc:
            await self._notifications.notify_failed(None, str(exc))
            raise
        logger.info("job_started", job_type=job.type.value)
        await self._handlers[job.type](payload)
        logger.info("job_completed", job_type=job.type.value)

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    async def _document_ingest(self, payload: DocumentIngestPayload) -> None:
        await self._service.process_document_job(payload)

    async def _batch_ingest(self, payload: BatchIngestPayload) -> None:
        """Process every item; the first failure is re-raised once all items ran."""
        first_error: Exception | None = None
        for item in payload.items:
            try:
                await self._service.process_document_job(item)
            except Exception as exc:
                logger.error(
                    "batch_item_failed",
                    knowledge_id=item.knowledge_id,
                    filename=item.original_name,
                    error=str(exc),
                )
                first_error = first_error or exc
        if first_error is not None:
            raise first_error

    async def _text_ingest(self, payload: TextIngestPayload) -> None:
        await self._service.process_text_job(payload)

    # ------------------------------------------------------------------
    # Path jobs
    # ------------------------------------------------------------------

    async def _delete_by_path(self, payload: PathPayload) -> None:
        await self._notify_on_failure(self._service.delete_by_path(payload.storage_path))

    async def _delete_by_paths(self, payload: PathsPayload) -> None:
        await self._notify_on_failure(self._service.delete_by_paths(payload.storage_paths))

    async def _expire_by_path(self, payload: ExpireTogglePayload) -> None:
        await self._notify_on_failure(
            self._service.set_expired_by_path(payload.storage_path, payload.expired)
        )

    async def _expire_by_paths(self, payload: ExpireTogglePathsPayload) -> None:
        await self._notify_on_failure(
            self._service.set_expired_by_paths(payload.storage_paths, payload.expired)
        )

    async def _notify_on_failure(self, operation: Awaitable[int]) -> None:
        try:
            chunks = await operation
        except Exception as exc:
            await self._notifications.notify_failed(None, str(exc))
            raise
        logger.info("path_job_applied", chunks=chunks)
