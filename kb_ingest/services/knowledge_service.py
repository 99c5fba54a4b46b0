"""Knowledge orchestrator: keeps the relational record, the stored file and
the vector index consistent.

Per knowledge id the lifecycle is::

    absent ──create──→ indexed ──update──→ indexed (new generation) ──delete──→ absent

Two entry styles exist for file uploads:

* **sync** (:meth:`KnowledgeService.create_file_knowledge`) stores the file,
  writes the record and indexes it before returning.
* **async** (:meth:`KnowledgeService.submit_file_knowledge`) stores the file,
  writes the record, publishes a ``document-ingest`` job and returns a
  :class:`SubmissionReceipt`.  The queue consumer later calls
  :meth:`KnowledgeService.process_document_job`.

Mutations of one knowledge id inside this process are serialized by a
keyed :class:`asyncio.Lock`; across processes the queue's one-at-a-time
delivery is what serializes them.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from kb_ingest.interfaces.vector_store_provider import by_file_url, by_knowledge_id
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
from kb_ingest.models.knowledge import (
    JSON_KNOWLEDGE_TYPE,
    DuplicatePolicy,
    KnowledgeRecord,
    KnowledgeStatus,
    SubmissionReceipt,
    UploadedFile,
)
from kb_ingest.services.extraction.text_cleaner import clean_text
from kb_ingest.services.extraction.text_extractor import detect_format
from kb_ingest.utils.errors import (
    ConfigurationError,
    DuplicateTitleError,
    KnowledgeNotFoundError,
)
from kb_ingest.utils.logging import get_logger

if TYPE_CHECKING:
    from kb_ingest.interfaces.knowledge_repository import IKnowledgeRepository
    from kb_ingest.interfaces.vector_store_provider import IVectorStoreProvider
    from kb_ingest.jobs.publisher import JobPublisher
    from kb_ingest.models.rag import Chunk, IngestionResult
    from kb_ingest.services.ingestion.ingestion_service import IngestionService
    from kb_ingest.services.notification_service import NotificationService
    from kb_ingest.services.upload_storage import UploadStorage


def _content_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, indent=2)


class KnowledgeService:
    """Create, update, expire and delete knowledge records and their chunks.

    All dependencies are injected (see ``kb_ingest.main``).  ``publisher``
    is optional; without it only the sync entry points are usable.
    """

    def __init__(
        self,
        repository: IKnowledgeRepository,
        ingestion_service: IngestionService,
        vector_store: IVectorStoreProvider,
        storage: UploadStorage,
        notifications: NotificationService,
        publisher: JobPublisher | None = None,
        sync_duplicate_policy: DuplicatePolicy = DuplicatePolicy.CONFLICT,
        async_duplicate_policy: DuplicatePolicy = DuplicatePolicy.REPLACE,
    ) -> None:
        self._repository = repository
        self._ingestion = ingestion_service
        self._vector_store = vector_store
        self._storage = storage
        self._notifications = notifications
        self._publisher = publisher
        self._sync_policy = sync_duplicate_policy
        self._async_policy = async_duplicate_policy
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._logger: structlog.BoundLogger = get_logger(__name__)

    @property
    def queue_enabled(self) -> bool:
        return self._publisher is not None and self._publisher.enabled

    def _lock(self, knowledge_id: int) -> asyncio.Lock:
        return self._locks[knowledge_id]

    async def _require(self, knowledge_id: int) -> KnowledgeRecord:
        record = await self._repository.get(knowledge_id)
        if record is None:
            raise KnowledgeNotFoundError(message=f"knowledge_id {knowledge_id} does not exist")
        return record

    async def _find_file_duplicate(self, title: str) -> KnowledgeRecord | None:
        existing = await self._repository.get_by_title(title)
        if existing is None or existing.type == JSON_KNOWLEDGE_TYPE:
            return None
        return existing

    # ------------------------------------------------------------------
    # File knowledge: sync path
    # ------------------------------------------------------------------

    async def create_file_knowledge(
        self,
        upload: UploadedFile,
        business: str = "",
        scene: str = "",
        policy: DuplicatePolicy | None = None,
    ) -> IngestionResult:
        """Store, record and index an uploaded file before returning.

        Raises:
            DuplicateTitleError: Same title exists and the policy is ``CONFLICT``.
            UnsupportedFormatError: The file type cannot be extracted.
        """
        policy = policy or self._sync_policy
        fmt = detect_format(upload.original_name)

        existing = await self._find_file_duplicate(upload.original_name)
        if existing is not None:
            if policy is DuplicatePolicy.CONFLICT:
                self._logger.info(
                    "duplicate_title_conflict",
                    knowledge_id=existing.knowledge_id,
                    title=upload.original_name,
                )
                raise DuplicateTitleError(
                    message=f'File "{upload.original_name}" already exists; update it instead',
                    existing=existing,
                )
            self._logger.info(
                "duplicate_title_replace",
                knowledge_id=existing.knowledge_id,
                title=upload.original_name,
            )
            return await self.update_file_knowledge(existing.knowledge_id, upload, business, scene)

        stored = await self._storage.store(upload.temp_path, upload.original_name)
        record = await self._repository.insert(
            type=fmt,
            title=upload.original_name,
            business=business,
            scene=scene,
            file_url=str(stored),
            file_size=stored.stat().st_size,
        )
        async with self._lock(record.knowledge_id):
            return await self._ingestion.index_file(record, stored, fmt, upload.original_name)

    async def update_file_knowledge(
        self,
        knowledge_id: int,
        upload: UploadedFile,
        business: str | None = None,
        scene: str | None = None,
    ) -> IngestionResult:
        """Replace the backing file of a record and re-index it."""
        async with self._lock(knowledge_id):
            record, stored, fmt = await self._replace_file(knowledge_id, upload, business, scene)
            return await self._ingestion.index_file(record, stored, fmt, upload.original_name)

    async def _replace_file(
        self,
        knowledge_id: int,
        upload: UploadedFile,
        business: str | None,
        scene: str | None,
    ) -> tuple[KnowledgeRecord, Path, str]:
        current = await self._require(knowledge_id)
        if current.type == JSON_KNOWLEDGE_TYPE:
            raise ValueError(f"knowledge_id {knowledge_id} is text knowledge; use update_text_knowledge")
        fmt = detect_format(upload.original_name)

        old_suffix = Path(current.file_url or "").suffix.lower()
        if current.file_url and old_suffix == Path(upload.original_name).suffix.lower():
            stored = await self._storage.replace(upload.temp_path, current.file_url)
        else:
            stored = await self._storage.store(upload.temp_path, upload.original_name)
            await self._storage.remove(current.file_url)

        fields: dict[str, Any] = {
            "type": fmt,
            "title": upload.original_name,
            "file_url": str(stored),
            "file_size": stored.stat().st_size,
        }
        if business is not None:
            fields["business"] = business
        if scene is not None:
            fields["scene"] = scene
        record = await self._repository.update(knowledge_id, **fields)
        if record is None:
            raise KnowledgeNotFoundError(message=f"knowledge_id {knowledge_id} does not exist")
        self._logger.info("knowledge_file_replaced", knowledge_id=knowledge_id, path=str(stored))
        return record, stored, fmt

    # ------------------------------------------------------------------
    # File knowledge: async path
    # ------------------------------------------------------------------

    async def submit_file_knowledge(
        self,
        upload: UploadedFile,
        business: str = "",
        scene: str = "",
        policy: DuplicatePolicy | None = None,
    ) -> SubmissionReceipt:
        """Store and record an upload, then queue it for indexing."""
        publisher = self._require_publisher()
        receipt, payload = await self._prepare_submission(upload, business, scene, policy)
        await publisher.publish(Job.create(JobType.DOCUMENT_INGEST, payload))
        return receipt

    async def submit_file_batch(
        self,
        uploads: list[UploadedFile],
        business: str = "",
        scene: str = "",
        policy: DuplicatePolicy | None = None,
    ) -> list[SubmissionReceipt]:
        """Queue several uploads as one ``batch-ingest`` job."""
        publisher = self._require_publisher()
        receipts: list[SubmissionReceipt] = []
        payloads: list[DocumentIngestPayload] = []
        for upload in uploads:
            receipt, payload = await self._prepare_submission(upload, business, scene, policy)
            receipts.append(receipt)
            payloads.append(payload)
        await publisher.publish(Job.create(JobType.BATCH_INGEST, BatchIngestPayload(items=payloads)))
        return receipts

    async def _prepare_submission(
        self,
        upload: UploadedFile,
        business: str,
        scene: str,
        policy: DuplicatePolicy | None,
    ) -> tuple[SubmissionReceipt, DocumentIngestPayload]:
        policy = policy or self._async_policy
        fmt = detect_format(upload.original_name)

        existing = await self._find_file_duplicate(upload.original_name)
        if existing is not None and policy is DuplicatePolicy.CONFLICT:
            raise DuplicateTitleError(
                message=f'File "{upload.original_name}" already exists; update it instead',
                existing=existing,
            )

        if existing is not None:
            async with self._lock(existing.knowledge_id):
                record, stored, fmt = await self._replace_file(
                    existing.knowledge_id, upload, business, scene
                )
            is_update = True
        else:
            stored = await self._storage.store(upload.temp_path, upload.original_name)
            record = await self._repository.insert(
                type=fmt,
                title=upload.original_name,
                business=business,
                scene=scene,
                file_url=str(stored),
                file_size=stored.stat().st_size,
            )
            is_update = False

        estimate = self._ingestion.estimate_chunk_count(stored)
        self._logger.info(
            "knowledge_queued",
            knowledge_id=record.knowledge_id,
            title=record.title,
            is_update=is_update,
            estimated_chunks=estimate,
        )
        receipt = SubmissionReceipt(
            knowledge_id=record.knowledge_id,
            title=record.title,
            is_update=is_update,
            estimated_chunks=estimate,
        )
        payload = DocumentIngestPayload(
            knowledge_id=record.knowledge_id,
            file_path=str(stored),
            original_name=upload.original_name,
            is_update=is_update,
        )
        return receipt, payload

    def _require_publisher(self) -> JobPublisher:
        if self._publisher is None or not self._publisher.enabled:
            raise ConfigurationError(message="Async ingestion needs queue_url to be configured")
        return self._publisher

    async def process_document_job(self, payload: DocumentIngestPayload) -> IngestionResult:
        """Index a queued file using the record's current metadata.

        A failure is reported through the notification channel and re-raised
        so the consumer can nack the job.
        """
        try:
            record = await self._require(payload.knowledge_id)
            async with self._lock(record.knowledge_id):
                result = await self._ingestion.index_file(
                    record, payload.file_path, record.type, payload.original_name or record.title
                )
        except Exception as exc:
            await self._notifications.notify_failed(
                payload.knowledge_id, str(exc), filename=payload.original_name
            )
            raise
        await self._notifications.notify_processed(
            record.knowledge_id,
            result.chunks_created,
            filename=payload.original_name,
            is_update=payload.is_update,
        )
        return result

    # ------------------------------------------------------------------
    # Text (json) knowledge
    # ------------------------------------------------------------------

    async def add_text_knowledge(
        self,
        title: str,
        content: Any,
        business: str = "",
        scene: str = "",
        policy: DuplicatePolicy | None = None,
    ) -> IngestionResult:
        """Record, save and index a JSON / free-text body.

        Raises:
            DuplicateTitleError: A text record with this title exists and the
                policy is ``CONFLICT``.
        """
        existing = await self._find_text_duplicate(title, policy or self._sync_policy)
        if existing is not None:
            return await self.update_text_knowledge(existing.knowledge_id, content, business, scene)

        record, text = await self._insert_text_record(title, content, business, scene)
        async with self._lock(record.knowledge_id):
            return await self._ingestion.index_text(record, text)

    async def submit_text_knowledge(
        self,
        title: str,
        content: Any,
        business: str = "",
        scene: str = "",
        policy: DuplicatePolicy | None = None,
    ) -> SubmissionReceipt:
        """Record and save a text body, then queue a ``text-ingest`` job."""
        publisher = self._require_publisher()
        existing = await self._find_text_duplicate(title, policy or self._async_policy)
        if existing is not None:
            async with self._lock(existing.knowledge_id):
                record, text = await self._rewrite_text_record(existing, content, business, scene)
            is_update = True
        else:
            record, text = await self._insert_text_record(title, content, business, scene)
            is_update = False

        estimate = self._ingestion.estimate_text_chunk_count(text)
        await publisher.publish(
            Job.create(
                JobType.TEXT_INGEST,
                TextIngestPayload(knowledge_id=record.knowledge_id, text=text, is_update=is_update),
            )
        )
        self._logger.info(
            "knowledge_queued",
            knowledge_id=record.knowledge_id,
            title=record.title,
            is_update=is_update,
            estimated_chunks=estimate,
        )
        return SubmissionReceipt(
            knowledge_id=record.knowledge_id,
            title=record.title,
            is_update=is_update,
            estimated_chunks=estimate,
        )

    async def update_text_knowledge(
        self,
        knowledge_id: int,
        content: Any,
        business: str | None = None,
        scene: str | None = None,
        title: str | None = None,
    ) -> IngestionResult:
        """Replace the body of a text record and re-index it."""
        async with self._lock(knowledge_id):
            current = await self._require(knowledge_id)
            if current.type != JSON_KNOWLEDGE_TYPE:
                raise ValueError(f"knowledge_id {knowledge_id} is file knowledge; use update_file_knowledge")
            record, text = await self._rewrite_text_record(current, content, business, scene, title)
            return await self._ingestion.index_text(record, text)

    async def process_text_job(self, payload: TextIngestPayload) -> IngestionResult:
        """Index a queued text body; failures are notified and re-raised."""
        try:
            record = await self._require(payload.knowledge_id)
            async with self._lock(record.knowledge_id):
                result = await self._ingestion.index_text(record, payload.text)
        except Exception as exc:
            await self._notifications.notify_failed(payload.knowledge_id, str(exc))
            raise
        await self._notifications.notify_processed(
            record.knowledge_id,
            result.chunks_created,
            filename=record.title,
            is_update=payload.is_update,
        )
        return result

    async def _find_text_duplicate(self, title: str, policy: DuplicatePolicy) -> KnowledgeRecord | None:
        if not title or not title.strip():
            raise ValueError("title must not be empty")
        existing = await self._repository.get_by_title(title)
        if existing is None or existing.type != JSON_KNOWLEDGE_TYPE:
            return None
        if policy is DuplicatePolicy.CONFLICT:
            raise DuplicateTitleError(
                message=f'Text knowledge "{title}" already exists; update it instead',
                existing=existing,
            )
        self._logger.info("duplicate_title_replace", knowledge_id=existing.knowledge_id, title=title)
        return existing

    @staticmethod
    def _prepare_text(content: Any) -> tuple[str, str]:
        raw = _content_to_text(content)
        text = clean_text(raw)
        if not text:
            raise ValueError("content must not be empty")
        return raw, text

    async def _insert_text_record(
        self,
        title: str,
        content: Any,
        business: str,
        scene: str,
    ) -> tuple[KnowledgeRecord, str]:
        raw, text = self._prepare_text(content)
        record = await self._repository.insert(
            type=JSON_KNOWLEDGE_TYPE,
            title=title,
            business=business,
            scene=scene,
            content=raw,
            file_size=len(text.encode("utf-8")),
        )
        path = await self._storage.save_json(content, record.knowledge_id, title)
        updated = await self._repository.update(record.knowledge_id, file_url=str(path))
        return updated or record, text

    async def _rewrite_text_record(
        self,
        current: KnowledgeRecord,
        content: Any,
        business: str | None,
        scene: str | None,
        title: str | None = None,
    ) -> tuple[KnowledgeRecord, str]:
        raw, text = self._prepare_text(content)
        new_title = title or current.title
        await self._storage.remove(current.file_url)
        path = await self._storage.save_json(content, current.knowledge_id, new_title)

        fields: dict[str, Any] = {
            "title": new_title,
            "content": raw,
            "file_size": len(text.encode("utf-8")),
            "file_url": str(path),
        }
        if business is not None:
            fields["business"] = business
        if scene is not None:
            fields["scene"] = scene
        record = await self._repository.update(current.knowledge_id, **fields)
        if record is None:
            raise KnowledgeNotFoundError(message=f"knowledge_id {current.knowledge_id} does not exist")
        return record, text

    # ------------------------------------------------------------------
    # Metadata and status
    # ------------------------------------------------------------------

    async def update_metadata(
        self,
        knowledge_id: int,
        title: str | None = None,
        business: str | None = None,
        scene: str | None = None,
    ) -> KnowledgeRecord:
        """Change title/business/scene on the record and on every chunk, without re-embedding."""
        fields = {
            name: value
            for name, value in (("title", title), ("business", business), ("scene", scene))
            if value is not None
        }
        async with self._lock(knowledge_id):
            if not fields:
                return await self._require(knowledge_id)
            record = await self._repository.update(knowledge_id, **fields)
            if record is None:
                raise KnowledgeNotFoundError(message=f"knowledge_id {knowledge_id} does not exist")

            def mutate(chunk: Chunk) -> Chunk:
                return chunk.with_metadata(**fields)

            updated = await self._vector_store.update_where(by_knowledge_id(knowledge_id), mutate)
        self._logger.info(
            "knowledge_metadata_updated",
            knowledge_id=knowledge_id,
            fields=sorted(fields),
            chunks=updated,
        )
        return record

    async def set_status(self, knowledge_id: int, status: KnowledgeStatus) -> KnowledgeRecord:
        """Mark a record effective or expired, on the row and on its chunks."""
        async with self._lock(knowledge_id):
            record, _ = await self._apply_status(knowledge_id, status)
        return record

    async def _apply_status(self, knowledge_id: int, status: KnowledgeStatus) -> tuple[KnowledgeRecord, int]:
        record = await self._repository.update(knowledge_id, status=status)
        if record is None:
            raise KnowledgeNotFoundError(message=f"knowledge_id {knowledge_id} does not exist")
        updated = await self._vector_store.update_where(
            by_knowledge_id(knowledge_id), _status_mutator(status)
        )
        self._logger.info(
            "knowledge_status_changed",
            knowledge_id=knowledge_id,
            status=status.value,
            chunks=updated,
        )
        return record, updated

    async def set_expired_by_path(self, storage_path: str, expired: bool = True) -> int:
        """Expire (or revive) whatever is indexed from one stored file.

        Returns the number of chunks updated.
        """
        status = KnowledgeStatus.EXPIRED if expired else KnowledgeStatus.EFFECTIVE
        file_url = str(self._storage.resolve(storage_path))
        record = await self._repository.get_by_file_url(file_url)
        if record is None:
            self._logger.warning("no_record_for_path", path=file_url)
            return await self._vector_store.update_where(by_file_url(file_url), _status_mutator(status))
        async with self._lock(record.knowledge_id):
            _, updated = await self._apply_status(record.knowledge_id, status)
        return updated

    async def set_expired_by_paths(self, storage_paths: list[str], expired: bool = True) -> int:
        total = 0
        for path in storage_paths:
            total += await self.set_expired_by_path(path, expired)
        return total

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_knowledge(self, knowledge_id: int) -> int:
        """Remove chunks, then the row, then (best effort) the stored file.

        Returns the number of chunks removed.
        """
        async with self._lock(knowledge_id):
            current = await self._require(knowledge_id)
            removed = await self._vector_store.remove_where(by_knowledge_id(knowledge_id))
            await self._repository.delete(knowledge_id)
            await self._storage.remove(current.file_url)
        self._locks.pop(knowledge_id, None)
        self._logger.info("knowledge_deleted", knowledge_id=knowledge_id, chunks=removed)
        return removed

    async def delete_by_path(self, storage_path: str) -> int:
        """Delete whatever is indexed from one stored file.  Returns chunks removed."""
        file_url = str(self._storage.resolve(storage_path))
        record = await self._repository.get_by_file_url(file_url)
        if record is not None:
            return await self.delete_knowledge(record.knowledge_id)

        self._logger.warning("no_record_for_path", path=file_url)
        removed = await self._vector_store.remove_where(by_file_url(file_url))
        await self._storage.remove(file_url)
        return removed

    async def delete_by_paths(self, storage_paths: list[str]) -> int:
        total = 0
        for path in storage_paths:
            total += await self.delete_by_path(path)
        return total

    # ------------------------------------------------------------------
    # Queued path operations
    # ------------------------------------------------------------------

    async def queue_delete_by_paths(self, storage_paths: list[str]) -> None:
        publisher = self._require_publisher()
        if len(storage_paths) == 1:
            job = Job.create(JobType.DELETE_BY_PATH, PathPayload(storage_path=storage_paths[0]))
        else:
            job = Job.create(JobType.DELETE_BY_PATHS, PathsPayload(storage_paths=storage_paths))
        await publisher.publish(job)

    async def queue_expire_by_paths(self, storage_paths: list[str], expired: bool = True) -> None:
        publisher = self._require_publisher()
        if len(storage_paths) == 1:
            job = Job.create(
                JobType.EXPIRE_TOGGLE_BY_PATH,
                ExpireTogglePayload(storage_path=storage_paths[0], expired=expired),
            )
        else:
            job = Job.create(
                JobType.EXPIRE_TOGGLE_BY_PATHS,
                ExpireTogglePathsPayload(storage_paths=storage_paths, expired=expired),
            )
        await publisher.publish(job)


def _status_mutator(status: KnowledgeStatus):
    is_active = status is KnowledgeStatus.EFFECTIVE

    def mutate(chunk: Chunk) -> Chunk:
        return chunk.with_metadata(status=status.value, isActive=is_active)

    return mutate
