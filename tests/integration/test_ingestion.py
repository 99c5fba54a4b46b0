"""Integration tests for the knowledge base ingestion lifecycle.

Wires the real container (SQLite records, file-backed vector store,
uploads root) with deterministic mock embeddings, then drives whole
create / update / expire / delete cycles.  The queued path runs the real
publisher, consumer and handlers over an in-memory Redis list fake.
"""

from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.interfaces.vector_store_provider import MetadataMatch
from kb_ingest.jobs.consumer import JobConsumer
from kb_ingest.jobs.handlers import JobHandlers
from kb_ingest.jobs.publisher import JobPublisher
from kb_ingest.main import build_container, shutdown, startup
from kb_ingest.models.knowledge import KnowledgeStatus
from kb_ingest.services.knowledge_service import KnowledgeService
from kb_ingest.services.notification_service import IngestionEventStatus
from kb_ingest.utils.errors import EmbeddingProviderError

_HANDBOOK = "\n\n".join(
    f"Section {i}. Employees in region {i} submit expense reports within {i + 5} days "
    f"and attach every receipt to the request."
    for i in range(1, 11)
)


class FakeRedisLists:
    """Just enough of ``redis.asyncio.Redis`` list commands for the queue."""

    def __init__(self) -> None:
        self.lists: defaultdict[str, list[str]] = defaultdict(list)

    async def lpush(self, key: str, value: str) -> int:
        self.lists[key].insert(0, value)
        return len(self.lists[key])

    async def blmove(self, source: str, destination: str, timeout: float, src: str, dest: str):
        if not self.lists[source]:
            return None
        value = self.lists[source].pop()
        self.lists[destination].insert(0, value)
        return value

    async def lrem(self, key: str, count: int, value: str) -> int:
        if value in self.lists[key]:
            self.lists[key].remove(value)
            return 1
        return 0

    async def lrange(self, key: str, start: int, end: int) -> list[str]:
        return list(self.lists[key])

    async def delete(self, key: str) -> int:
        return 1 if self.lists.pop(key, None) is not None else 0

    async def aclose(self) -> None:
        pass


@pytest_asyncio.fixture
async def container(test_settings, mock_embedding_provider):
    ocr = MagicMock(spec=IOCRProvider)
    ocr.get_provider_name.return_value = "fake-ocr"
    app = build_container(test_settings, embedding_provider=mock_embedding_provider, ocr_provider=ocr)
    await startup(app)
    yield app
    await shutdown(app)


class TestSyncLifecycle:
    @pytest.mark.asyncio
    async def test_create_update_expire_delete(self, container, write_upload) -> None:
        service = container.knowledge_service
        store = container.vector_store

        created = await service.create_file_knowledge(
            write_upload("handbook.md", _HANDBOOK), business="finance", scene="expenses"
        )
        assert created.chunks_created > 1
        assert await store.count() == created.chunks_created

        hits = await container.ingestion_service.search(
            "Employees in region 3 submit expense reports", top_k=3, predicate=MetadataMatch(business="finance")
        )
        assert hits
        assert all(h.chunk.knowledge_id == str(created.knowledge_id) for h in hits)

        updated = await service.update_file_knowledge(
            created.knowledge_id, write_upload("handbook.md", "Expense reports are now due within 3 days.")
        )
        assert updated.chunks_removed == created.chunks_created
        assert await store.count() == 1
        chunk = (await store.list_all())[0]
        assert chunk.metadata["business"] == "finance"

        await service.set_status(created.knowledge_id, KnowledgeStatus.EXPIRED)
        active = await container.ingestion_service.search("expense", predicate=MetadataMatch(isActive=True))
        assert active == []

        record = await container.repository.get(created.knowledge_id)
        removed = await service.delete_knowledge(created.knowledge_id)
        assert removed == 1
        assert await store.count() == 0
        assert await container.repository.count() == 0
        assert not Path(record.file_url).exists()

    @pytest.mark.asyncio
    async def test_index_survives_restart(self, container, test_settings, mock_embedding_provider, write_upload) -> None:
        created = await container.knowledge_service.create_file_knowledge(write_upload("handbook.md", _HANDBOOK))
        await shutdown(container)

        reopened = build_container(
            test_settings, embedding_provider=mock_embedding_provider, ocr_provider=container.ocr_provider
        )
        await startup(reopened)

        assert await reopened.vector_store.count() == created.chunks_created
        assert (await reopened.repository.get(created.knowledge_id)).title == "handbook.md"
        await shutdown(reopened)

    @pytest.mark.asyncio
    async def test_embedding_outage_leaves_record_without_chunks(
        self, container, mock_embedding_provider, write_upload
    ) -> None:
        created = await container.knowledge_service.create_file_knowledge(write_upload("handbook.md", _HANDBOOK))
        mock_embedding_provider.fail_with = EmbeddingProviderError(message="endpoint down")

        with pytest.raises(EmbeddingProviderError):
            await container.knowledge_service.update_file_knowledge(
                created.knowledge_id, write_upload("handbook.md", "New text.")
            )

        assert await container.vector_store.count() == 0
        assert await container.repository.get(created.knowledge_id) is not None


class TestQueuedLifecycle:
    @pytest.mark.asyncio
    async def test_submit_then_consume(self, container, write_upload) -> None:
        redis_lists = FakeRedisLists()
        publisher = JobPublisher(queue_url="", queue_name="kb:test", client=redis_lists)
        service = KnowledgeService(
            repository=container.repository,
            ingestion_service=container.ingestion_service,
            vector_store=container.vector_store,
            storage=container.storage,
            notifications=container.notifications,
            publisher=publisher,
        )
        consumer = JobConsumer(
            queue_url="",
            handler=JobHandlers(service, container.notifications).handle,
            queue_name="kb:test",
            consumer_id="it",
            notifications=container.notifications,
            client=redis_lists,
        )
        events = []
        container.notifications.register_listener(events.append)

        receipt = await service.submit_file_knowledge(write_upload("handbook.md", _HANDBOOK))
        record = await container.repository.get(receipt.knowledge_id)
        await service.queue_expire_by_paths([record.file_url])
        await service.queue_delete_by_paths([record.file_url])

        assert await container.vector_store.count() == 0
        assert await consumer.consume_one() is True
        assert await container.vector_store.count() == events[-1].chunks > 0
        assert events[-1].status is IngestionEventStatus.COMPLETED

        assert await consumer.consume_one() is True
        assert all(c.metadata["isActive"] is False for c in await container.vector_store.list_all())

        assert await consumer.consume_one() is True
        assert await container.vector_store.count() == 0
        assert await container.repository.get(receipt.knowledge_id) is None

        assert await consumer.consume_one() is None
        assert redis_lists.lists[consumer.processing_list] == []

    @pytest.mark.asyncio
    async def test_failed_job_is_dropped_and_notified(self, container) -> None:
        redis_lists = FakeRedisLists()
        publisher = JobPublisher(queue_url="", queue_name="kb:test", client=redis_lists)
        service = KnowledgeService(
            repository=container.repository,
            ingestion_service=container.ingestion_service,
            vector_store=container.vector_store,
            storage=container.storage,
            notifications=container.notifications,
            publisher=publisher,
        )
        consumer = JobConsumer(
            queue_url="",
            handler=JobHandlers(service, container.notifications).handle,
            queue_name="kb:test",
            consumer_id="it",
            client=redis_lists,
        )
        events = []
        container.notifications.register_listener(events.append)
        await redis_lists.lpush(
            "kb:test", '{"type": "document-ingest", "payload": {"knowledge_id": 99, "file_path": "/gone.pdf"}}'
        )

        assert await consumer.consume_one() is False

        assert events[-1].status is IngestionEventStatus.FAILED
        assert events[-1].knowledge_id == 99
        assert redis_lists.lists["kb:test"] == []
        assert redis_lists.lists[consumer.processing_list] == []
