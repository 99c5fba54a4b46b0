"""Unit tests for NotificationService (ingestion outcome broadcasting)."""

from __future__ import annotations

import pytest

from kb_ingest.services.notification_service import IngestionEventStatus


class TestNotificationService:
    @pytest.mark.asyncio
    async def test_processed_event(self, notifications) -> None:
        events = []
        notifications.register_listener(events.append)

        event = await notifications.notify_processed(5, 12, filename="manual.pdf")

        assert events == [event]
        assert event.status is IngestionEventStatus.COMPLETED
        assert event.message == "File processing completed"
        assert event.chunks == 12

    @pytest.mark.asyncio
    async def test_update_message(self, notifications) -> None:
        event = await notifications.notify_processed(5, 3, is_update=True)
        assert event.message == "File update completed"

    @pytest.mark.asyncio
    async def test_failed_event(self, notifications) -> None:
        event = await notifications.notify_failed(None, "bad envelope")

        assert event.status is IngestionEventStatus.FAILED
        assert event.knowledge_id is None
        assert event.error == "bad envelope"

    @pytest.mark.asyncio
    async def test_async_listener_awaited(self, notifications) -> None:
        seen = []

        async def listener(event) -> None:
            seen.append(event.knowledge_id)

        notifications.register_listener(listener)
        await notifications.notify_processed(8, 1)

        assert seen == [8]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, notifications) -> None:
        seen = []

        def broken(event) -> None:
            raise RuntimeError("socket closed")

        notifications.register_listener(broken)
        notifications.register_listener(seen.append)

        await notifications.notify_processed(1, 1)

        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_register_is_idempotent_and_unregister(self, notifications) -> None:
        seen = []
        notifications.register_listener(seen.append)
        notifications.register_listener(seen.append)

        await notifications.notify_processed(1, 1)
        notifications.unregister_listener(seen.append)
        await notifications.notify_processed(2, 1)

        assert len(seen) == 1
