"""Unit tests for the composition root in kb_ingest/main.py.

Covers vector store selection, embedding/OCR provider fallbacks, one shared
vector store across services, queue consumer construction and the
startup/shutdown lifecycle.  External services are replaced with fakes.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from kb_ingest.config.settings import Settings
from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.jobs.consumer import JobConsumer
from kb_ingest.main import (
    _build_ocr_provider,
    _build_vector_store,
    build_consumer,
    build_container,
    shutdown,
    startup,
)
from kb_ingest.providers.ocr.tesseract_provider import TesseractOCRProvider
from kb_ingest.providers.ocr.vision_provider import VisionOCRProvider
from kb_ingest.providers.vector_store.chromadb_provider import ChromaDBStore
from kb_ingest.providers.vector_store.file_store import FileBackedStore
from kb_ingest.utils.errors import ConfigurationError


def _ocr() -> MagicMock:
    provider = MagicMock(spec=IOCRProvider)
    provider.get_provider_name.return_value = "fake-ocr"
    return provider


# ======================================================================
# Provider selection
# ======================================================================


class TestBuildVectorStore:
    def test_file_backend(self, test_settings) -> None:
        assert isinstance(_build_vector_store(test_settings), FileBackedStore)

    def test_chroma_persistent(self, test_settings) -> None:
        app_settings = test_settings.model_copy(update={"vector_store_backend": "chroma_persistent"})
        store = _build_vector_store(app_settings)
        assert isinstance(store, ChromaDBStore)

    def test_chroma_http(self, test_settings) -> None:
        app_settings = test_settings.model_copy(update={"vector_store_backend": "chroma_http"})
        assert isinstance(_build_vector_store(app_settings), ChromaDBStore)

    def test_unknown_backend(self, test_settings) -> None:
        app_settings = test_settings.model_copy(update={"vector_store_backend": "pinecone"})
        with pytest.raises(ConfigurationError):
            _build_vector_store(app_settings)


class TestBuildOCRProvider:
    def test_vision_preferred_when_keyed(self, test_settings) -> None:
        assert isinstance(_build_ocr_provider(test_settings), VisionOCRProvider)

    def test_falls_back_to_tesseract(self, test_settings) -> None:
        app_settings = test_settings.model_copy(update={"openai_api_key": ""})
        with patch.object(TesseractOCRProvider, "is_available", return_value=True):
            assert isinstance(_build_ocr_provider(app_settings), TesseractOCRProvider)

    def test_none_when_nothing_usable(self, test_settings) -> None:
        app_settings = test_settings.model_copy(update={"ocr_provider": "tesseract"})
        with patch.object(TesseractOCRProvider, "is_available", return_value=False):
            assert _build_ocr_provider(app_settings) is None


# ======================================================================
# Container
# ======================================================================


class TestBuildContainer:
    def test_services_share_one_vector_store(self, test_settings, mock_embedding_provider) -> None:
        container = build_container(
            test_settings, embedding_provider=mock_embedding_provider, ocr_provider=_ocr()
        )

        assert isinstance(container.vector_store, FileBackedStore)
        assert container.ingestion_service._vector_store is container.vector_store
        assert container.knowledge_service._vector_store is container.vector_store
        assert container.publisher.enabled is False
        assert container.knowledge_service.queue_enabled is False

    def test_injected_vector_store_used(self, test_settings, mock_embedding_provider, file_store) -> None:
        container = build_container(
            test_settings,
            vector_store=file_store,
            embedding_provider=mock_embedding_provider,
            ocr_provider=_ocr(),
        )
        assert container.vector_store is file_store

    def test_missing_embedding_key(self, test_settings) -> None:
        app_settings = test_settings.model_copy(update={"openai_api_key": ""})
        with pytest.raises(ConfigurationError):
            build_container(app_settings, ocr_provider=_ocr())

    def test_queue_url_enables_publisher(self, test_settings, mock_embedding_provider) -> None:
        app_settings = test_settings.model_copy(update={"queue_url": "redis://localhost:6379/0"})
        container = build_container(
            app_settings, embedding_provider=mock_embedding_provider, ocr_provider=_ocr()
        )
        assert container.knowledge_service.queue_enabled is True


class TestBuildConsumer:
    def test_requires_queue_url(self, test_settings, mock_embedding_provider) -> None:
        container = build_container(
            test_settings, embedding_provider=mock_embedding_provider, ocr_provider=_ocr()
        )
        with pytest.raises(ConfigurationError):
            build_consumer(container)

    def test_builds_consumer(self, test_settings, mock_embedding_provider) -> None:
        app_settings = test_settings.model_copy(
            update={"queue_url": "redis://localhost:6379/0", "queue_name": "kb:test"}
        )
        container = build_container(
            app_settings, embedding_provider=mock_embedding_provider, ocr_provider=_ocr()
        )

        consumer = build_consumer(container, consumer_id="w1")

        assert isinstance(consumer, JobConsumer)
        assert consumer.processing_list == "kb:test:processing:w1"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_startup_and_shutdown(self, test_settings, mock_embedding_provider) -> None:
        container = build_container(
            test_settings, embedding_provider=mock_embedding_provider, ocr_provider=_ocr()
        )

        await startup(container)

        assert Path(test_settings.upload_dir).is_dir()
        assert await container.repository.count() == 0
        await shutdown(container)


def test_settings_defaults() -> None:
    app_settings = Settings(_env_file=None)
    assert app_settings.vector_store_backend == "file"
    assert app_settings.queue_url == ""
    assert app_settings.sync_duplicate_policy == "conflict"
    assert app_settings.async_duplicate_policy == "replace"
