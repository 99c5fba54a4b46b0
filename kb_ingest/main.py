"""Composition root for kb-ingest.

Wires providers and services together via dependency injection.  The
vector store is built exactly once here and the same instance is handed to
the ingestion pipeline and the knowledge orchestrator, so every component
sees one index.

Used by the CLI (``python -m kb_ingest.cli``) and by anything embedding the
library (an HTTP layer, a worker process)::

    container = build_container(load_config())
    await startup(container)
    ...
    await shutdown(container)
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import structlog

from kb_ingest.config.settings import Settings
from kb_ingest.interfaces.embedding_provider import IEmbeddingProvider
from kb_ingest.interfaces.knowledge_repository import IKnowledgeRepository
from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.interfaces.vector_store_provider import IVectorStoreProvider
from kb_ingest.jobs.consumer import JobConsumer
from kb_ingest.jobs.handlers import JobHandlers
from kb_ingest.jobs.publisher import JobPublisher
from kb_ingest.models.knowledge import DuplicatePolicy
from kb_ingest.models.rag import SplitterConfig
from kb_ingest.providers.embedding.openai_embedding_provider import OpenAIEmbeddingProvider
from kb_ingest.providers.knowledge.sqlite_knowledge_repository import SQLiteKnowledgeRepository
from kb_ingest.providers.ocr.tesseract_provider import TesseractOCRProvider
from kb_ingest.providers.ocr.vision_provider import VisionOCRProvider
from kb_ingest.providers.vector_store.chromadb_provider import ChromaDBStore
from kb_ingest.providers.vector_store.file_store import FileBackedStore
from kb_ingest.services.extraction.text_extractor import TextExtractor
from kb_ingest.services.ingestion.ingestion_service import IngestionService
from kb_ingest.services.ingestion.semantic_splitter import SemanticSplitter
from kb_ingest.services.knowledge_service import KnowledgeService
from kb_ingest.services.notification_service import NotificationService
from kb_ingest.services.upload_storage import UploadStorage
from kb_ingest.utils.errors import ConfigurationError
from kb_ingest.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


@dataclass
class AppContainer:
    """Every long-lived component, built once per process."""

    settings: Settings
    vector_store: IVectorStoreProvider
    repository: IKnowledgeRepository
    embedding_provider: IEmbeddingProvider
    ocr_provider: IOCRProvider | None
    ingestion_service: IngestionService
    knowledge_service: KnowledgeService
    notifications: NotificationService
    storage: UploadStorage
    publisher: JobPublisher


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def _build_vector_store(app_settings: Settings) -> IVectorStoreProvider:
    backend = app_settings.vector_store_backend
    if backend == "file":
        return FileBackedStore(file_path=app_settings.vector_store_file)
    if backend == "chroma_persistent":
        return ChromaDBStore(
            mode="persistent",
            persist_directory=app_settings.chromadb_persist_dir,
            collection_name=app_settings.chromadb_collection,
        )
    if backend == "chroma_http":
        return ChromaDBStore(
            mode="http",
            host=app_settings.chromadb_host,
            port=app_settings.chromadb_port,
            collection_name=app_settings.chromadb_collection,
        )
    raise ConfigurationError(message=f"Unknown vector_store_backend: {backend!r}")


def _build_ocr_provider(app_settings: Settings) -> IOCRProvider | None:
    """Vision OCR when configured and usable, otherwise Tesseract if installed."""
    if app_settings.ocr_provider == "vision":
        vision = VisionOCRProvider(settings=app_settings)
        if vision.is_available():
            return vision
        _logger.warning("vision_ocr_unavailable", fallback="tesseract")

    tesseract = TesseractOCRProvider(settings=app_settings)
    if tesseract.is_available():
        return tesseract

    _logger.warning("no_ocr_provider", detail="scanned PDFs will yield placeholder chunks")
    return None


def _build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    provider = OpenAIEmbeddingProvider(settings=app_settings)
    if not provider.is_available():
        raise ConfigurationError(
            message="An embedding endpoint is required: set OPENAI_API_KEY (and OPENAI_BASE_URL if not OpenAI)"
        )
    return provider


# ---------------------------------------------------------------------------
# Assembly
# ---------------------------------------------------------------------------


def build_container(
    app_settings: Settings,
    *,
    vector_store: IVectorStoreProvider | None = None,
    embedding_provider: IEmbeddingProvider | None = None,
    ocr_provider: IOCRProvider | None = None,
) -> AppContainer:
    """Construct every provider and service.

    Keyword overrides replace the provider that would otherwise be built
    from *app_settings*; tests use them to inject fakes.
    """
    vector_store = vector_store or _build_vector_store(app_settings)
    embedding_provider = embedding_provider or _build_embedding_provider(app_settings)
    if ocr_provider is None:
        ocr_provider = _build_ocr_provider(app_settings)

    extractor = TextExtractor(
        ocr_provider,
        min_text_chars=app_settings.pdf_min_text_chars,
        ocr_dpi=app_settings.ocr_dpi,
        ocr_timeout=app_settings.ocr_timeout_seconds,
        rasterize_timeout=app_settings.rasterize_timeout_seconds,
        ocr_concurrency=app_settings.ocr_concurrency,
        ocr_max_pages=app_settings.ocr_max_pages,
    )
    splitter = SemanticSplitter(
        SplitterConfig(
            target_chunk_size=app_settings.splitter_target_chunk_size,
            chunk_overlap=app_settings.splitter_chunk_overlap,
            min_chunk_size=app_settings.splitter_min_chunk_size,
            max_chunk_size=app_settings.splitter_max_chunk_size,
        )
    )
    ingestion_service = IngestionService(
        extractor=extractor,
        splitter=splitter,
        embedding_provider=embedding_provider,
        vector_store=vector_store,
    )

    repository = SQLiteKnowledgeRepository(db_path=app_settings.knowledge_db_path)
    storage = UploadStorage(app_settings.upload_dir)
    notifications = NotificationService()
    publisher = JobPublisher(queue_url=app_settings.queue_url, queue_name=app_settings.queue_name)

    knowledge_service = KnowledgeService(
        repository=repository,
        ingestion_service=ingestion_service,
        vector_store=vector_store,
        storage=storage,
        notifications=notifications,
        publisher=publisher,
        sync_duplicate_policy=DuplicatePolicy(app_settings.sync_duplicate_policy),
        async_duplicate_policy=DuplicatePolicy(app_settings.async_duplicate_policy),
    )

    _logger.info(
        "container_built",
        vector_store=vector_store.get_provider_name(),
        embedding=embedding_provider.get_provider_name(),
        ocr=ocr_provider.get_provider_name() if ocr_provider else None,
        queue_enabled=publisher.enabled,
    )
    return AppContainer(
        settings=app_settings,
        vector_store=vector_store,
        repository=repository,
        embedding_provider=embedding_provider,
        ocr_provider=ocr_provider,
        ingestion_service=ingestion_service,
        knowledge_service=knowledge_service,
        notifications=notifications,
        storage=storage,
        publisher=publisher,
    )


def build_consumer(container: AppContainer, consumer_id: str | None = None) -> JobConsumer:
    """Queue consumer dispatching to the container's knowledge service."""
    app_settings = container.settings
    if not app_settings.queue_url:
        raise ConfigurationError(message="queue_url must be set to run a worker")
    handlers = JobHandlers(container.knowledge_service, container.notifications)
    return JobConsumer(
        queue_url=app_settings.queue_url,
        handler=handlers.handle,
        queue_name=app_settings.queue_name,
        consumer_id=consumer_id,
        poll_timeout=app_settings.queue_poll_timeout_seconds,
        reconnect_delay=app_settings.queue_reconnect_delay_seconds,
        notifications=container.notifications,
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


async def startup(container: AppContainer) -> None:
    """Create directories and open the stores."""
    Path(container.settings.upload_dir).mkdir(parents=True, exist_ok=True)
    await container.repository.initialize()
    await container.vector_store.initialize()
    _logger.info("startup_complete", chunks=await container.vector_store.count())


async def shutdown(container: AppContainer) -> None:
    await container.publisher.close()
    await container.vector_store.close()
    _logger.info("shutdown_complete")
