"""Shared pytest fixtures for the kb-ingest test suite."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from kb_ingest.config.settings import Settings
from kb_ingest.interfaces.embedding_provider import IEmbeddingProvider
from kb_ingest.jobs.publisher import JobPublisher
from kb_ingest.models.knowledge import KnowledgeRecord, UploadedFile
from kb_ingest.models.rag import Chunk, SplitterConfig
from kb_ingest.providers.knowledge.sqlite_knowledge_repository import SQLiteKnowledgeRepository
from kb_ingest.providers.vector_store.file_store import FileBackedStore
from kb_ingest.services.extraction.text_extractor import TextExtractor
from kb_ingest.services.ingestion.ingestion_service import IngestionService
from kb_ingest.services.ingestion.semantic_splitter import SemanticSplitter
from kb_ingest.services.knowledge_service import KnowledgeService
from kb_ingest.services.notification_service import NotificationService
from kb_ingest.services.upload_storage import UploadStorage

_EMBEDDING_DIM = 32


# ---------------------------------------------------------------------------
# Deterministic embeddings
# ---------------------------------------------------------------------------


def _hash_to_vector(text: str, dim: int = _EMBEDDING_DIM) -> list[float]:
    """Generate a deterministic fixed-length unit vector by hashing *text*.

    Each SHA-256 byte maps to a float in ``[-1, 1]``; the same text always
    produces the same vector.
    """
    raw = hashlib.sha256(text.encode("utf-8")).digest()
    while len(raw) < dim:
        raw += hashlib.sha256(raw).digest()
    values = [(byte / 127.5) - 1.0 for byte in raw[:dim]]
    magnitude = max(sum(v * v for v in values) ** 0.5, 1e-10)
    return [v / magnitude for v in values]


class MockEmbeddingProvider(IEmbeddingProvider):
    """In-memory deterministic embedding provider for tests.

    Set ``fail_with`` to an exception to make the next calls raise it.
    """

    def __init__(self) -> None:
        self.calls: list[list[str]] = []
        self.fail_with: Exception | None = None

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_with is not None:
            raise self.fail_with
        return [_hash_to_vector(t) for t in texts]

    async def embed_single(self, text: str) -> list[float]:
        return (await self.embed([text]))[0]

    def get_dimension(self) -> int:
        return _EMBEDDING_DIM

    def get_provider_name(self) -> str:
        return "mock-embedding"

    def is_available(self) -> bool:
        return True


@pytest.fixture
def hash_vector():
    """The hashing function behind :class:`MockEmbeddingProvider`."""
    return _hash_to_vector


@pytest.fixture
def mock_embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


# ---------------------------------------------------------------------------
# Settings and records
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every path at *tmp_path*, queue disabled."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test",
        vector_store_file=str(tmp_path / "vector_store.json"),
        chromadb_persist_dir=str(tmp_path / "chromadb"),
        knowledge_db_path=str(tmp_path / "knowledge.db"),
        upload_dir=str(tmp_path / "uploads"),
        queue_url="",
    )


@pytest.fixture
def make_record():
    """Factory for :class:`KnowledgeRecord` instances."""

    def _make(knowledge_id: int = 1, **overrides: Any) -> KnowledgeRecord:
        fields: dict[str, Any] = {
            "knowledge_id": knowledge_id,
            "type": "txt",
            "title": f"doc-{knowledge_id}.txt",
            "business": "sales",
            "scene": "onboarding",
            "file_url": f"/uploads/doc-{knowledge_id}.txt",
        }
        fields.update(overrides)
        return KnowledgeRecord(**fields)

    return _make


@pytest.fixture
def make_chunk():
    """Factory for embedded :class:`Chunk` instances."""

    def _make(text: str = "chunk text", knowledge_id: int | str = 1, **metadata: Any) -> Chunk:
        return Chunk(
            text=text,
            embedding=_hash_to_vector(text),
            metadata={"knowledgeId": str(knowledge_id), **metadata},
        )

    return _make


# ---------------------------------------------------------------------------
# Real components on tmp_path
# ---------------------------------------------------------------------------


@pytest.fixture
def small_splitter() -> SemanticSplitter:
    """Splitter with small limits so short test documents yield several chunks."""
    return SemanticSplitter(
        SplitterConfig(target_chunk_size=120, chunk_overlap=20, min_chunk_size=40, max_chunk_size=200)
    )


@pytest.fixture
def file_store(tmp_path: Path) -> FileBackedStore:
    return FileBackedStore(file_path=tmp_path / "vectors.json")


@pytest_asyncio.fixture
async def repository(tmp_path: Path) -> SQLiteKnowledgeRepository:
    repo = SQLiteKnowledgeRepository(db_path=tmp_path / "knowledge.db")
    await repo.initialize()
    return repo


@pytest.fixture
def storage(tmp_path: Path) -> UploadStorage:
    return UploadStorage(tmp_path / "uploads")


@pytest.fixture
def notifications() -> NotificationService:
    return NotificationService()


@pytest.fixture
def ingestion_service(
    small_splitter: SemanticSplitter,
    mock_embedding_provider: MockEmbeddingProvider,
    file_store: FileBackedStore,
) -> IngestionService:
    return IngestionService(
        extractor=TextExtractor(None),
        splitter=small_splitter,
        embedding_provider=mock_embedding_provider,
        vector_store=file_store,
    )


@pytest.fixture
def mock_publisher() -> JobPublisher:
    """Enabled publisher whose ``publish`` is an AsyncMock."""
    publisher = MagicMock(spec=JobPublisher)
    publisher.enabled = True
    publisher.publish = AsyncMock()
    return publisher


@pytest.fixture
def knowledge_service(
    repository: SQLiteKnowledgeRepository,
    ingestion_service: IngestionService,
    file_store: FileBackedStore,
    storage: UploadStorage,
    notifications: NotificationService,
) -> KnowledgeService:
    """Orchestrator over real SQLite, file store and uploads root; no queue."""
    return KnowledgeService(
        repository=repository,
        ingestion_service=ingestion_service,
        vector_store=file_store,
        storage=storage,
        notifications=notifications,
    )


@pytest.fixture
def write_upload(tmp_path: Path):
    """Write a temp upload file and return the matching ``UploadedFile``."""
    incoming = tmp_path / "incoming"

    def _write(name: str, content: str | bytes) -> UploadedFile:
        incoming.mkdir(exist_ok=True)
        path = incoming / f"tmp-{len(list(incoming.iterdir()))}-{name}"
        if isinstance(content, str):
            path.write_text(content, encoding="utf-8")
        else:
            path.write_bytes(content)
        return UploadedFile(temp_path=str(path), original_name=name, size=path.stat().st_size)

    return _write
