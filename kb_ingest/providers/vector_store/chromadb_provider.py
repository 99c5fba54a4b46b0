"""ChromaDB vector store provider adapter.

Two connection modes share one implementation:

* ``persistent`` -- ``chromadb.PersistentClient`` writing to a local
  directory (no server process needed);
* ``http`` -- ``chromadb.HttpClient`` talking to a Chroma server.

Embeddings are always computed by the ingestion pipeline and passed in, so
the collection is opened with a no-op embedding function.  Metadata goes
through :mod:`~kb_ingest.providers.vector_store.metadata_codec` on the way
in and out.
"""

from __future__ import annotations

import os
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

# Telemetry must be off before chromadb is imported.
os.environ.setdefault("ANONYMIZED_TELEMETRY", "False")

import chromadb
import structlog

from kb_ingest.interfaces.vector_store_provider import (
    ChunkMutator,
    ChunkPredicate,
    IVectorStoreProvider,
    MetadataMatch,
)
from kb_ingest.models.rag import Chunk, ScoredChunk
from kb_ingest.providers.vector_store.metadata_codec import decode_metadata, encode_metadata
from kb_ingest.utils.errors import VectorStoreError

logger = structlog.get_logger(logger_name=__name__)

_PAGE_SIZE = 5000
_WRITE_BATCH_SIZE = 500
_CREATED_AT_FIELD = "createdAt"
# Candidate multiplier when a predicate has to be applied after the ANN query.
_OVERFETCH_FACTOR = 4

ChromaMode = Literal["persistent", "http"]


class _NoopEmbeddingFunction(chromadb.EmbeddingFunction[list[str]]):
    """Keeps ChromaDB from loading its default ONNX model."""

    def __init__(self) -> None:
        pass

    def __call__(self, input: list[str]) -> list[list[float]]:
        raise NotImplementedError(
            "kb-ingest passes pre-computed embeddings; "
            "ChromaDB's built-in embedding should never be called."
        )

    @staticmethod
    def name() -> str:
        return "noop_precomputed"

    def get_config(self) -> dict[str, Any]:
        return {}

    @staticmethod
    def build_from_config(config: dict[str, Any]) -> _NoopEmbeddingFunction:
        return _NoopEmbeddingFunction()


class ChromaDBStore(IVectorStoreProvider):
    """Vector store provider backed by a ChromaDB collection (cosine space)."""

    def __init__(
        self,
        mode: ChromaMode = "persistent",
        persist_directory: str = "data/chromadb",
        host: str = "localhost",
        port: int = 8000,
        collection_name: str = "knowledge_base",
        client: Any = None,
    ) -> None:
        if mode not in ("persistent", "http"):
            raise ValueError(f"Unknown ChromaDB mode: {mode!r}")
        self._mode = mode
        self._persist_directory = persist_directory
        self._host = host
        self._port = port
        self._collection_name = collection_name
        self._client = client
        self._collection: Any = None

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def _build_client(self) -> Any:
        settings = chromadb.config.Settings(anonymized_telemetry=False)
        if self._mode == "http":
            return chromadb.HttpClient(host=self._host, port=self._port, settings=settings)
        return chromadb.PersistentClient(path=self._persist_directory, settings=settings)

    def _get_collection(self) -> Any:
        if self._collection is not None:
            return self._collection
        try:
            if self._client is None:
                self._client = self._build_client()
            try:
                self._collection = self._client.get_or_create_collection(
                    name=self._collection_name,
                    metadata={"hnsw:space": "cosine"},
                    embedding_function=_NoopEmbeddingFunction(),
                )
            except ValueError:
                # Collection persisted with a different embedding function.
                self._collection = self._client.get_or_create_collection(
                    name=self._collection_name,
                    metadata={"hnsw:space": "cosine"},
                )
        except Exception as exc:
            raise VectorStoreError(
                message=f"Could not open ChromaDB collection {self._collection_name!r}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        logger.info(
            "chromadb_collection_ready",
            mode=self._mode,
            collection=self._collection_name,
        )
        return self._collection

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _chunk_to_metadata(chunk: Chunk) -> dict[str, Any]:
        metadata = encode_metadata(chunk.metadata)
        if chunk.created_at:
            metadata[_CREATED_AT_FIELD] = chunk.created_at
        return metadata

    @staticmethod
    def _row_to_chunk(
        chunk_id: str,
        document: str | None,
        metadata: dict[str, Any] | None,
        embedding: Any = None,
    ) -> Chunk:
        decoded = decode_metadata(metadata)
        created_at = decoded.pop(_CREATED_AT_FIELD, None)
        return Chunk(
            id=chunk_id,
            text=document or "",
            metadata=decoded,
            embedding=None if embedding is None else [float(v) for v in embedding],
            created_at=created_at,
        )

    @classmethod
    def _rows_from_get(cls, result: dict[str, Any]) -> list[Chunk]:
        ids = result.get("ids") or []
        documents = result.get("documents")
        metadatas = result.get("metadatas")
        embeddings = result.get("embeddings")
        return [
            cls._row_to_chunk(
                chunk_id,
                documents[i] if documents is not None else None,
                metadatas[i] if metadatas is not None else None,
                embeddings[i] if embeddings is not None else None,
            )
            for i, chunk_id in enumerate(ids)
        ]

    def _get_matching(self, predicate: ChunkPredicate) -> list[Chunk]:
        """Fetch every chunk matching *predicate*, pushing it down when possible."""
        if isinstance(predicate, MetadataMatch):
            return self._paginate(where=predicate.to_where())
        return [chunk for chunk in self._paginate() if predicate(chunk)]

    def _paginate(self, where: dict[str, Any] | None = None) -> list[Chunk]:
        collection = self._get_collection()
        kwargs: dict[str, Any] = {"include": ["documents", "metadatas", "embeddings"]}
        if where:
            kwargs["where"] = where
        rows: list[Chunk] = []
        offset = 0
        while True:
            page = collection.get(**kwargs, limit=_PAGE_SIZE, offset=offset)
            batch = self._rows_from_get(page)
            rows.extend(batch)
            if len(batch) < _PAGE_SIZE:
                return rows
            offset += _PAGE_SIZE

    # ------------------------------------------------------------------
    # IVectorStoreProvider implementation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        self._get_collection()

    async def add_many(self, chunks: list[Chunk]) -> list[str]:
        if not chunks:
            return []
        if any(not chunk.embedding for chunk in chunks):
            raise ValueError("Every chunk needs an embedding before it is stored")

        created_at = datetime.now(timezone.utc).isoformat()
        prepared = [
            chunk.model_copy(
                update={"id": chunk.id or str(uuid.uuid4()), "created_at": created_at}
            )
            for chunk in chunks
        ]
        collection = self._get_collection()
        try:
            for start in range(0, len(prepared), _WRITE_BATCH_SIZE):
                batch = prepared[start : start + _WRITE_BATCH_SIZE]
                collection.upsert(
                    ids=[c.id for c in batch],
                    embeddings=[c.embedding for c in batch],
                    documents=[c.text for c in batch],
                    metadatas=[self._chunk_to_metadata(c) for c in batch],
                )
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB add_many failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("chromadb_add_many", count=len(prepared))
        return [c.id for c in prepared]

    async def list(self, limit: int = 50) -> list[Chunk]:
        if limit <= 0:
            return []
        try:
            rows = self._paginate()
        except VectorStoreError:
            raise
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB list failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        rows.sort(key=lambda c: c.created_at or "", reverse=True)
        return rows[:limit]

    async def list_all(self) -> list[Chunk]:
        try:
            return self._paginate()
        except VectorStoreError:
            raise
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB list_all failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    async def count(self) -> int:
        collection = self._get_collection()
        try:
            return collection.count()
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB count failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

    async def similarity_search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        predicate: ChunkPredicate | None = None,
    ) -> list[ScoredChunk]:
        if top_k <= 0:
            return []
        collection = self._get_collection()
        try:
            total = collection.count()
            if total == 0:
                return []

            where = predicate.to_where() if isinstance(predicate, MetadataMatch) else None
            post_filter = None if where is not None else predicate
            fetch_k = top_k * _OVERFETCH_FACTOR if post_filter else top_k

            kwargs: dict[str, Any] = {
                "query_embeddings": [query_embedding],
                "n_results": min(fetch_k, total),
                "include": ["documents", "metadatas", "distances", "embeddings"],
            }
            if where is not None:
                kwargs["where"] = where
            results = collection.query(**kwargs)
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB query failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        ids = results["ids"][0] if results.get("ids") else []
        documents = results["documents"][0] if results.get("documents") else [None] * len(ids)
        metadatas = results["metadatas"][0] if results.get("metadatas") else [None] * len(ids)
        distances = results["distances"][0] if results.get("distances") else [1.0] * len(ids)
        embeddings = results.get("embeddings")
        vectors = embeddings[0] if embeddings is not None else [None] * len(ids)

        hits: list[ScoredChunk] = []
        for i, chunk_id in enumerate(ids):
            chunk = self._row_to_chunk(chunk_id, documents[i], metadatas[i], vectors[i])
            if post_filter is not None and not post_filter(chunk):
                continue
            hits.append(ScoredChunk(chunk=chunk, score=1.0 - float(distances[i])))

        hits.sort(key=lambda hit: hit.score, reverse=True)
        logger.debug("chromadb_query", candidates=len(ids), results=min(len(hits), top_k))
        return hits[:top_k]

    async def remove_where(self, predicate: ChunkPredicate) -> int:
        try:
            ids = [chunk.id for chunk in self._get_matching(predicate)]
            if not ids:
                return 0
            collection = self._get_collection()
            for start in range(0, len(ids), _PAGE_SIZE):
                collection.delete(ids=ids[start : start + _PAGE_SIZE])
        except VectorStoreError:
            raise
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB remove_where failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("chromadb_remove_where", removed=len(ids), predicate=repr(predicate))
        return len(ids)

    async def update_where(self, predicate: ChunkPredicate, mutator: ChunkMutator) -> int:
        try:
            matches = self._get_matching(predicate)
            if not matches:
                return 0

            meta_only: list[Chunk] = []
            rewritten: list[Chunk] = []
            for chunk in matches:
                new = mutator(chunk)
                if new.text != chunk.text:
                    rewritten.append(
                        chunk.model_copy(
                            update={
                                "text": new.text,
                                "metadata": dict(new.metadata),
                                "embedding": new.embedding or chunk.embedding,
                            }
                        )
                    )
                else:
                    meta_only.append(chunk.model_copy(update={"metadata": dict(new.metadata)}))

            collection = self._get_collection()
            for start in range(0, len(meta_only), _WRITE_BATCH_SIZE):
                batch = meta_only[start : start + _WRITE_BATCH_SIZE]
                collection.update(
                    ids=[c.id for c in batch],
                    metadatas=[self._chunk_to_metadata(c) for c in batch],
                )
            for start in range(0, len(rewritten), _WRITE_BATCH_SIZE):
                batch = rewritten[start : start + _WRITE_BATCH_SIZE]
                collection.update(
                    ids=[c.id for c in batch],
                    documents=[c.text for c in batch],
                    embeddings=[c.embedding for c in batch],
                    metadatas=[self._chunk_to_metadata(c) for c in batch],
                )
        except VectorStoreError:
            raise
        except Exception as exc:
            raise VectorStoreError(
                message=f"ChromaDB update_where failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info(
            "chromadb_update_where",
            updated=len(matches),
            text_rewritten=len(rewritten),
            predicate=repr(predicate),
        )
        return len(matches)

    async def close(self) -> None:
        self._collection = None
        self._client = None

    def get_provider_name(self) -> str:
        return "chromadb"

    def is_available(self) -> bool:
        try:
            self._get_collection()
        except VectorStoreError:
            return False
        return True
