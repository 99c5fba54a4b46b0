"""JSON-file vector store.

Every chunk lives in one JSON array on disk.  Each mutation rewrites the
whole file (temp file + ``os.replace``), so a crash mid-write leaves the
previous version intact.  Similarity search is brute-force cosine over a
numpy matrix, which is fine up to a few tens of thousands of chunks.
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path

import numpy as np
import structlog
from pydantic import ValidationError

from kb_ingest.interfaces.vector_store_provider import (
    ChunkMutator,
    ChunkPredicate,
    IVectorStoreProvider,
)
from kb_ingest.models.rag import Chunk, ScoredChunk
from kb_ingest.utils.errors import VectorStoreError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_PATH = Path("data/vector_store.json")

# Guards the cosine denominator against zero-norm vectors.
_EPSILON = 1e-10


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class FileBackedStore(IVectorStoreProvider):
    """Vector store persisted as a single JSON document."""

    def __init__(self, file_path: str | Path = _DEFAULT_PATH) -> None:
        self._path = Path(file_path)
        self._records: list[Chunk] | None = None
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load(self) -> list[Chunk]:
        if self._records is not None:
            return self._records

        records: list[Chunk] = []
        if self._path.exists():
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                records = [Chunk.model_validate(item) for item in raw]
            except (json.JSONDecodeError, ValidationError, TypeError) as exc:
                logger.warning(
                    "file_store_corrupt_starting_empty",
                    path=str(self._path),
                    error=str(exc),
                )
                records = []
        self._records = records
        logger.info("file_store_loaded", path=str(self._path), count=len(records))
        return records

    def _persist(self, records: list[Chunk]) -> None:
        payload = [record.model_dump(mode="json") for record in records]
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=self._path.name, suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise VectorStoreError(
                message=f"Could not write {self._path}: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc
        self._records = records

    # ------------------------------------------------------------------
    # IVectorStoreProvider implementation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        self._load()

    async def add_many(self, chunks: list[Chunk]) -> list[str]:
        if not chunks:
            return []
        if any(not chunk.embedding for chunk in chunks):
            raise ValueError("Every chunk needs an embedding before it is stored")

        created_at = _now_iso()
        prepared = [
            chunk.model_copy(
                update={"id": chunk.id or str(uuid.uuid4()), "created_at": created_at}
            )
            for chunk in chunks
        ]
        async with self._lock:
            records = self._load()
            self._persist([*records, *prepared])

        logger.info("file_store_add_many", count=len(prepared))
        return [chunk.id for chunk in prepared]

    async def list(self, limit: int = 50) -> list[Chunk]:
        records = self._load()
        if limit <= 0:
            return []
        return list(reversed(records[-limit:]))

    async def list_all(self) -> list[Chunk]:
        return list(self._load())

    async def count(self) -> int:
        return len(self._load())

    async def similarity_search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        predicate: ChunkPredicate | None = None,
    ) -> list[ScoredChunk]:
        candidates = [
            chunk
            for chunk in self._load()
            if chunk.embedding and (predicate is None or predicate(chunk))
        ]
        if not candidates or top_k <= 0:
            return []

        query = np.asarray(query_embedding, dtype=np.float64)
        same_dim = [c for c in candidates if len(c.embedding) == query.shape[0]]
        if len(same_dim) != len(candidates):
            logger.warning(
                "file_store_dimension_mismatch",
                skipped=len(candidates) - len(same_dim),
                query_dim=int(query.shape[0]),
            )
        if not same_dim:
            return []

        matrix = np.asarray([c.embedding for c in same_dim], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        scores = (matrix @ query) / (norms + _EPSILON)

        order = np.argsort(-scores, kind="stable")[:top_k]
        return [ScoredChunk(chunk=same_dim[i], score=float(scores[i])) for i in order]

    async def remove_where(self, predicate: ChunkPredicate) -> int:
        async with self._lock:
            records = self._load()
            kept = [chunk for chunk in records if not predicate(chunk)]
            removed = len(records) - len(kept)
            if removed == 0:
                return 0
            self._persist(kept)

        logger.info("file_store_remove_where", removed=removed, predicate=repr(predicate))
        return removed

    async def update_where(self, predicate: ChunkPredicate, mutator: ChunkMutator) -> int:
        async with self._lock:
            records = self._load()
            updated: list[Chunk] = []
            changed = 0
            for chunk in records:
                if not predicate(chunk):
                    updated.append(chunk)
                    continue
                new = mutator(chunk)
                fields: dict = {"metadata": dict(new.metadata)}
                if new.text != chunk.text:
                    fields["text"] = new.text
                    fields["embedding"] = new.embedding or chunk.embedding
                updated.append(chunk.model_copy(update=fields))
                changed += 1
            if changed == 0:
                return 0
            self._persist(updated)

        logger.info("file_store_update_where", updated=changed, predicate=repr(predicate))
        return changed

    async def close(self) -> None:
        self._records = None

    def get_provider_name(self) -> str:
        return "file_store"

    def is_available(self) -> bool:
        return True
