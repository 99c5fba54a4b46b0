"""Abstract base class for vector-store providers.

Two backends implement this contract:

* ``FileBackedStore`` -- every record in one JSON file, brute-force cosine
  search.  Good for development and small deployments.
* ``ChromaDBStore`` -- an external ANN index (embedded on-disk client or a
  remote server).

Predicates are plain callables ``Chunk -> bool``.  :class:`MetadataMatch`
is a predicate that also describes itself as an equality ``where`` clause,
which backends with native filtering can push down instead of scanning.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from kb_ingest.models.rag import Chunk, ScoredChunk

ChunkPredicate = Callable[[Chunk], bool]
ChunkMutator = Callable[[Chunk], Chunk]


class MetadataMatch:
    """Predicate matching chunks whose metadata equals every given field.

    >>> match = MetadataMatch(knowledgeId="42")
    >>> match(Chunk(text="x", metadata={"knowledgeId": "42"}))
    True
    """

    def __init__(self, **fields: Any) -> None:
        if not fields:
            raise ValueError("MetadataMatch needs at least one field")
        self._fields = fields

    @property
    def fields(self) -> dict[str, Any]:
        return dict(self._fields)

    def __call__(self, chunk: Chunk) -> bool:
        return all(chunk.metadata.get(key) == value for key, value in self._fields.items())

    def to_where(self) -> dict[str, Any]:
        """Render as a Chroma-style ``where`` clause."""
        clauses = [{key: {"$eq": value}} for key, value in self._fields.items()]
        return clauses[0] if len(clauses) == 1 else {"$and": clauses}

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={v!r}" for k, v in self._fields.items())
        return f"MetadataMatch({inner})"


def by_knowledge_id(knowledge_id: int | str) -> MetadataMatch:
    """Predicate for every chunk of one knowledge record."""
    return MetadataMatch(knowledgeId=str(knowledge_id))


def by_file_url(file_url: str) -> MetadataMatch:
    """Predicate for every chunk indexed from one stored file."""
    return MetadataMatch(fileUrl=file_url)


# Concrete implementations: FileBackedStore, ChromaDBStore
# Located in: kb_ingest/providers/vector_store/
class IVectorStoreProvider(ABC):
    """Contract for chunk storage and similarity search.

    All methods are async so network-backed stores do not block the event
    loop.  Every mutation is persisted before the coroutine returns.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Open files or connections.  Idempotent."""

    @abstractmethod
    async def add_many(self, chunks: list[Chunk]) -> list[str]:
        """Persist *chunks*, each carrying its embedding.

        Parameters
        ----------
        chunks:
            Chunks to store.  Empty ``id`` values are replaced with fresh
            UUIDs; ``created_at`` is stamped with the current time.

        Returns
        -------
        list[str]
            Ids of the stored chunks, in input order.

        Raises
        ------
        ValueError
            If a chunk has no embedding.
        kb_ingest.utils.errors.VectorStoreError
            If the backend write fails.
        """

    @abstractmethod
    async def list(self, limit: int = 50) -> list[Chunk]:
        """Return up to *limit* of the most recently stored chunks, newest first."""

    @abstractmethod
    async def list_all(self) -> list[Chunk]:
        """Return every stored chunk."""

    @abstractmethod
    async def count(self) -> int:
        """Return the number of stored chunks."""

    @abstractmethod
    async def similarity_search(
        self,
        query_embedding: list[float],
        top_k: int = 5,
        predicate: ChunkPredicate | None = None,
    ) -> list[ScoredChunk]:
        """Return the *top_k* chunks closest to *query_embedding*.

        Parameters
        ----------
        query_embedding:
            Vector produced by the same embedding provider used at ingest.
        top_k:
            Maximum number of hits.
        predicate:
            Optional filter.  :class:`MetadataMatch` may be pushed down to
            the backend; any other callable is applied to candidates.

        Returns
        -------
        list[ScoredChunk]
            Hits sorted by score, descending.
        """

    @abstractmethod
    async def remove_where(self, predicate: ChunkPredicate) -> int:
        """Delete every chunk matching *predicate*.

        Returns
        -------
        int
            Number of chunks deleted.  ``0`` means nothing matched and
            nothing was written.
        """

    @abstractmethod
    async def update_where(self, predicate: ChunkPredicate, mutator: ChunkMutator) -> int:
        """Rewrite every chunk matching *predicate* with ``mutator(chunk)``.

        Metadata is always rewritten.  The stored text (together with the
        returned chunk's embedding) is rewritten only when the mutator
        changed it.

        Returns
        -------
        int
            Number of chunks updated.
        """

    @abstractmethod
    async def close(self) -> None:
        """Release files or connections."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier, e.g. ``"chromadb"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the backend can be used."""
