"""Indexing pipeline for one knowledge record.

Pipeline stages: **extract -> clean -> split -> embed -> store**.

Re-indexing uses a two-phase replace so old and new chunk generations
never coexist::

    token = await service.begin_replace(knowledge_id)    # remove old chunks
    chunks = ...                                          # extract/split/embed
    await service.commit_replace(token, chunks)           # add new chunks

Between the two phases the knowledge id has no chunks at all; a search
during that window simply misses the document.  A token is rejected with
:class:`ReplaceRaceError` if another ``begin_replace`` for the same id
started after it, so two overlapping replaces cannot both commit.

Embedding runs before anything is written, and a failed ``add_many`` is
followed by a cleanup of the id's chunks: a failed run leaves the id with
zero chunks, never a partial set.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog

from kb_ingest.interfaces.vector_store_provider import ChunkPredicate, by_knowledge_id
from kb_ingest.models.rag import Chunk, IngestionResult, ScoredChunk, TextSpan
from kb_ingest.services.extraction.text_extractor import TextExtractor, lines_from_text
from kb_ingest.services.ingestion.semantic_splitter import SemanticSplitter
from kb_ingest.utils.errors import ReplaceRaceError, VectorStoreError

if TYPE_CHECKING:
    from kb_ingest.interfaces.embedding_provider import IEmbeddingProvider
    from kb_ingest.interfaces.vector_store_provider import IVectorStoreProvider
    from kb_ingest.models.extraction import PositionedLine
    from kb_ingest.models.knowledge import KnowledgeRecord

logger = structlog.get_logger(logger_name=__name__)

# Bytes of upload per estimated chunk for queued submissions.
ESTIMATE_BYTES_PER_CHUNK = 512


@dataclass(frozen=True)
class ReplaceToken:
    """Handle returned by :meth:`IngestionService.begin_replace`."""

    knowledge_id: int
    generation: int
    removed: int


class IngestionService:
    """Coordinates extractor, splitter, embedding provider and vector store.

    All collaborators are injected; the vector store instance is shared with
    the rest of the process (see ``kb_ingest.main``).
    """

    def __init__(
        self,
        extractor: TextExtractor,
        splitter: SemanticSplitter,
        embedding_provider: IEmbeddingProvider,
        vector_store: IVectorStoreProvider,
    ) -> None:
        self._extractor = extractor
        self._splitter = splitter
        self._embedding_provider = embedding_provider
        self._vector_store = vector_store
        self._generations: dict[int, int] = {}

    # ------------------------------------------------------------------
    # Two-phase replace
    # ------------------------------------------------------------------

    async def begin_replace(self, knowledge_id: int) -> ReplaceToken:
        """Remove every chunk of *knowledge_id* and return a commit token."""
        generation = self._generations.get(knowledge_id, 0) + 1
        self._generations[knowledge_id] = generation
        removed = await self._vector_store.remove_where(by_knowledge_id(knowledge_id))
        logger.info(
            "replace_begun",
            knowledge_id=knowledge_id,
            generation=generation,
            removed=removed,
        )
        return ReplaceToken(knowledge_id=knowledge_id, generation=generation, removed=removed)

    async def commit_replace(self, token: ReplaceToken, chunks: list[Chunk]) -> list[str]:
        """Store the new generation of chunks for ``token.knowledge_id``.

        Raises:
            ReplaceRaceError: A newer replace for the same id has begun.
            VectorStoreError: The write failed; the id's chunks were cleared.
        """
        current = self._generations.get(token.knowledge_id)
        if current != token.generation:
            raise ReplaceRaceError(
                message=(
                    f"Replace of knowledge {token.knowledge_id} generation {token.generation} "
                    f"superseded by generation {current}"
                )
            )
        try:
            ids = await self._vector_store.add_many(chunks)
        except VectorStoreError:
            await self._clear_after_failure(token.knowledge_id)
            raise
        logger.info(
            "replace_committed",
            knowledge_id=token.knowledge_id,
            generation=token.generation,
            added=len(ids),
        )
        return ids

    async def _clear_after_failure(self, knowledge_id: int) -> None:
        try:
            removed = await self._vector_store.remove_where(by_knowledge_id(knowledge_id))
        except VectorStoreError as exc:
            logger.error(
                "partial_index_cleanup_failed",
                knowledge_id=knowledge_id,
                error=str(exc),
            )
            return
        logger.warning("partial_index_removed", knowledge_id=knowledge_id, removed=removed)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    async def index_file(
        self,
        record: KnowledgeRecord,
        file_path: str | Path,
        format_hint: str | None = None,
        original_name: str = "",
    ) -> IngestionResult:
        """(Re)index a stored file for *record*, replacing any previous chunks."""
        start = time.perf_counter()
        token = await self.begin_replace(record.knowledge_id)

        lines = await self._extractor.extract_with_position(file_path, format_hint)
        name = original_name or Path(file_path).name
        extra = {"filename": name, "storagePath": str(file_path)}
        chunks = await self._build_chunks(record, lines, extra, placeholder_name=name)

        await self.commit_replace(token, chunks)
        return self._result(record, token, chunks, lines, start)

    async def index_text(self, record: KnowledgeRecord, text: str) -> IngestionResult:
        """(Re)index free text (json/text knowledge) for *record*."""
        start = time.perf_counter()
        token = await self.begin_replace(record.knowledge_id)

        lines = lines_from_text(text)
        chunks = await self._build_chunks(record, lines, {}, placeholder_name=record.title)

        await self.commit_replace(token, chunks)
        return self._result(record, token, chunks, lines, start)

    def estimate_chunk_count(self, file_path: str | Path) -> int:
        """Rough chunk count for a queued upload, from its size on disk.

        Nothing is extracted, so a scanned PDF is never OCR-ed on the upload
        path.  ``0`` when the file cannot be read.
        """
        try:
            size = Path(file_path).stat().st_size
        except OSError as exc:
            logger.warning("chunk_estimate_failed", path=str(file_path), error=str(exc))
            return 0
        return max(1, size // ESTIMATE_BYTES_PER_CHUNK)

    def estimate_text_chunk_count(self, text: str) -> int:
        return self._splitter.estimate_chunk_count(text)

    async def search(
        self,
        query: str,
        top_k: int = 5,
        predicate: ChunkPredicate | None = None,
    ) -> list[ScoredChunk]:
        """Embed *query* and return the closest chunks."""
        embedding = await self._embedding_provider.embed_single(query)
        return await self._vector_store.similarity_search(embedding, top_k=top_k, predicate=predicate)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _build_chunks(
        self,
        record: KnowledgeRecord,
        lines: list[PositionedLine],
        extra_metadata: dict[str, Any],
        placeholder_name: str,
    ) -> list[Chunk]:
        spans = self._splitter.split(lines)
        placeholder = not spans
        if placeholder:
            text = f"[File: {placeholder_name}]" if placeholder_name else "[Empty document]"
            spans = [TextSpan(text=text, start_offset=0, end_offset=0)]
            logger.warning("empty_document_placeholder", knowledge_id=record.knowledge_id)

        embeddings = await self._embedding_provider.embed([span.text for span in spans])

        base = {**record.chunk_metadata(), **extra_metadata}
        if placeholder:
            base["placeholder"] = True
        return [
            Chunk(
                text=span.text,
                embedding=embedding,
                metadata={
                    **base,
                    "page": span.page,
                    "line": span.line,
                    "endPage": span.end_page,
                    "endLine": span.end_line,
                    "chunkIndex": index,
                    "totalChunks": len(spans),
                },
            )
            for index, (span, embedding) in enumerate(zip(spans, embeddings, strict=True))
        ]

    @staticmethod
    def _result(
        record: KnowledgeRecord,
        token: ReplaceToken,
        chunks: list[Chunk],
        lines: list[PositionedLine],
        start: float,
    ) -> IngestionResult:
        result = IngestionResult(
            knowledge_id=record.knowledge_id,
            title=record.title,
            chunks_created=len(chunks),
            chunks_removed=token.removed,
            line_count=sum(1 for line in lines if line.text),
            page_count=max((line.page for line in lines), default=0),
            placeholder=bool(chunks and chunks[0].metadata.get("placeholder")),
            ingestion_time_seconds=round(time.perf_counter() - start, 3),
        )
        logger.info(
            "ingestion_complete",
            knowledge_id=record.knowledge_id,
            title=record.title,
            chunks=result.chunks_created,
            removed=result.chunks_removed,
            placeholder=result.placeholder,
            time_s=result.ingestion_time_seconds,
        )
        return result
