"""Chunk, splitter and ingestion models for the knowledge base.

Pipeline overview::

    file ─► PositionedLine[] ─► TextSpan[] ─► Chunk[] (with embeddings) ─► vector store

``TextSpan`` is what the semantic splitter produces (text plus the
page/line span it covers).  The ingestion service turns each span into a
:class:`Chunk` by attaching record metadata, the position span and an
embedding.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Splitter models
# ---------------------------------------------------------------------------
class SplitterConfig(BaseModel):
    """Character-based size limits for the semantic splitter."""

    model_config = ConfigDict(frozen=True)

    target_chunk_size: int = Field(default=800, gt=0)
    chunk_overlap: int = Field(default=160, ge=0)
    min_chunk_size: int = Field(default=200, ge=0)
    max_chunk_size: int = Field(default=1500, gt=0)

    @model_validator(mode="after")
    def _check_bounds(self) -> SplitterConfig:
        if self.min_chunk_size >= self.max_chunk_size:
            raise ValueError("min_chunk_size must be smaller than max_chunk_size")
        if self.target_chunk_size > self.max_chunk_size:
            raise ValueError("target_chunk_size must not exceed max_chunk_size")
        if self.chunk_overlap >= self.target_chunk_size:
            raise ValueError("chunk_overlap must be smaller than target_chunk_size")
        return self


class TextSpan(BaseModel):
    """A chunk of joined document text and the source lines it covers.

    Offsets index into the newline-joined blob of all extracted lines;
    ``page``/``line`` locate the first character and
    ``end_page``/``end_line`` the last.
    """

    model_config = ConfigDict(frozen=True)

    text: str
    start_offset: int = Field(ge=0)
    end_offset: int = Field(ge=0)
    page: int = Field(default=1, ge=1)
    line: int = Field(default=1, ge=1)
    end_page: int = Field(default=1, ge=1)
    end_line: int = Field(default=1, ge=1)

    @property
    def size(self) -> int:
        return len(self.text)


# ---------------------------------------------------------------------------
# Chunk - the unit persisted in the vector store.
# ---------------------------------------------------------------------------
class Chunk(BaseModel):
    """A span of text, its embedding and provenance metadata.

    ``metadata`` values may be scalars, lists or dicts; vector backends that
    only accept scalars encode the rest at their boundary.  The
    ``knowledgeId`` key joins the chunk to its relational record.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default="", description="Store id; assigned on add when empty.")
    text: str = Field(description="The chunk's textual content.")
    metadata: dict[str, Any] = Field(default_factory=dict)
    embedding: list[float] | None = Field(default=None, description="Embedding vector.")
    created_at: str | None = Field(default=None, description="ISO-8601 time the chunk was stored.")

    @property
    def knowledge_id(self) -> str | None:
        value = self.metadata.get("knowledgeId")
        return None if value is None else str(value)

    def with_metadata(self, **updates: Any) -> Chunk:
        """Return a copy with *updates* merged into the metadata."""
        return self.model_copy(update={"metadata": {**self.metadata, **updates}})


class ScoredChunk(BaseModel):
    """A similarity-search hit."""

    model_config = ConfigDict(frozen=True)

    chunk: Chunk
    score: float = Field(description="Similarity score; higher is closer.")


# ---------------------------------------------------------------------------
# Ingestion results
# ---------------------------------------------------------------------------
class IngestionResult(BaseModel):
    """Summary of one indexing run for a knowledge record."""

    model_config = ConfigDict(frozen=True)

    knowledge_id: int
    title: str
    chunks_created: int = Field(ge=0)
    chunks_removed: int = Field(default=0, ge=0)
    line_count: int = Field(default=0, ge=0)
    page_count: int = Field(default=0, ge=0)
    placeholder: bool = Field(default=False, description="True when the document had no text.")
    ingestion_time_seconds: float = Field(default=0.0, ge=0.0)

