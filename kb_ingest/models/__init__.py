"""Pydantic data models for kb-ingest."""

from kb_ingest.models.extraction import PositionedLine, placeholder_lines
from kb_ingest.models.jobs import Job, JobType
from kb_ingest.models.knowledge import (
    DuplicatePolicy,
    KnowledgeRecord,
    KnowledgeStatus,
    SubmissionReceipt,
    UploadedFile,
)
from kb_ingest.models.rag import (
    Chunk,
    IngestionResult,
    ScoredChunk,
    SplitterConfig,
    TextSpan,
)

__all__ = [
    "Chunk",
    "DuplicatePolicy",
    "IngestionResult",
    "Job",
    "JobType",
    "KnowledgeRecord",
    "KnowledgeStatus",
    "PositionedLine",
    "ScoredChunk",
    "SplitterConfig",
    "SubmissionReceipt",
    "TextSpan",
    "UploadedFile",
    "placeholder_lines",
]
