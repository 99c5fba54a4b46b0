"""Splitting and indexing pipeline."""

from kb_ingest.services.ingestion.ingestion_service import IngestionService, ReplaceToken
from kb_ingest.services.ingestion.semantic_splitter import SemanticSplitter

__all__ = ["IngestionService", "ReplaceToken", "SemanticSplitter"]
