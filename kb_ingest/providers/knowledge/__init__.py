"""Relational knowledge store adapters."""

from kb_ingest.providers.knowledge.sqlite_knowledge_repository import SQLiteKnowledgeRepository

__all__ = ["SQLiteKnowledgeRepository"]
