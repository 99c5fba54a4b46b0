"""Abstract base class for the relational knowledge store.

The relational store is the system of record for knowledge documents; the
vector store only ever holds derived chunks keyed by ``knowledgeId``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from kb_ingest.models.knowledge import KnowledgeRecord, KnowledgeStatus


# Concrete implementation: SQLiteKnowledgeRepository (kb_ingest/providers/knowledge/)
class IKnowledgeRepository(ABC):
    """Contract for CRUD over knowledge records."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables and indices if they do not exist."""

    @abstractmethod
    async def insert(
        self,
        *,
        type: str,
        title: str,
        business: str = "",
        scene: str = "",
        content: str | None = None,
        file_url: str | None = None,
        file_size: int = 0,
        status: KnowledgeStatus = KnowledgeStatus.EFFECTIVE,
    ) -> KnowledgeRecord:
        """Insert a record and return it with its assigned ``knowledge_id``."""

    @abstractmethod
    async def get(self, knowledge_id: int) -> KnowledgeRecord | None:
        """Return the record or ``None``."""

    @abstractmethod
    async def get_by_title(self, title: str) -> KnowledgeRecord | None:
        """Return the most recent record with exactly this title, or ``None``."""

    @abstractmethod
    async def get_by_file_url(self, file_url: str) -> KnowledgeRecord | None:
        """Return the record backed by this stored file, or ``None``."""

    @abstractmethod
    async def update(self, knowledge_id: int, **fields: Any) -> KnowledgeRecord | None:
        """Update the given columns and bump ``updated_at``.

        Returns the updated record, or ``None`` if the id does not exist.

        Raises
        ------
        ValueError
            If a field name is not an updatable column.
        """

    @abstractmethod
    async def delete(self, knowledge_id: int) -> bool:
        """Delete the row.  Returns ``False`` if it did not exist."""

    @abstractmethod
    async def list_records(
        self,
        status: KnowledgeStatus | None = None,
        business: str | None = None,
        limit: int = 100,
    ) -> list[KnowledgeRecord]:
        """Return records, newest first, optionally filtered."""

    @abstractmethod
    async def count(self) -> int:
        """Return the number of records."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a human-readable identifier."""
