"""Relational knowledge record models.

One :class:`KnowledgeRecord` exists per logical document.  Its
``knowledge_id`` (stringified) is the ``knowledgeId`` join key stamped on
every chunk in the vector store.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class KnowledgeStatus(str, Enum):
    """Lifecycle status of a knowledge record."""

    EFFECTIVE = "effective"
    EXPIRED = "expired"


class DuplicatePolicy(str, Enum):
    """What to do when an upload's title matches an existing record."""

    CONFLICT = "conflict"  # raise DuplicateTitleError
    REPLACE = "replace"  # convert the create into an update of the existing record


# Type tag for knowledge created from a JSON / free-text body rather than a file.
JSON_KNOWLEDGE_TYPE = "json"


class KnowledgeRecord(BaseModel):
    """A row of the ``knowledge`` table."""

    model_config = ConfigDict(frozen=True)

    knowledge_id: int = Field(description="Stable primary key.")
    type: str = Field(description='Format tag ("pdf", "docx", "xlsx", "md", "txt") or "json".')
    title: str = Field(description="Display title; used for same-title detection.")
    business: str = Field(default="", description="Business line the document belongs to.")
    scene: str = Field(default="", description="Usage scene within the business line.")
    content: str | None = Field(default=None, description="Body of json/text knowledge.")
    status: KnowledgeStatus = Field(default=KnowledgeStatus.EFFECTIVE)
    file_url: str | None = Field(default=None, description="Storage path of the backing file.")
    file_size: int = Field(default=0, ge=0, description="Size of the backing file in bytes.")
    refer_num: int = Field(default=0, ge=0, description="How often retrieval cited this record.")
    created_at: str | None = Field(default=None, description="ISO-8601 creation timestamp.")
    updated_at: str | None = Field(default=None, description="ISO-8601 last-update timestamp.")

    @property
    def is_active(self) -> bool:
        return self.status is KnowledgeStatus.EFFECTIVE

    def chunk_metadata(self) -> dict[str, Any]:
        """Metadata every chunk of this record carries, besides its position."""
        return {
            "knowledgeId": str(self.knowledge_id),
            "sourceType": self.type,
            "title": self.title,
            "business": self.business,
            "scene": self.scene,
            "status": self.status.value,
            "isActive": self.is_active,
            "fileUrl": self.file_url or "",
        }


class UploadedFile(BaseModel):
    """A file handed to the orchestrator by an upload endpoint or the CLI.

    ``temp_path`` is owned by the caller until the orchestrator moves it
    into the uploads root.
    """

    model_config = ConfigDict(frozen=True)

    temp_path: str
    original_name: str
    size: int = Field(default=0, ge=0)


class SubmissionReceipt(BaseModel):
    """Returned when a file upload is queued for background indexing."""

    model_config = ConfigDict(frozen=True)

    knowledge_id: int
    title: str
    queued: bool = True
    is_update: bool = False
    estimated_chunks: int = Field(default=0, ge=0)
