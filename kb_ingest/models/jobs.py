"""Job envelope and payload models for the async ingestion queue.

Wire format is a JSON object ``{"type": <JobType value>, "payload": {...}}``.
Each job type has a payload model; :meth:`Job.parse_payload` validates the
raw payload against it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from kb_ingest.utils.errors import JobPayloadError


class JobType(str, Enum):
    DOCUMENT_INGEST = "document-ingest"
    BATCH_INGEST = "batch-ingest"
    TEXT_INGEST = "text-ingest"
    DELETE_BY_PATH = "delete-by-path"
    DELETE_BY_PATHS = "delete-by-paths"
    EXPIRE_TOGGLE_BY_PATH = "expire-toggle-by-path"
    EXPIRE_TOGGLE_BY_PATHS = "expire-toggle-by-paths"


class DocumentIngestPayload(BaseModel):
    """Index (or re-index) one stored file for an existing record."""

    model_config = ConfigDict(frozen=True)

    knowledge_id: int
    file_path: str
    original_name: str = ""
    is_update: bool = False


class BatchIngestPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[DocumentIngestPayload] = Field(min_length=1)


class TextIngestPayload(BaseModel):
    """Index free text for an existing json/text record."""

    model_config = ConfigDict(frozen=True)

    knowledge_id: int
    text: str
    is_update: bool = False


class PathPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    storage_path: str


class PathsPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    storage_paths: list[str] = Field(min_length=1)


class ExpireTogglePayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    storage_path: str
    expired: bool = True


class ExpireTogglePathsPayload(BaseModel):
    model_config = ConfigDict(frozen=True)

    storage_paths: list[str] = Field(min_length=1)
    expired: bool = True


_PAYLOAD_MODELS: dict[JobType, type[BaseModel]] = {
    JobType.DOCUMENT_INGEST: DocumentIngestPayload,
    JobType.BATCH_INGEST: BatchIngestPayload,
    JobType.TEXT_INGEST: TextIngestPayload,
    JobType.DELETE_BY_PATH: PathPayload,
    JobType.DELETE_BY_PATHS: PathsPayload,
    JobType.EXPIRE_TOGGLE_BY_PATH: ExpireTogglePayload,
    JobType.EXPIRE_TOGGLE_BY_PATHS: ExpireTogglePathsPayload,
}


class Job(BaseModel):
    """The queue envelope."""

    model_config = ConfigDict(frozen=True)

    type: JobType
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def create(cls, job_type: JobType, payload: BaseModel) -> Job:
        """Build an envelope from a typed payload model."""
        return cls(type=job_type, payload=payload.model_dump(mode="json"))

    @classmethod
    def from_wire(cls, raw: str | bytes) -> Job:
        """Decode a JSON message body.

        Raises:
            JobPayloadError: If the body is not a valid envelope.
        """
        try:
            return cls.model_validate_json(raw)
        except ValidationError as exc:
            raise JobPayloadError(message=f"Invalid job envelope: {exc}") from exc

    def to_wire(self) -> str:
        return self.model_dump_json()

    def parse_payload(self) -> BaseModel:
        """Validate ``payload`` against the model for this job type.

        Raises:
            JobPayloadError: If the payload does not match.
        """
        try:
            return _PAYLOAD_MODELS[self.type].model_validate(self.payload)
        except ValidationError as exc:
            raise JobPayloadError(
                message=f"Invalid payload for {self.type.value} job: {exc}"
            ) from exc
