"""Redis-backed job queue: publisher, consumer and job handlers."""

from kb_ingest.jobs.consumer import JobConsumer
from kb_ingest.jobs.handlers import JobHandlers
from kb_ingest.jobs.publisher import JobPublisher

__all__ = ["JobConsumer", "JobHandlers", "JobPublisher"]
