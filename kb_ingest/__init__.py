"""kb-ingest: document ingestion pipeline for a retrieval knowledge base."""

__version__ = "0.1.0"
