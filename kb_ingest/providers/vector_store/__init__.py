"""Vector store backends."""

from kb_ingest.providers.vector_store.chromadb_provider import ChromaDBStore
from kb_ingest.providers.vector_store.file_store import FileBackedStore

__all__ = ["ChromaDBStore", "FileBackedStore"]
