"""Abstract provider interfaces (adapter pattern) for kb-ingest."""

from kb_ingest.interfaces.embedding_provider import IEmbeddingProvider
from kb_ingest.interfaces.knowledge_repository import IKnowledgeRepository
from kb_ingest.interfaces.ocr_provider import IOCRProvider
from kb_ingest.interfaces.vector_store_provider import (
    ChunkMutator,
    ChunkPredicate,
    IVectorStoreProvider,
    MetadataMatch,
    by_file_url,
    by_knowledge_id,
)

__all__ = [
    "ChunkMutator",
    "ChunkPredicate",
    "IEmbeddingProvider",
    "IKnowledgeRepository",
    "IOCRProvider",
    "IVectorStoreProvider",
    "MetadataMatch",
    "by_file_url",
    "by_knowledge_id",
]
