"""RAG services: vector store, CRM record flattening and the indexing pipeline."""

from .indexing import RAGIndexingPipeline, get_indexing_pipeline
from .vector_store import CollectionName, VectorStore, get_vector_store

__all__ = [
    "CollectionName",
    "RAGIndexingPipeline",
    "VectorStore",
    "get_indexing_pipeline",
    "get_vector_store",
]
