"""
Retrieval subsystem: chunking, embeddings, vector store, context retrieval
and suggestion generation.
"""

from __future__ import annotations

from notechain_rag.rag.engine import RAGEngine, RAGMetrics, build_rag_engine
from notechain_rag.rag.retriever import ContextRetriever
from notechain_rag.rag.suggestions import SuggestionEngine
from notechain_rag.rag.vector_store import (
    DimensionMismatchError,
    NotInitializedError,
    VectorStore,
    VectorStoreError,
)

__all__ = [
    "ContextRetriever",
    "DimensionMismatchError",
    "NotInitializedError",
    "RAGEngine",
    "RAGMetrics",
    "SuggestionEngine",
    "VectorStore",
    "VectorStoreError",
    "build_rag_engine",
]
