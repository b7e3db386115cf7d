"""
Shared test fixtures and pytest configuration.

Markers:
    @pytest.mark.integration  : Requires real local services or model downloads
    @pytest.mark.embedding    : Requires sentence-transformers model downloadable
    @pytest.mark.ollama       : Requires a running Ollama server with the default model

Run stringent tests:
    pytest -m integration             # all integration tests
    pytest -m embedding               # only embedding model tests
    pytest -m "not integration"       # skip all integration tests (fast CI)
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

import httpx
import pytest
import pytest_asyncio

from notechain_rag.config import VectorStoreConfig
from notechain_rag.models import (
    DecryptedContent,
    EntityType,
    IndexableEntity,
    TodoPriority,
    VectorMetadata,
    VectorRecord,
)
from notechain_rag.rag.embedding_provider import MockEmbeddingProvider
from notechain_rag.rag.kv_store import InMemoryKeyValueStore
from notechain_rag.rag.vector_store import VectorStore


def _embedding_model_available() -> bool:
    """Check if all-MiniLM-L6-v2 can be loaded (already cached or downloadable)."""
    try:
        from sentence_transformers import SentenceTransformer

        model = SentenceTransformer("all-MiniLM-L6-v2")
        vec = model.encode(["test"])
        return vec.shape[1] == 384
    except Exception:
        return False


def _ollama_available() -> bool:
    try:
        return httpx.get("http://localhost:11434/api/tags", timeout=2.0).status_code == 200
    except httpx.HTTPError:
        return False


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: requires local services or model downloads")
    config.addinivalue_line("markers", "embedding: requires sentence-transformers model available")
    config.addinivalue_line("markers", "ollama: requires a running Ollama server")


def pytest_collection_modifyitems(config, items):
    """Auto-skip tests whose infrastructure requirements are not met."""
    wants_embedding = any("embedding" in item.keywords for item in items)
    wants_ollama = any("ollama" in item.keywords for item in items)
    embedding_ok = _embedding_model_available() if wants_embedding else False
    ollama_ok = _ollama_available() if wants_ollama else False

    skip_embedding = pytest.mark.skip(reason="Embedding model not available (all-MiniLM-L6-v2)")
    skip_ollama = pytest.mark.skip(reason="Ollama not reachable at localhost:11434")

    for item in items:
        if "embedding" in item.keywords and not embedding_ok:
            item.add_marker(skip_embedding)
        if "ollama" in item.keywords and not ollama_ok:
            item.add_marker(skip_ollama)


# ── Test doubles ─────────────────────────────────────────────────────────────


class StaticEmbeddingProvider(MockEmbeddingProvider):
    """Returns fixed vectors for known texts; other texts fall back to hashed bag-of-words."""

    def __init__(self, vectors: Dict[str, Sequence[float]], dim: int = 3) -> None:
        super().__init__(dim=dim)
        self._vectors = {k: list(v) for k, v in vectors.items()}

    def _text_to_vec(self, text: str) -> List[float]:
        if text in self._vectors:
            return list(self._vectors[text])
        return super()._text_to_vec(text)


def make_record(
    entity_id: str,
    embedding: Sequence[float],
    chunk_index: int = 0,
    entity_type: str = EntityType.NOTE.value,
    content: Optional[str] = None,
    indexed_at: Optional[datetime] = None,
    **metadata,
) -> VectorRecord:
    meta = VectorMetadata(
        owner_id="user-1",
        modified_at=metadata.pop("modified_at", "2026-01-01T00:00:00+00:00"),
        title=metadata.pop("title", entity_id),
        **metadata,
    )
    record = VectorRecord(
        id=VectorRecord.make_id(entity_id, chunk_index),
        entity_type=entity_type,
        entity_id=entity_id,
        embedding=list(embedding),
        content_hash=f"hash-{entity_id}-{chunk_index}",
        metadata=meta,
        chunk_index=chunk_index,
        content=content if content is not None else f"content of {entity_id}",
    )
    if indexed_at is not None:
        record.indexed_at = indexed_at
    return record


def make_note(note_id: str, title: str, content: str, tags: Optional[List[str]] = None) -> IndexableEntity:
    return IndexableEntity(
        id=note_id,
        owner_id="user-1",
        type=EntityType.NOTE,
        updated_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        decrypted_content=DecryptedContent(title=title, content=content, tags=tags or []),
    )


def make_todo(
    todo_id: str,
    title: str,
    description: str = "",
    priority: TodoPriority = TodoPriority.MEDIUM,
    due_date: Optional[datetime] = None,
) -> IndexableEntity:
    return IndexableEntity(
        id=todo_id,
        owner_id="user-1",
        type=EntityType.TODO,
        updated_at=datetime(2026, 3, 1, tzinfo=timezone.utc),
        decrypted_content=DecryptedContent(title=title, description=description),
        priority=priority,
        due_date=due_date,
    )


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest_asyncio.fixture
async def store3(kv):
    """Initialized 3-dimensional cosine store over an in-memory mirror."""
    store = VectorStore(VectorStoreConfig(dimensions=3), kv_store=kv)
    await store.initialize()
    yield store
    await store.flush()
