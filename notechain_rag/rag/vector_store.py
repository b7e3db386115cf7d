"""
In-memory vector index with a best-effort durable mirror.

Brute-force similarity search sized for one user's corpus (thousands of
chunks). The in-memory dict is authoritative for queries; every write is
mirrored to a KeyValueStore in a background task. Persistence failures are
logged and switch the store to memory-only mode for the rest of the session.

Chunk text (``VectorRecord.content``) is never written to the mirror.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from enum import Enum
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from notechain_rag.config import ChunkConfig, SearchOptions, VectorStoreConfig
from notechain_rag.models import (
    ContentChunk,
    EmbeddingCacheEntry,
    StoreStats,
    VectorRecord,
    VectorSearchResult,
    parse_timestamp,
)
from notechain_rag.rag.chunking import chunk_text
from notechain_rag.rag.kv_store import KeyValueStore, PersistenceError

LOG = logging.getLogger("rag.vector_store")

UPSERT_BATCH_SIZE = 100
BYTES_PER_FLOAT = 4


class VectorStoreError(Exception):
    """Base class for vector store misuse."""

    pass


class DimensionMismatchError(VectorStoreError, ValueError):
    """Raised when a vector's length differs from the store's dimensions."""

    pass


class NotInitializedError(VectorStoreError, RuntimeError):
    """Raised when a component is used before ``initialize()``."""

    pass


def normalize(vector: np.ndarray) -> np.ndarray:
    """Scale to unit length. Zero vectors are returned unchanged."""
    norm = np.linalg.norm(vector)
    if norm == 0:
        return vector
    return vector / norm


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between ``a`` and ``b``; 0.0 if either is a zero vector."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatchError(f"Vectors must have same dimensions: {va.shape} vs {vb.shape}")
    na = np.linalg.norm(va)
    nb = np.linalg.norm(vb)
    if na == 0 or nb == 0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class VectorStore:
    """
    Per-user vector index with chunking, an embedding cache and FIFO eviction.

    Usage::

        store = VectorStore(VectorStoreConfig(dimensions=384), kv_store=sqlite_kv)
        await store.initialize()
        await store.upsert(record)
        hits = store.search(query_vec, SearchOptions(top_k=5))
    """

    def __init__(
        self,
        config: Optional[VectorStoreConfig] = None,
        kv_store: Optional[KeyValueStore] = None,
    ) -> None:
        self._config = config or VectorStoreConfig()
        self._kv = kv_store
        self._records_kv: Optional[KeyValueStore] = None
        self._cache_kv: Optional[KeyValueStore] = None
        self._vectors: Dict[str, VectorRecord] = {}
        self._cache: Dict[str, EmbeddingCacheEntry] = {}
        self._pending: Set[asyncio.Task] = set()
        self._initialized = False

        self._cache_hits = 0
        self._cache_misses = 0
        self._search_count = 0
        self._search_time_ms = 0.0

    # ── Lifecycle ─────────────────────────────────────────────────────

    @property
    def config(self) -> VectorStoreConfig:
        return self._config

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def persistence_active(self) -> bool:
        return self._records_kv is not None

    async def initialize(self) -> None:
        """Load persisted records and cache entries into memory. Idempotent."""
        if self._initialized:
            return

        if self._config.enable_persistence and self._kv is not None:
            key = self._config.persistence_key
            try:
                self._records_kv = self._kv.with_namespace(f"{key}:vectors")
                self._cache_kv = self._kv.with_namespace(f"{key}:embedding_cache")
                await self._load_persisted()
            except (PersistenceError, OSError) as exc:
                LOG.warning("Failed to initialize persistence, using in-memory only: %s", exc)
                self._records_kv = None
                self._cache_kv = None

        self._initialized = True
        self._enforce_memory_limits()

    async def _load_persisted(self) -> None:
        loaded = 0
        for raw in await self._records_kv.get_all():
            try:
                record = VectorRecord.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("Skipping unreadable persisted vector: %s", exc)
                continue
            if record.embedding.shape != (self._config.dimensions,):
                LOG.warning(
                    "Skipping persisted vector %s with %d dimensions (expected %d)",
                    record.id,
                    record.embedding.size,
                    self._config.dimensions,
                )
                continue
            self._vectors[record.id] = record
            loaded += 1

        for raw in await self._cache_kv.get_all():
            try:
                entry = EmbeddingCacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as exc:
                LOG.warning("Skipping unreadable cache entry: %s", exc)
                continue
            if len(entry.embedding) != self._config.dimensions:
                LOG.debug(
                    "Skipping cached embedding %s from %s with %d dimensions",
                    entry.content_hash,
                    entry.model_id,
                    len(entry.embedding),
                )
                continue
            self._cache[entry.content_hash] = entry

        LOG.info("VectorStore: loaded %d persisted vectors, %d cached embeddings", loaded, len(self._cache))

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("VectorStore not initialized. Call initialize() first.")

    # ── Durable mirror ────────────────────────────────────────────────

    def _mirror(self, op: Awaitable[None]) -> None:
        """Run a durable write in the background; failures downgrade to memory-only."""
        task = asyncio.get_running_loop().create_task(self._guarded(op))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guarded(self, op: Awaitable[None]) -> None:
        try:
            await op
        except (PersistenceError, OSError) as exc:
            self._degrade(exc)

    def _degrade(self, exc: Exception) -> None:
        if self._records_kv is not None:
            LOG.warning("Persistence failed, continuing in memory-only mode: %s", exc)
        self._records_kv = None
        self._cache_kv = None

    async def flush(self) -> None:
        """Wait for outstanding durable writes."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ── Writes ────────────────────────────────────────────────────────

    def _validated(self, record: VectorRecord) -> VectorRecord:
        vector = np.asarray(record.embedding, dtype=np.float64).ravel()
        if vector.shape != (self._config.dimensions,):
            raise DimensionMismatchError(
                f"Invalid embedding dimensions: expected {self._config.dimensions}, got {vector.size}"
            )
        if self._config.metric == "cosine":
            vector = normalize(vector)
        return replace(record, embedding=vector, metadata=replace(record.metadata, tags=list(record.metadata.tags)))

    async def upsert(self, record: VectorRecord) -> None:
        """Add or replace a record, mirror it, then enforce the memory cap."""
        self._ensure_initialized()
        stored = self._validated(record)
        self._put(stored)
        self._enforce_memory_limits()

    def _put(self, stored: VectorRecord) -> None:
        self._vectors.pop(stored.id, None)
        self._vectors[stored.id] = stored
        if self._records_kv is not None:
            self._mirror(self._records_kv.put(stored.id, stored.to_dict()))

    async def upsert_batch(self, records: Iterable[VectorRecord]) -> None:
        """
        Upsert many records in groups of ``UPSERT_BATCH_SIZE``.

        Every record is validated before any is written. The event loop gets
        control back between groups so large reindexes don't stall it.
        """
        self._ensure_initialized()
        validated = [self._validated(r) for r in records]
        for i in range(0, len(validated), UPSERT_BATCH_SIZE):
            for stored in validated[i : i + UPSERT_BATCH_SIZE]:
                self._put(stored)
            self._enforce_memory_limits()
            await asyncio.sleep(0)

    async def delete(self, record_id: str) -> bool:
        """Delete one record. Returns True if it was in memory."""
        self._ensure_initialized()
        removed = self._vectors.pop(record_id, None) is not None
        if self._records_kv is not None:
            self._mirror(self._records_kv.delete(record_id))
        return removed

    async def delete_by_entity(self, entity_id: str, entity_type: Optional[str] = None) -> int:
        """Delete every chunk of an entity. Returns the number removed."""
        self._ensure_initialized()
        entity_type = _plain(entity_type)
        doomed = [
            rid
            for rid, rec in self._vectors.items()
            if rec.entity_id == entity_id and (entity_type is None or rec.entity_type == entity_type)
        ]
        for rid in doomed:
            await self.delete(rid)
        if doomed:
            LOG.debug("Deleted %d chunks for entity %s", len(doomed), entity_id)
        return len(doomed)

    def _enforce_memory_limits(self) -> None:
        """Evict oldest-by-indexed_at records beyond the cap. The durable mirror keeps them."""
        excess = len(self._vectors) - self._config.max_in_memory_vectors
        if excess <= 0:
            return
        oldest = sorted(self._vectors.values(), key=lambda r: (r.indexed_at, r.id))[:excess]
        for record in oldest:
            del self._vectors[record.id]
        LOG.debug("Evicted %d vectors from memory (cap %d)", excess, self._config.max_in_memory_vectors)

    async def clear(self) -> None:
        """Remove all vectors and cached embeddings, in memory and durably."""
        self._vectors.clear()
        self._cache.clear()
        await self.flush()
        for kv in (self._records_kv, self._cache_kv):
            if kv is None:
                continue
            try:
                await kv.clear()
            except (PersistenceError, OSError) as exc:
                self._degrade(exc)

    # ── Reads ─────────────────────────────────────────────────────────

    def get(self, record_id: str) -> Optional[VectorRecord]:
        self._ensure_initialized()
        return self._vectors.get(record_id)

    def get_by_entity(self, entity_id: str, entity_type: Optional[str] = None) -> List[VectorRecord]:
        """All in-memory chunks of an entity, ordered by chunk index."""
        self._ensure_initialized()
        entity_type = _plain(entity_type)
        records = [
            rec
            for rec in self._vectors.values()
            if rec.entity_id == entity_id and (entity_type is None or rec.entity_type == entity_type)
        ]
        return sorted(records, key=lambda r: r.chunk_index)

    def count(self) -> int:
        return len(self._vectors)

    def search(
        self,
        query_embedding: Sequence[float],
        options: Optional[SearchOptions] = None,
        **overrides: Any,
    ) -> List[VectorSearchResult]:
        """
        Scan the index for records similar to ``query_embedding``.

        Filters are applied before scoring. Once ``timeout_ms`` has elapsed
        the scan stops and whatever matched so far is ranked and returned.
        Results are sorted by score descending, ties broken by record id.
        """
        self._ensure_initialized()
        opts = (options or SearchOptions()).merged(**overrides)

        query = np.asarray(query_embedding, dtype=np.float64).ravel()
        if query.shape != (self._config.dimensions,):
            raise DimensionMismatchError(
                f"Invalid query dimensions: expected {self._config.dimensions}, got {query.size}"
            )
        if self._config.metric == "cosine":
            query = normalize(query)

        entity_types = {_plain(t) for t in opts.entity_types} if opts.entity_types else None
        after = parse_timestamp(opts.modified_after)
        before = parse_timestamp(opts.modified_before)
        budget_s = opts.timeout_ms / 1000.0

        start = time.perf_counter()
        results: List[VectorSearchResult] = []
        scanned = 0
        for record in list(self._vectors.values()):
            if time.perf_counter() - start > budget_s:
                LOG.debug("Search deadline hit after %d/%d records", scanned, len(self._vectors))
                break
            scanned += 1

            if entity_types is not None and record.entity_type not in entity_types:
                continue
            if opts.metadata_filter and not self._matches_metadata(record, opts.metadata_filter):
                continue
            if (after or before) and not self._in_date_range(record, after, before):
                continue

            score = self._similarity(query, record.embedding)
            if score >= opts.threshold:
                results.append(
                    VectorSearchResult(
                        record=record,
                        score=score,
                        excerpt=record.content if opts.include_content else None,
                    )
                )

        results.sort(key=lambda r: (-r.score, r.record.id))
        elapsed_ms = (time.perf_counter() - start) * 1000
        self._search_count += 1
        self._search_time_ms += elapsed_ms
        return results[: opts.top_k]

    def _similarity(self, a: np.ndarray, b: np.ndarray) -> float:
        metric = self._config.metric
        if metric == "cosine":
            # Both sides are unit-normalized, so the dot product is the cosine.
            return float(min(1.0, max(0.0, np.dot(a, b))))
        if metric == "dot":
            return float(np.dot(a, b))
        return float(1.0 / (1.0 + np.linalg.norm(a - b)))

    @staticmethod
    def _matches_metadata(record: VectorRecord, metadata_filter: Dict[str, Any]) -> bool:
        for key, expected in metadata_filter.items():
            actual = record.metadata.get(key)
            if isinstance(expected, (list, tuple, set, frozenset)):
                if not isinstance(actual, list):
                    return False
                if not all(_plain(v) in actual for v in expected):
                    return False
            elif actual != _plain(expected):
                return False
        return True

    @staticmethod
    def _in_date_range(record: VectorRecord, after, before) -> bool:
        modified = parse_timestamp(record.metadata.modified_at)
        if modified is None:
            return False
        if after is not None and modified < after:
            return False
        if before is not None and modified > before:
            return False
        return True

    # ── Embedding cache ───────────────────────────────────────────────

    def get_cached_embedding(self, content_hash: str, model_id: Optional[str] = None) -> Optional[List[float]]:
        """
        Return a copy of the cached embedding for ``content_hash``, counting hits and misses.

        With ``model_id`` an entry produced by a different model counts as a miss.
        """
        entry = self._cache.get(content_hash)
        if entry is None or (model_id is not None and entry.model_id != model_id):
            self._cache_misses += 1
            return None
        self._cache_hits += 1
        return list(entry.embedding)

    async def cache_embedding(self, content_hash: str, embedding: Sequence[float], model_id: str) -> None:
        entry = EmbeddingCacheEntry(
            content_hash=content_hash,
            embedding=[float(x) for x in embedding],
            model_id=model_id,
        )
        self._cache[content_hash] = entry
        if self._cache_kv is not None:
            self._mirror(self._cache_kv.put(content_hash, entry.to_dict()))

    # ── Chunking ──────────────────────────────────────────────────────

    def chunk_text(self, text: str, config: Optional[ChunkConfig] = None) -> List[ContentChunk]:
        return chunk_text(text, config or self._config.chunk)

    # ── Stats / teardown ──────────────────────────────────────────────

    def get_stats(self) -> StoreStats:
        dims = self._config.dimensions
        return StoreStats(
            vector_count=len(self._vectors),
            cache_size=len(self._cache),
            memory_usage=(len(self._vectors) + len(self._cache)) * dims * BYTES_PER_FLOAT,
            persistence_active=self.persistence_active,
            cache_hits=self._cache_hits,
            cache_misses=self._cache_misses,
            searches=self._search_count,
            avg_search_time_ms=self._search_time_ms / self._search_count if self._search_count else 0.0,
        )

    async def dispose(self) -> None:
        """Flush pending writes, close the durable store and drop in-memory state."""
        await self.flush()
        if self._kv is not None:
            try:
                await self._kv.close()
            except (PersistenceError, OSError) as exc:
                LOG.warning("Error closing durable store: %s", exc)
        self._records_kv = None
        self._cache_kv = None
        self._vectors.clear()
        self._cache.clear()
        self._initialized = False
