"""
RAG engine: indexing, retrieval and suggestions behind one lifecycle.

The engine owns a VectorStore, ContextRetriever and SuggestionEngine built
from injected collaborators. ``build_rag_engine`` is the composition root
that turns an AppConfig into a ready-to-initialize engine.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

from notechain_rag.config import AppConfig, IndexingOptions, IndexingProgress, RAGConfig
from notechain_rag.llm.llm_client import LLMClient, LLMError, build_llm_client
from notechain_rag.models import (
    ContentChunk,
    EntityType,
    IndexableEntity,
    RetrievedContext,
    StoreStats,
    Suggestion,
    SuggestionRequest,
    SuggestionResponse,
    VectorMetadata,
    VectorRecord,
    parse_timestamp,
)
from notechain_rag.rag.embedding_provider import EmbeddingProvider, build_embedding_provider
from notechain_rag.rag.formatting import PromptFormatter
from notechain_rag.rag.kv_store import KeyValueStore, PersistenceError, build_kv_store
from notechain_rag.rag.retriever import ContextRetriever
from notechain_rag.rag.suggestions import SuggestionEngine
from notechain_rag.rag.vector_store import DimensionMismatchError, NotInitializedError, VectorStore

LOG = logging.getLogger("rag.engine")


@dataclass
class RAGMetrics:
    """
    Engine health snapshot.

    ``cache_hit_rate`` is measured from embedding-cache lookups.
    ``cache_size_ratio`` is the static cache/(cache + vectors) proxy, kept
    for comparison with older dashboards.
    """

    total_vectors: int
    memory_usage: int
    cache_size: int
    cache_hits: int
    cache_misses: int
    cache_hit_rate: float
    cache_size_ratio: float
    avg_search_time_ms: float
    avg_indexing_time_ms: float
    entities_indexed: int
    store_stats: StoreStats

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_vectors": self.total_vectors,
            "memory_usage": self.memory_usage,
            "cache_size": self.cache_size,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "cache_hit_rate": self.cache_hit_rate,
            "cache_size_ratio": self.cache_size_ratio,
            "avg_search_time_ms": self.avg_search_time_ms,
            "avg_indexing_time_ms": self.avg_indexing_time_ms,
            "entities_indexed": self.entities_indexed,
            "persistence_active": self.store_stats.persistence_active,
        }


@dataclass
class _IndexingTimer:
    count: int = 0
    total_ms: float = 0.0

    def record(self, elapsed_ms: float) -> None:
        self.count += 1
        self.total_ms += elapsed_ms

    @property
    def average_ms(self) -> float:
        return self.total_ms / self.count if self.count else 0.0


class RAGEngine:
    """
    Façade over the vector store, retriever and suggestion engine.

    Usage::

        engine = RAGEngine(MockEmbeddingProvider(dim=384), MockLLMClient())
        await engine.initialize()
        await engine.index_entity(entity)
        response = await engine.generate_suggestions(request)
        await engine.dispose()
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        llm: LLMClient,
        config: Optional[RAGConfig] = None,
        kv_store: Optional[KeyValueStore] = None,
        formatter: Optional[PromptFormatter] = None,
    ) -> None:
        self._config = config or RAGConfig()
        self._embedder = embedding_provider
        self._llm = llm
        self._store = VectorStore(self._config.vector_store, kv_store)
        self._retriever = ContextRetriever(
            self._store,
            embedding_provider,
            formatter=formatter,
            search_defaults=self._config.search,
        )
        self._suggestions = SuggestionEngine(self._retriever, llm, self._config.suggestions)
        self._initialized = False
        self._inflight: Dict[str, asyncio.Future] = {}
        self._indexing = _IndexingTimer()

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """
        Bring up the store, embedding provider and language model. Idempotent.

        An unreachable language model is logged, not raised: indexing and
        retrieval still work, generated suggestions come back empty.

        Raises:
            DimensionMismatchError: provider and store disagree on dimensions
        """
        if self._initialized:
            return

        await asyncio.gather(self._store.initialize(), self._embedder.initialize())

        provider_dim = self._embedder.dimension()
        if provider_dim != self._config.vector_store.dimensions:
            raise DimensionMismatchError(
                f"Embedding provider {self._embedder.model_id} produces {provider_dim}-dim vectors, "
                f"store expects {self._config.vector_store.dimensions}"
            )

        try:
            await self._llm.initialize()
        except LLMError as exc:
            LOG.warning("Language model unavailable, generated suggestions will be empty: %s", exc)

        self._initialized = True
        LOG.info(
            "RAG engine ready: %d vectors, embeddings=%s, persistence=%s",
            self._store.count(),
            self._embedder.model_id,
            self._store.persistence_active,
        )

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise NotInitializedError("RAGEngine not initialized. Call initialize() first.")

    def is_ready(self) -> bool:
        return self._initialized

    @property
    def vector_store(self) -> VectorStore:
        return self._store

    @property
    def retriever(self) -> ContextRetriever:
        return self._retriever

    @property
    def suggestion_engine(self) -> SuggestionEngine:
        return self._suggestions

    async def clear(self) -> None:
        """Wipe all indexed vectors and cached embeddings."""
        self._ensure_initialized()
        await self._store.clear()

    async def dispose(self) -> None:
        """Flush and close the store, release the provider and model, mark uninitialized."""
        await self._store.dispose()
        await self._embedder.close()
        await self._llm.close()
        self._initialized = False

    # ── Indexing ──────────────────────────────────────────────────────

    @staticmethod
    def indexable_text(entity: IndexableEntity) -> str:
        """Title plus body (content for notes, description for tasks), blank-line separated."""
        decrypted = entity.decrypted_content
        if decrypted is None:
            return ""
        body = decrypted.description if entity.type == EntityType.TODO else decrypted.content
        return "\n\n".join(part for part in (decrypted.title, body) if part)

    @staticmethod
    def _metadata(entity: IndexableEntity) -> VectorMetadata:
        decrypted = entity.decrypted_content
        tags = list(dict.fromkeys([*(decrypted.tags if decrypted else []), *entity.tags]))
        due = parse_timestamp(entity.due_date)
        return VectorMetadata(
            owner_id=entity.owner_id,
            modified_at=parse_timestamp(entity.updated_at).isoformat(),
            title=decrypted.title if decrypted else None,
            tags=tags,
            container_id=entity.container_id,
            priority=entity.priority.value if entity.priority else None,
            status=entity.status.value if entity.status else None,
            due_date=due.isoformat() if due else None,
        )

    def _is_unchanged(
        self,
        entity: IndexableEntity,
        chunks: Sequence[ContentChunk],
        metadata: VectorMetadata,
    ) -> bool:
        """Same chunk hashes and same metadata as the stored records."""
        existing = self._store.get_by_entity(entity.id, entity.type.value)
        if not existing or [r.content_hash for r in existing] != [c.content_hash for c in chunks]:
            return False
        wanted = metadata.to_dict()
        return all(r.metadata.to_dict() == wanted for r in existing)

    async def _embeddings_for(self, chunks: Sequence[ContentChunk]) -> Dict[str, List[float]]:
        """
        Resolve one embedding per distinct chunk hash.

        Cache hits are reused. Hashes another index call is already embedding
        are awaited rather than recomputed. The rest go to the provider in a
        single batch and are cached.
        """
        resolved: Dict[str, List[float]] = {}
        waiting: Dict[str, asyncio.Future] = {}
        to_embed: List[ContentChunk] = []

        for chunk in chunks:
            h = chunk.content_hash
            if h in resolved or h in waiting or any(c.content_hash == h for c in to_embed):
                continue
            cached = self._store.get_cached_embedding(h, self._embedder.model_id)
            if cached is not None:
                resolved[h] = cached
            elif h in self._inflight:
                waiting[h] = self._inflight[h]
            else:
                to_embed.append(chunk)

        if to_embed:
            loop = asyncio.get_running_loop()
            owned = {c.content_hash: loop.create_future() for c in to_embed}
            self._inflight.update(owned)
            try:
                vectors = await self._embedder.embed([c.text for c in to_embed])
                for chunk, vector in zip(to_embed, vectors):
                    resolved[chunk.content_hash] = vector
                    await self._store.cache_embedding(chunk.content_hash, vector, self._embedder.model_id)
                    owned[chunk.content_hash].set_result(vector)
            except Exception as exc:
                for future in owned.values():
                    if not future.done():
                        future.set_exception(exc)
                        future.exception()  # mark retrieved; waiters re-raise on await
                raise
            finally:
                for h in owned:
                    self._inflight.pop(h, None)

        for h, future in waiting.items():
            resolved[h] = list(await future)
        return resolved

    async def index_entity(self, entity: IndexableEntity, skip_unchanged: bool = False) -> int:
        """
        (Re)index one entity and return the number of chunks written.

        Entities without decrypted content are ignored. Existing chunks are
        replaced, so calling this twice leaves one copy. With
        ``skip_unchanged`` an entity whose chunk hashes and metadata match the
        stored ones is left alone.
        """
        self._ensure_initialized()
        if entity.decrypted_content is None:
            return 0

        start = time.perf_counter()
        text = self.indexable_text(entity)
        chunks = self._store.chunk_text(text) if text else []
        metadata = self._metadata(entity)
        if skip_unchanged and chunks and self._is_unchanged(entity, chunks, metadata):
            LOG.debug("Skipping unchanged entity %s", entity.id)
            return 0

        await self._store.delete_by_entity(entity.id, entity.type.value)
        if not chunks:
            return 0

        embeddings = await self._embeddings_for(chunks)
        records = [
            VectorRecord(
                id=VectorRecord.make_id(entity.id, chunk.index),
                entity_type=entity.type.value,
                entity_id=entity.id,
                embedding=embeddings[chunk.content_hash],
                content_hash=chunk.content_hash,
                metadata=metadata,
                chunk_index=chunk.index,
                total_chunks=len(chunks),
                content=chunk.text,
            )
            for chunk in chunks
        ]
        await self._store.upsert_batch(records)
        self._indexing.record((time.perf_counter() - start) * 1000)
        return len(records)

    async def index_entities(
        self,
        entities: Iterable[IndexableEntity],
        options: Optional[IndexingOptions] = None,
    ) -> IndexingProgress:
        """
        Index entities in batches of ``batch_size``, reporting progress after each one.

        A failing entity is recorded as ``"<id>: <error>"`` and does not stop
        the batch. Returns the final progress snapshot.
        """
        self._ensure_initialized()
        opts = options or self._config.indexing
        entities = list(entities)
        total = len(entities)
        skip_unchanged = opts.skip_existing and not opts.force_reindex
        errors: List[str] = []
        processed = 0

        def report(current: Optional[str], done: int) -> None:
            if opts.on_progress is None:
                return
            percent = (done / total) * 100 if total else 100.0
            opts.on_progress(
                IndexingProgress(
                    progress=percent,
                    processed=processed,
                    total=total,
                    current_item=current,
                    errors=list(errors),
                )
            )

        report(None, 0)
        attempted = 0

        async def index_one(entity: IndexableEntity) -> None:
            nonlocal processed, attempted
            try:
                await self.index_entity(entity, skip_unchanged=skip_unchanged)
                processed += 1
            except Exception as exc:
                LOG.warning("Failed to index %s: %s", entity.id, exc)
                errors.append(f"{entity.id}: {exc}")
            attempted += 1
            report(entity.label, attempted)

        for i in range(0, total, opts.batch_size):
            await asyncio.gather(*(index_one(e) for e in entities[i : i + opts.batch_size]))

        final = IndexingProgress(progress=100.0, processed=processed, total=total, errors=list(errors))
        if opts.on_progress is not None:
            opts.on_progress(final)
        LOG.info("Indexed %d/%d entities (%d errors)", processed, total, len(errors))
        return final

    async def delete_entity(self, entity_id: str, entity_type: Optional[str] = None) -> int:
        self._ensure_initialized()
        return await self._store.delete_by_entity(entity_id, entity_type)

    # ── Suggestions ───────────────────────────────────────────────────

    async def generate_suggestions(self, request: SuggestionRequest) -> SuggestionResponse:
        self._ensure_initialized()
        return await self._suggestions.generate_suggestions(request)

    async def generate_quick_suggestions(self, request: SuggestionRequest) -> SuggestionResponse:
        self._ensure_initialized()
        return await self._suggestions.generate_quick_suggestions(request)

    @staticmethod
    def _wrap(query: str, suggestions: List[Suggestion], start: float) -> SuggestionResponse:
        items = []
        seen = set()
        for suggestion in suggestions:
            for item in suggestion.source_context:
                if item.id not in seen:
                    seen.add(item.id)
                    items.append(item)
        elapsed_ms = (time.perf_counter() - start) * 1000
        context = RetrievedContext(
            query=query,
            items=items,
            total_results=len(items),
            retrieval_time_ms=elapsed_ms,
            has_context=bool(items),
        )
        return SuggestionResponse(suggestions=suggestions, context=context, total_time_ms=elapsed_ms)

    async def get_related_notes(
        self,
        note_id: str,
        content: str,
        title: Optional[str] = None,
        limit: int = 5,
    ) -> SuggestionResponse:
        self._ensure_initialized()
        start = time.perf_counter()
        suggestions = await self._suggestions.get_related_notes(note_id, content, title, limit)
        return self._wrap(title or "", suggestions, start)

    async def get_suggested_links(self, content: str, title: Optional[str] = None, limit: int = 5) -> SuggestionResponse:
        self._ensure_initialized()
        start = time.perf_counter()
        suggestions = await self._suggestions.get_suggested_links(content, title, limit)
        return self._wrap(title or "", suggestions, start)

    async def extract_action_items(self, content: str, title: Optional[str] = None) -> SuggestionResponse:
        self._ensure_initialized()
        start = time.perf_counter()
        suggestions = await self._suggestions.extract_action_items(content, title)
        return self._wrap(title or "", suggestions, start)

    # ── Metrics ───────────────────────────────────────────────────────

    def get_metrics(self) -> RAGMetrics:
        stats = self._store.get_stats()
        lookups = stats.cache_hits + stats.cache_misses
        sized = stats.cache_size + stats.vector_count
        return RAGMetrics(
            total_vectors=stats.vector_count,
            memory_usage=stats.memory_usage,
            cache_size=stats.cache_size,
            cache_hits=stats.cache_hits,
            cache_misses=stats.cache_misses,
            cache_hit_rate=stats.cache_hits / lookups if lookups else 0.0,
            cache_size_ratio=stats.cache_size / sized if stats.cache_size else 0.0,
            avg_search_time_ms=stats.avg_search_time_ms,
            avg_indexing_time_ms=self._indexing.average_ms,
            entities_indexed=self._indexing.count,
            store_stats=stats,
        )


def build_rag_engine(config: Optional[AppConfig] = None) -> RAGEngine:
    """
    Composition root: construct providers, durable store and engine from config.

    A durable store that cannot be opened is logged and the engine runs
    memory-only.
    """
    config = config or AppConfig.from_env()

    if config.embedding_backend == "mock":
        embedder = build_embedding_provider("mock", dim=config.rag.vector_store.dimensions)
    else:
        embedder = build_embedding_provider(config.embedding_backend, model_name=config.embedding_model)

    if config.llm_backend == "local":
        llm = build_llm_client("local", base_url=config.ollama_base_url, model=config.ollama_model)
    else:
        llm = build_llm_client(config.llm_backend)

    kv_store: Optional[KeyValueStore] = None
    if config.rag.vector_store.enable_persistence:
        try:
            if config.store_backend == "sqlite":
                kv_store = build_kv_store("sqlite", db_path=config.db_path)
            else:
                kv_store = build_kv_store(config.store_backend)
        except PersistenceError as exc:
            LOG.warning("Durable store unavailable, running in memory only: %s", exc)

    return RAGEngine(embedder, llm, config.rag, kv_store=kv_store)
