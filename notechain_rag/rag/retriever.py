"""
Context retrieval over the vector store.

Turns free text (a query, a note, the paragraph around a cursor) into an
embedding search and promotes the hits to ContextItems. Query construction
and prompt rendering are delegated to a PromptFormatter.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import replace
from typing import Any, Dict, List, Optional

from notechain_rag.config import SearchOptions
from notechain_rag.models import (
    PRIORITY_WEIGHTS,
    ContextItem,
    ContextMetadata,
    ContextSource,
    ContextType,
    EntityType,
    RetrievedContext,
    TodoPriority,
    VectorRecord,
    parse_timestamp,
)
from notechain_rag.rag.embedding_provider import EmbeddingProvider
from notechain_rag.rag.formatting import PromptFormatter
from notechain_rag.rag.vector_store import VectorStore

LOG = logging.getLogger("rag.retriever")

POSITION_TOP_K = 5
CROSS_REFERENCE_TOP_K = 10
TODO_OVERFETCH = 1.5


def to_context_item(record: VectorRecord, score: float, excerpt: Optional[str] = None) -> ContextItem:
    """Promote a stored record (and its score) to a retrieval-facing ContextItem."""
    meta = record.metadata
    text = excerpt if excerpt is not None else record.content
    return ContextItem(
        type=ContextType.from_entity_type(record.entity_type),
        id=record.id,
        title=meta.title or "Untitled",
        excerpt=text or "",
        relevance=score,
        source=ContextSource(
            entity_id=record.entity_id,
            entity_type=record.entity_type,
            chunk_index=record.chunk_index,
        ),
        metadata=ContextMetadata(
            tags=list(meta.tags),
            due_date=parse_timestamp(meta.due_date),
            priority=meta.priority,
            status=meta.status,
        ),
    )


def _todo_sort_key(item: ContextItem):
    weight = PRIORITY_WEIGHTS.get(item.metadata.priority or TodoPriority.LOW.value, 1)
    due = item.metadata.due_date
    return (-weight, due is None, due.timestamp() if due else 0.0)


class ContextRetriever:
    """
    Retrieves ranked context for queries, notes, tasks and cursor positions.

    ``search_defaults`` seeds every search; per-call ``options`` replace it
    and keyword overrides (``top_k=3``, ``threshold=0.4`` ...) are applied last.
    """

    def __init__(
        self,
        vector_store: VectorStore,
        embedding_provider: EmbeddingProvider,
        formatter: Optional[PromptFormatter] = None,
        search_defaults: Optional[SearchOptions] = None,
    ) -> None:
        self._store = vector_store
        self._embedder = embedding_provider
        self._formatter = formatter or PromptFormatter()
        self._defaults = search_defaults or SearchOptions()

    @property
    def formatter(self) -> PromptFormatter:
        return self._formatter

    def _options(self, options: Optional[SearchOptions], overrides: Dict[str, Any]) -> SearchOptions:
        return (options or self._defaults).merged(**overrides)

    async def retrieve_context(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        **overrides: Any,
    ) -> RetrievedContext:
        """Embed ``query`` and search the store."""
        start = time.perf_counter()
        if not query or not query.strip():
            return RetrievedContext.empty(query)

        opts = self._options(options, overrides)
        query_embedding = await self._embedder.embed_text(query)
        results = self._store.search(query_embedding, opts)

        items = [to_context_item(r.record, r.score, r.excerpt) for r in results]
        elapsed_ms = (time.perf_counter() - start) * 1000
        LOG.debug("Retrieved %d items in %.1fms", len(items), elapsed_ms)
        return RetrievedContext(
            query=query,
            items=items,
            total_results=len(results),
            retrieval_time_ms=elapsed_ms,
            has_context=bool(items),
        )

    async def retrieve_context_for_note(
        self,
        content: str,
        title: Optional[str] = None,
        options: Optional[SearchOptions] = None,
        **overrides: Any,
    ) -> RetrievedContext:
        """Search with a short key-phrase query built from a note rather than the whole text."""
        query = self._formatter.build_context_query(content, title)
        return await self.retrieve_context(query, options, **overrides)

    async def retrieve_context_for_todos(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        **overrides: Any,
    ) -> RetrievedContext:
        """
        Search tasks only, then rank by urgency instead of raw relevance.

        Over-fetches, sorts by priority weight (critical first) and then by
        due date (soonest first, undated last), and truncates to ``top_k``.
        """
        requested = overrides.get("top_k") or (options or self._defaults).top_k
        overrides = dict(overrides)
        overrides["top_k"] = math.ceil(requested * TODO_OVERFETCH)
        overrides["entity_types"] = (EntityType.TODO.value,)

        context = await self.retrieve_context(query, options, **overrides)
        context.items = sorted(context.items, key=_todo_sort_key)[:requested]
        context.has_context = bool(context.items)
        return context

    async def retrieve_context_at_position(
        self,
        content: str,
        cursor_position: int,
        options: Optional[SearchOptions] = None,
        **overrides: Any,
    ) -> RetrievedContext:
        """Search with the paragraph (or sentence) around the cursor."""
        local = self._formatter.extract_local_context(content, cursor_position)
        query = self._formatter.build_context_query(local)
        if options is None and overrides.get("top_k") is None:
            overrides = {**overrides, "top_k": POSITION_TOP_K}
        return await self.retrieve_context(query, options, **overrides)

    async def retrieve_cross_references(
        self,
        content: str,
        title: Optional[str],
        self_id: str,
        options: Optional[SearchOptions] = None,
        **overrides: Any,
    ) -> RetrievedContext:
        """Note-context retrieval excluding the note's own chunks."""
        if options is None and overrides.get("top_k") is None:
            overrides = {**overrides, "top_k": CROSS_REFERENCE_TOP_K}
        context = await self.retrieve_context_for_note(content, title, options, **overrides)
        context.items = [item for item in context.items if item.source.entity_id != self_id]
        context.has_context = bool(context.items)
        return context

    def get_entity_context(self, entity_id: str, entity_type: Optional[str] = None) -> List[ContextItem]:
        """All stored chunks of one entity as ContextItems with relevance 1.0."""
        return [to_context_item(record, 1.0) for record in self._store.get_by_entity(entity_id, entity_type)]

    @staticmethod
    def filter_by_relevance(context: RetrievedContext, min_relevance: float) -> RetrievedContext:
        items = [item for item in context.items if item.relevance >= min_relevance]
        return replace(context, items=items, has_context=bool(items))

    @staticmethod
    def merge_contexts(*contexts: RetrievedContext) -> RetrievedContext:
        """Union of several retrievals, deduplicated by item id and re-ranked by relevance."""
        seen = set()
        merged: List[ContextItem] = []
        for context in contexts:
            for item in context.items:
                if item.id not in seen:
                    seen.add(item.id)
                    merged.append(item)
        merged.sort(key=lambda item: (-item.relevance, item.id))
        return RetrievedContext(
            query=" | ".join(c.query for c in contexts),
            items=merged,
            total_results=len(merged),
            retrieval_time_ms=sum(c.retrieval_time_ms for c in contexts),
            has_context=bool(merged),
        )

    def format_context_for_prompt(self, context: RetrievedContext, max_length: int = 2000) -> str:
        return self._formatter.format_context(context, max_length)
