"""
Retrieval-grounded suggestion generation.

One request produces suggestions of a single type. Retrieval always runs
first; with nothing relevant in the corpus the model is never called.
A failed model call yields no suggestions for that type instead of an
error, so a request always resolves.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, List, Optional

from notechain_rag.config import SuggestionConfig
from notechain_rag.llm.llm_client import LLMClient
from notechain_rag.models import (
    ActionType,
    ContextItem,
    CurrentContext,
    EntityType,
    RetrievedContext,
    Suggestion,
    SuggestionAction,
    SuggestionRequest,
    SuggestionResponse,
    SuggestionType,
)
from notechain_rag.rag.formatting import PromptFormatter
from notechain_rag.rag.retriever import ContextRetriever

LOG = logging.getLogger("rag.suggestions")

MIN_SUMMARY_CHARS = 200
QUICK_DEFAULT_LIMIT = 3
RELATED_DEFAULT_LIMIT = 5
ACTION_ITEMS_LIMIT = 10


def _new_id() -> str:
    return f"sugg_{uuid.uuid4().hex[:12]}"


def _link_action(item: ContextItem) -> SuggestionAction:
    return SuggestionAction(
        type=ActionType.LINK,
        payload={"entity_id": item.source.entity_id, "entity_type": item.source.entity_type},
    )


class SuggestionEngine:
    """Generates completion, related, action-item, summary and insight suggestions."""

    def __init__(
        self,
        retriever: ContextRetriever,
        llm: LLMClient,
        config: Optional[SuggestionConfig] = None,
        formatter: Optional[PromptFormatter] = None,
    ) -> None:
        self._retriever = retriever
        self._llm = llm
        self._config = config or SuggestionConfig()
        self._formatter = formatter or retriever.formatter

    # ── Entry points ──────────────────────────────────────────────────

    async def generate_suggestions(self, request: SuggestionRequest) -> SuggestionResponse:
        """Retrieve context, generate suggestions of the requested type, drop low-confidence ones."""
        start = time.perf_counter()
        context = await self._retrieve(request)
        if not context.has_context:
            return SuggestionResponse(suggestions=[], context=context, total_time_ms=self._since(start))

        generated = await self._generate_by_type(request, context)
        kept = [s for s in generated if s.confidence >= self._config.min_confidence]
        if len(kept) < len(generated):
            LOG.debug("Dropped %d low-confidence %s suggestions", len(generated) - len(kept), request.suggestion_type.value)
        return SuggestionResponse(suggestions=kept, context=context, total_time_ms=self._since(start))

    async def generate_quick_suggestions(self, request: SuggestionRequest) -> SuggestionResponse:
        """Retrieval only: sufficiently relevant context items become link suggestions."""
        start = time.perf_counter()
        context = await self._retrieve(request)
        suggestions: List[Suggestion] = []
        limit = request.max_suggestions or QUICK_DEFAULT_LIMIT
        for item in context.items[:limit]:
            if item.relevance >= self._config.quick_min_relevance:
                suggestions.append(
                    Suggestion(
                        id=_new_id(),
                        type=request.suggestion_type,
                        content=self._formatter.format_related(item),
                        confidence=item.relevance,
                        source_context=[item],
                        action=_link_action(item),
                    )
                )
        return SuggestionResponse(suggestions=suggestions, context=context, total_time_ms=self._since(start))

    async def get_related_notes(
        self,
        note_id: str,
        content: str,
        title: Optional[str] = None,
        limit: int = RELATED_DEFAULT_LIMIT,
    ) -> List[Suggestion]:
        request = SuggestionRequest(
            suggestion_type=SuggestionType.RELATED,
            current_context=CurrentContext(content=content, type=EntityType.NOTE, title=title),
            max_suggestions=limit,
        )
        response = await self.generate_quick_suggestions(request)
        return [s for s in response.suggestions if s.source_context[0].source.entity_id != note_id]

    async def get_suggested_links(
        self,
        content: str,
        title: Optional[str] = None,
        limit: int = RELATED_DEFAULT_LIMIT,
    ) -> List[Suggestion]:
        request = SuggestionRequest(
            suggestion_type=SuggestionType.RELATED,
            current_context=CurrentContext(content=content, type=EntityType.NOTE, title=title),
            max_suggestions=limit,
        )
        return (await self.generate_quick_suggestions(request)).suggestions

    async def extract_action_items(self, content: str, title: Optional[str] = None) -> List[Suggestion]:
        request = SuggestionRequest(
            suggestion_type=SuggestionType.ACTION_ITEMS,
            current_context=CurrentContext(content=content, type=EntityType.NOTE, title=title),
            max_suggestions=ACTION_ITEMS_LIMIT,
        )
        return (await self.generate_suggestions(request)).suggestions

    # ── Retrieval ─────────────────────────────────────────────────────

    async def _retrieve(self, request: SuggestionRequest) -> RetrievedContext:
        max_items = request.max_suggestions or self._config.max_context_items
        overrides: Dict[str, Any] = {"top_k": max_items * 2}
        overrides.update(self._filter_overrides(request))
        current = request.current_context

        if current is not None and current.cursor_position is not None:
            return await self._retriever.retrieve_context_at_position(
                current.content, current.cursor_position, **overrides
            )
        if request.suggestion_type == SuggestionType.ACTION_ITEMS:
            query = request.query or (current.content if current else "")
            return await self._retriever.retrieve_context_for_todos(query, **overrides)

        query = request.query or self._formatter.build_request_query(current)
        return await self._retriever.retrieve_context(query, **overrides)

    @staticmethod
    def _filter_overrides(request: SuggestionRequest) -> Dict[str, Any]:
        filters = request.filters
        if filters is None:
            return {}
        overrides: Dict[str, Any] = {}
        if filters.tags:
            overrides["metadata_filter"] = {"tags": list(filters.tags)}
        if filters.modified_after:
            overrides["modified_after"] = filters.modified_after.isoformat()
        if filters.modified_before:
            overrides["modified_before"] = filters.modified_before.isoformat()
        return overrides

    # ── Generation ────────────────────────────────────────────────────

    async def _generate_by_type(self, request: SuggestionRequest, context: RetrievedContext) -> List[Suggestion]:
        handlers = {
            SuggestionType.COMPLETION: self._completion,
            SuggestionType.RELATED: self._related,
            SuggestionType.ACTION_ITEMS: self._action_items,
            SuggestionType.SUMMARY: self._summary,
            SuggestionType.INSIGHT: self._insight,
        }
        handler = handlers.get(request.suggestion_type)
        if handler is None:
            return []
        try:
            return await handler(request, context)
        except Exception as exc:
            LOG.warning("%s suggestion generation failed: %s", request.suggestion_type.value, exc)
            return []

    async def _completion(self, request: SuggestionRequest, context: RetrievedContext) -> List[Suggestion]:
        current = request.current_context
        if current is None or not current.content:
            return []

        result = await self._llm.generate(
            self._formatter.completion_prompt(current.content, context),
            max_tokens=200,
            temperature=0.7,
        )
        text = result.text.strip()
        if not text:
            return []
        position = current.cursor_position if current.cursor_position is not None else len(current.content)
        return [
            Suggestion(
                id=_new_id(),
                type=SuggestionType.COMPLETION,
                content=text,
                confidence=self.estimate_confidence(context, text),
                source_context=context.items[:3],
                action=SuggestionAction(type=ActionType.INSERT, payload={"text": text, "position": position}),
                processing_time_ms=result.duration_ms,
            )
        ]

    async def _related(self, request: SuggestionRequest, context: RetrievedContext) -> List[Suggestion]:
        limit = request.max_suggestions or RELATED_DEFAULT_LIMIT
        return [
            Suggestion(
                id=_new_id(),
                type=SuggestionType.RELATED,
                content=self._formatter.format_related(item),
                confidence=item.relevance,
                source_context=[item],
                action=_link_action(item),
            )
            for item in context.items[:limit]
        ]

    async def _action_items(self, request: SuggestionRequest, context: RetrievedContext) -> List[Suggestion]:
        current = request.current_context
        content = (current.content if current else None) or request.query or ""
        if not content.strip():
            return []

        result = await self._llm.generate(
            self._formatter.action_items_prompt(content),
            max_tokens=300,
            temperature=0.3,
        )
        items = self._formatter.parse_action_items(result.text)
        source = (current.title if current else None) or "Note"
        per_item_ms = result.duration_ms / len(items) if items else 0.0
        return [
            Suggestion(
                id=_new_id(),
                type=SuggestionType.ACTION_ITEMS,
                content=item,
                confidence=round(max(0.1, 0.7 - 0.1 * i), 2),
                source_context=context.items[:2],
                action=SuggestionAction(
                    type=ActionType.CREATE_TODO,
                    payload={"title": item, "description": f"From: {source}"},
                ),
                processing_time_ms=per_item_ms,
            )
            for i, item in enumerate(items)
        ]

    async def _summary(self, request: SuggestionRequest, context: RetrievedContext) -> List[Suggestion]:
        content = request.current_context.content if request.current_context else ""
        if len(content) < MIN_SUMMARY_CHARS:
            return []

        result = await self._llm.summarize(content, style="concise", max_length=150)
        text = result.text.strip()
        if not text:
            return []
        return [
            Suggestion(
                id=_new_id(),
                type=SuggestionType.SUMMARY,
                content=text,
                confidence=0.8,
                source_context=context.items[:2],
                action=SuggestionAction(
                    type=ActionType.INSERT,
                    payload={"text": f"## Summary\n\n{text}", "position": 0},
                ),
                processing_time_ms=result.duration_ms,
            )
        ]

    async def _insight(self, request: SuggestionRequest, context: RetrievedContext) -> List[Suggestion]:
        content = request.current_context.content if request.current_context else ""
        result = await self._llm.generate(
            self._formatter.insight_prompt(content, context),
            max_tokens=250,
            temperature=0.6,
        )
        insights = self._formatter.parse_insights(result.text)
        per_item_ms = result.duration_ms / len(insights) if insights else 0.0
        return [
            Suggestion(
                id=_new_id(),
                type=SuggestionType.INSIGHT,
                content=insight,
                confidence=round(0.75 - 0.05 * i, 2),
                source_context=context.items[:3],
                action=SuggestionAction(
                    type=ActionType.INSERT,
                    payload={"text": f"💡 {insight}", "position": len(content)},
                ),
                processing_time_ms=per_item_ms,
            )
            for i, insight in enumerate(insights)
        ]

    @staticmethod
    def estimate_confidence(context: RetrievedContext, text: str) -> float:
        """Average context relevance, penalized for very short or unterminated output."""
        if not context.items:
            return 0.0
        confidence = sum(item.relevance for item in context.items) / len(context.items)
        stripped = text.strip()
        if len(stripped) < 20:
            confidence *= 0.8
        if not stripped.endswith((".", "!", "?")):
            confidence *= 0.9
        return min(1.0, max(0.0, confidence))

    @staticmethod
    def _since(start: float) -> float:
        return (time.perf_counter() - start) * 1000
