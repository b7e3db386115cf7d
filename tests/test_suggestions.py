"""Tests for suggestion generation."""

from __future__ import annotations

import pytest

from conftest import StaticEmbeddingProvider, make_record
from notechain_rag.config import SuggestionConfig
from notechain_rag.llm.llm_client import LLMError, MockLLMClient
from notechain_rag.models import (
    ActionType,
    CurrentContext,
    RetrievedContext,
    SuggestionFilters,
    SuggestionRequest,
    SuggestionType,
)
from notechain_rag.rag.retriever import ContextRetriever
from notechain_rag.rag.suggestions import SuggestionEngine

LONG_NOTE = (
    "Met with the design team about the onboarding flow. We agreed to cut the tutorial "
    "to three screens, move account setup after the first project, and test two variants "
    "of the welcome copy with new signups next sprint."
)


@pytest.fixture
def embedder():
    return StaticEmbeddingProvider({"notes": [0.0, 1.0, 0.0], "weak": [0.55, 0.835, 0.0]})


@pytest.fixture
def retriever(store3, embedder):
    return ContextRetriever(store3, embedder)


def _engine(retriever, llm, **config):
    return SuggestionEngine(retriever, llm, SuggestionConfig(**config) if config else None)


def _request(type_, content="notes", query="notes", **kwargs):
    return SuggestionRequest(
        suggestion_type=type_,
        current_context=CurrentContext(content=content, title=kwargs.pop("title", "Standup"),
                                       cursor_position=kwargs.pop("cursor_position", None)),
        query=query,
        **kwargs,
    )


class TestEmptyContext:
    @pytest.mark.asyncio
    async def test_no_context_means_no_model_call(self, retriever):
        llm = MockLLMClient()
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.COMPLETION))
        assert response.suggestions == []
        assert response.context.has_context is False
        assert llm.call_count == 0


class TestCompletion:
    @pytest.mark.asyncio
    async def test_single_insert_at_end(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        llm = MockLLMClient(responses=["  Then we ship the beta to everyone.  "])
        content = "We finished the review."
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.COMPLETION, content=content))

        assert len(response.suggestions) == 1
        suggestion = response.suggestions[0]
        assert suggestion.content == "Then we ship the beta to everyone."
        assert suggestion.confidence == pytest.approx(1.0)
        assert suggestion.action.type == ActionType.INSERT
        assert suggestion.action.payload == {"text": "Then we ship the beta to everyone.", "position": len(content)}
        assert "We finished the review." in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_cursor_position_used(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        llm = MockLLMClient(responses=["A complete follow-up sentence."])
        request = _request(SuggestionType.COMPLETION, content="notes", query=None, cursor_position=2)
        response = await _engine(retriever, llm).generate_suggestions(request)
        assert response.suggestions[0].action.payload["position"] == 2

    def test_confidence_penalties(self):
        context = RetrievedContext(query="q", has_context=True)
        assert SuggestionEngine.estimate_confidence(context, "anything") == 0.0

    @pytest.mark.asyncio
    async def test_low_confidence_dropped(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        llm = MockLLMClient(responses=["short"])
        response = await _engine(retriever, llm, min_confidence=0.75).generate_suggestions(
            _request(SuggestionType.COMPLETION)
        )
        # 1.0 * 0.8 (short) * 0.9 (unterminated) = 0.72
        assert response.suggestions == []
        assert llm.call_count == 1


class TestRelated:
    @pytest.mark.asyncio
    async def test_links_without_model(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0], title="Design sync"))
        await store3.upsert(make_record("t1", [0.0, 1.0, 0.0], entity_type="todo", title="Send notes"))
        llm = MockLLMClient()
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.RELATED))

        assert llm.call_count == 0
        assert {s.action.payload["entity_id"] for s in response.suggestions} == {"n1", "t1"}
        assert all(s.action.type == ActionType.LINK for s in response.suggestions)
        assert any(s.content.startswith('Related note: "Design sync"') for s in response.suggestions)


class TestActionItems:
    @pytest.mark.asyncio
    async def test_parsed_with_decreasing_confidence(self, store3, retriever):
        await store3.upsert(make_record("t1", [0.0, 1.0, 0.0], entity_type="todo"))
        llm = MockLLMClient(responses=[
            "- Email the vendor about pricing\n- Book the meeting room\n- Draft the agenda doc"
        ])
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.ACTION_ITEMS))

        assert [s.content for s in response.suggestions] == ["Email the vendor about pricing", "Book the meeting room"]
        assert [s.confidence for s in response.suggestions] == [0.7, 0.6]
        action = response.suggestions[0].action
        assert action.type == ActionType.CREATE_TODO
        assert action.payload == {"title": "Email the vendor about pricing", "description": "From: Standup"}

    @pytest.mark.asyncio
    async def test_unparseable_output_is_empty(self, store3, retriever):
        await store3.upsert(make_record("t1", [0.0, 1.0, 0.0], entity_type="todo"))
        llm = MockLLMClient(responses=["I could not find anything."])
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.ACTION_ITEMS))
        assert response.suggestions == []


class TestSummary:
    @pytest.mark.asyncio
    async def test_short_content_makes_no_model_call(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        llm = MockLLMClient()
        response = await _engine(retriever, llm).generate_suggestions(
            _request(SuggestionType.SUMMARY, content="x" * 50)
        )
        assert response.suggestions == []
        assert llm.call_count == 0

    @pytest.mark.asyncio
    async def test_summary_inserted_at_top(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        llm = MockLLMClient(responses=["Onboarding gets shorter and copy is tested."])
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.SUMMARY, content=LONG_NOTE))

        assert len(response.suggestions) == 1
        suggestion = response.suggestions[0]
        assert suggestion.confidence == 0.8
        assert suggestion.action.payload == {
            "text": "## Summary\n\nOnboarding gets shorter and copy is tested.",
            "position": 0,
        }
        assert "Summarize the following text concisely" in llm.prompts[0]


class TestInsight:
    @pytest.mark.asyncio
    async def test_up_to_three_insights(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        llm = MockLLMClient(responses=[
            "Insights:\n"
            "The tutorial cut matches last quarter's drop-off data.\n"
            "Moving setup later may delay workspace creation.\n"
            "Copy tests need a larger sample than one sprint.\n"
            "A fourth line that will not be used at all."
        ])
        response = await _engine(retriever, llm).generate_suggestions(_request(SuggestionType.INSIGHT, content=LONG_NOTE))

        assert [s.confidence for s in response.suggestions] == [0.75, 0.7, 0.65]
        assert all(s.action.payload["position"] == len(LONG_NOTE) for s in response.suggestions)


class TestFailureIsolation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "type_",
        [SuggestionType.COMPLETION, SuggestionType.ACTION_ITEMS, SuggestionType.SUMMARY, SuggestionType.INSIGHT],
    )
    async def test_model_failure_yields_empty(self, store3, retriever, type_):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        await store3.upsert(make_record("t1", [0.0, 1.0, 0.0], entity_type="todo"))
        llm = MockLLMClient(fail_with=LLMError("model crashed"))
        response = await _engine(retriever, llm).generate_suggestions(_request(type_, content=LONG_NOTE))
        assert response.suggestions == []
        assert response.context.has_context


class TestQuickSuggestions:
    @pytest.mark.asyncio
    async def test_relevance_floor(self, store3, retriever):
        await store3.upsert(make_record("strong", [0.0, 1.0, 0.0]))
        await store3.upsert(make_record("faint", [1.0, 0.0, 0.0]))
        llm = MockLLMClient()
        response = await _engine(retriever, llm).generate_quick_suggestions(_request(SuggestionType.RELATED, query="weak"))

        # "weak" scores strong at ~0.84 and faint at ~0.55: retrieved, but under the quick floor
        assert len(response.context.items) == 2
        assert [s.source_context[0].source.entity_id for s in response.suggestions] == ["strong"]
        assert llm.call_count == 0

    @pytest.mark.asyncio
    async def test_type_follows_request(self, store3, retriever):
        await store3.upsert(make_record("n1", [0.0, 1.0, 0.0]))
        response = await _engine(retriever, MockLLMClient()).generate_quick_suggestions(
            _request(SuggestionType.INSIGHT)
        )
        assert response.suggestions[0].type == SuggestionType.INSIGHT

    @pytest.mark.asyncio
    async def test_related_notes_excludes_self(self, store3):
        embedder = StaticEmbeddingProvider({}, dim=3)
        retriever = ContextRetriever(store3, embedder)
        vec = await embedder.embed_text("Planning. planning")
        await store3.upsert(make_record("me", vec))
        await store3.upsert(make_record("you", vec))

        suggestions = await SuggestionEngine(retriever, MockLLMClient()).get_related_notes("me", "planning", "Planning")
        assert [s.source_context[0].source.entity_id for s in suggestions] == ["you"]


class TestFilters:
    @pytest.mark.asyncio
    async def test_tag_filter_forwarded(self, store3, retriever):
        await store3.upsert(make_record("tagged", [0.0, 1.0, 0.0], tags=["work"]))
        await store3.upsert(make_record("plain", [0.0, 1.0, 0.0]))
        request = _request(SuggestionType.RELATED, filters=SuggestionFilters(tags=["work"]))
        response = await _engine(retriever, MockLLMClient()).generate_suggestions(request)
        assert [s.action.payload["entity_id"] for s in response.suggestions] == ["tagged"]


class TestWrappers:
    @pytest.mark.asyncio
    async def test_extract_action_items(self, store3):
        embedder = StaticEmbeddingProvider({LONG_NOTE: [0.0, 1.0, 0.0]})
        retriever = ContextRetriever(store3, embedder)
        await store3.upsert(make_record("t1", [0.0, 1.0, 0.0], entity_type="todo"))
        llm = MockLLMClient(responses=["- Schedule the copy test with growth"])

        suggestions = await SuggestionEngine(retriever, llm).extract_action_items(LONG_NOTE, "Design sync")

        assert [s.content for s in suggestions] == ["Schedule the copy test with growth"]
        assert suggestions[0].action.payload["description"] == "From: Design sync"
