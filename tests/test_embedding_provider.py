"""Tests for embedding providers."""

from __future__ import annotations

import numpy as np
import pytest

from notechain_rag.rag.embedding_provider import (
    LocalEmbeddingProvider,
    MockEmbeddingProvider,
    build_embedding_provider,
)


class TestMockEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_dimension_and_shape(self):
        provider = MockEmbeddingProvider(dim=64)
        vecs = await provider.embed(["hello world", "goodbye"])
        assert len(vecs) == 2
        assert all(len(v) == 64 for v in vecs)
        assert provider.dimension() == 64

    @pytest.mark.asyncio
    async def test_deterministic(self):
        a = await MockEmbeddingProvider().embed_text("Plan the offsite agenda")
        b = await MockEmbeddingProvider().embed_text("Plan the offsite agenda")
        assert a == b

    @pytest.mark.asyncio
    async def test_unit_length(self):
        vec = await MockEmbeddingProvider().embed_text("budget review for marketing")
        assert np.linalg.norm(vec) == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_shared_words_are_closer(self):
        provider = MockEmbeddingProvider()
        base = np.array(await provider.embed_text("garden tomatoes watering schedule"))
        near = np.array(await provider.embed_text("tomatoes watering"))
        far = np.array(await provider.embed_text("quarterly tax filing"))
        assert base @ near > base @ far

    @pytest.mark.asyncio
    async def test_counts_calls(self):
        provider = MockEmbeddingProvider()
        await provider.embed(["a", "b"])
        await provider.embed_text("c")
        assert provider.call_count == 2
        assert provider.texts_embedded == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_empty_text_is_zero_vector(self):
        vec = await MockEmbeddingProvider(dim=8).embed_text("")
        assert vec == [0.0] * 8


class TestFactory:
    def test_build_mock(self):
        provider = build_embedding_provider("mock", dim=32)
        assert provider.dimension() == 32
        assert provider.model_id == "mock-bow-32"

    def test_build_local_is_lazy(self):
        provider = build_embedding_provider("local", model_name="all-MiniLM-L6-v2")
        assert isinstance(provider, LocalEmbeddingProvider)
        with pytest.raises(RuntimeError):
            provider.dimension()

    def test_unknown_backend_raises(self):
        with pytest.raises(ValueError, match="Unknown embedding backend"):
            build_embedding_provider("openai")


@pytest.mark.embedding
class TestLocalEmbeddingProvider:
    @pytest.mark.asyncio
    async def test_real_model(self):
        provider = LocalEmbeddingProvider()
        await provider.initialize()
        assert provider.dimension() == 384
        vecs = await provider.embed(["meeting notes about the launch", "launch meeting notes"])
        assert len(vecs[0]) == 384
        assert np.dot(vecs[0], vecs[1]) > 0.7
        await provider.close()
