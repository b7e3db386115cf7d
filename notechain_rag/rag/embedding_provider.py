"""
Embedding provider abstraction with a local sentence-transformers backend.

Providers must be deterministic per (text, model): the content-hash
embedding cache relies on it.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, List

import numpy as np

LOG = logging.getLogger("rag.embedding_provider")

_TOKEN_RE = re.compile(r"\w+")


class EmbeddingProvider(ABC):
    """Abstract interface for text → embedding vector conversion."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier of the model producing the vectors."""

    @abstractmethod
    def dimension(self) -> int:
        """Return the embedding dimensionality."""

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Convert a batch of texts into embedding vectors.

        Returns a list of float vectors, one per input text.
        """

    async def embed_text(self, text: str) -> List[float]:
        """Embed a single text."""
        vectors = await self.embed([text])
        return vectors[0]

    async def initialize(self) -> None:
        """Load models or open resources. Override if needed."""

    async def close(self) -> None:
        """Release resources. Override if needed."""


class LocalEmbeddingProvider(EmbeddingProvider):
    """
    Local embedding via sentence-transformers.

    Default model: all-MiniLM-L6-v2 (384 dimensions). Inference runs in a
    worker thread so the event loop is not blocked while encoding.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", device: str = "cpu") -> None:
        self._model_name = model_name
        self._device = device
        self._model: Any = None
        self._dim: int | None = None

    @property
    def model_id(self) -> str:
        return self._model_name

    async def initialize(self) -> None:
        if self._model is not None:
            return
        self._model = await asyncio.to_thread(self._load_model)
        self._dim = self._model.get_sentence_embedding_dimension()

    def _load_model(self) -> Any:
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError:
            raise ImportError(
                "sentence-transformers is required for LocalEmbeddingProvider. "
                "Install with: pip install 'notechain-rag[embeddings]'"
            )
        LOG.info("Loading embedding model: %s", self._model_name)
        return SentenceTransformer(self._model_name, device=self._device)

    async def embed(self, texts: List[str]) -> List[List[float]]:
        if not texts:
            return []
        await self.initialize()
        embeddings = await asyncio.to_thread(
            self._model.encode,
            texts,
            show_progress_bar=False,
            normalize_embeddings=True,
        )
        return [e.tolist() for e in embeddings]

    def dimension(self) -> int:
        if self._dim is None:
            raise RuntimeError("Embedding model not loaded. Call initialize() first.")
        return self._dim

    async def close(self) -> None:
        self._model = None


class MockEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic hashed bag-of-words embeddings for tests and offline use.

    Each lowercase word token is hashed to a bucket; texts sharing words get
    similar vectors, so similarity search behaves meaningfully without a
    model download. Counts calls so cache behaviour can be asserted.
    """

    def __init__(self, dim: int = 384) -> None:
        self._dim = dim
        self.call_count = 0
        self.texts_embedded: List[str] = []

    @property
    def model_id(self) -> str:
        return f"mock-bow-{self._dim}"

    async def embed(self, texts: List[str]) -> List[List[float]]:
        self.call_count += 1
        self.texts_embedded.extend(texts)
        return [self._text_to_vec(t) for t in texts]

    def dimension(self) -> int:
        return self._dim

    def _text_to_vec(self, text: str) -> List[float]:
        vec = np.zeros(self._dim, dtype=np.float64)
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            vec[int.from_bytes(digest[:4], "big") % self._dim] += 1.0
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec.tolist()


def build_embedding_provider(backend: str = "local", **kwargs: Any) -> EmbeddingProvider:
    """
    Factory: create an EmbeddingProvider of the requested type.

    Args:
        backend: "local" (sentence-transformers) or "mock"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "local":
        return LocalEmbeddingProvider(**kwargs)
    if backend == "mock":
        return MockEmbeddingProvider(**kwargs)
    raise ValueError(f"Unknown embedding backend: {backend!r}. Supported: 'local', 'mock'")
