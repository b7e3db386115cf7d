"""
Abstract language-model client for suggestion generation.

Defines the LLMClient ABC and MockLLMClient for testing. The local Ollama
backend lives in local_llm.py. Every backend must run on-device: no
suggestion path sends note content off the machine.
"""

from __future__ import annotations

import abc
import logging
import time
from dataclasses import dataclass
from typing import List, Optional

LOG = logging.getLogger("llm.llm_client")

MAX_SUMMARY_INPUT_CHARS = 4000
SUMMARY_STYLES = ("concise", "detailed", "bullet-points")


class LLMError(Exception):
    """Raised when a generation request fails."""

    pass


class LLMUnavailableError(LLMError):
    """Raised when the local model server is not reachable or the model is missing."""

    pass


@dataclass
class GenerationResult:
    text: str
    tokens_generated: int = 0
    duration_ms: float = 0.0
    truncated: bool = False


def build_summary_prompt(text: str, style: str = "concise") -> str:
    """Summarization prompt for ``style`` over at most ``MAX_SUMMARY_INPUT_CHARS`` of input."""
    if style not in SUMMARY_STYLES:
        raise ValueError(f"style must be one of {SUMMARY_STYLES}, got {style!r}")
    if len(text) > MAX_SUMMARY_INPUT_CHARS:
        text = text[:MAX_SUMMARY_INPUT_CHARS] + "..."
    if style == "bullet-points":
        return f"Summarize the following text as bullet points:\n\n{text}\n\nBullet points summary:"
    if style == "detailed":
        return f"Provide a detailed summary of the following text:\n\n{text}\n\nDetailed summary:"
    return f"Summarize the following text concisely:\n\n{text}\n\nSummary:"


class LLMClient(abc.ABC):
    """Abstract base class for local text generation backends."""

    async def initialize(self) -> None:
        """Check the backend and load what it needs. Override if needed."""
        pass

    @abc.abstractmethod
    async def generate(
        self,
        prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ) -> GenerationResult:
        """
        Generate a completion for ``prompt``.

        Raises:
            LLMError: generation failed
        """
        ...

    async def summarize(self, text: str, style: str = "concise", max_length: int = 150) -> GenerationResult:
        """Summarize ``text`` with a style-specific prompt at low temperature."""
        start = time.perf_counter()
        result = await self.generate(
            build_summary_prompt(text, style),
            max_tokens=max_length,
            temperature=0.3,
        )
        result.duration_ms = (time.perf_counter() - start) * 1000
        return result

    async def close(self) -> None:
        """Clean up resources (e.g., HTTP clients). Override if needed."""
        pass


class MockLLMClient(LLMClient):
    """
    Mock LLM client for testing.

    Returns canned responses in order, cycling when exhausted. Records every
    prompt. If ``fail_with`` is set, every call raises it instead.
    """

    def __init__(
        self,
        responses: Optional[List[str]] = None,
        fail_with: Optional[Exception] = None,
    ) -> None:
        self._responses = responses or []
        self._fail_with = fail_with
        self._call_count = 0
        self.prompts: List[str] = []

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ) -> GenerationResult:
        self._call_count += 1
        self.prompts.append(prompt)
        if self._fail_with is not None:
            raise self._fail_with
        if self._responses:
            text = self._responses[(self._call_count - 1) % len(self._responses)]
        else:
            text = "This is a generated response."
        return GenerationResult(text=text, tokens_generated=len(text.split()))

    @property
    def call_count(self) -> int:
        return self._call_count


def build_llm_client(backend: str = "local", **kwargs) -> LLMClient:
    """
    Factory: create an LLMClient of the requested type.

    Args:
        backend: "local" (Ollama) or "mock"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "local":
        from notechain_rag.llm.local_llm import LocalLLMClient

        return LocalLLMClient(**kwargs)
    if backend == "mock":
        return MockLLMClient(**kwargs)
    raise ValueError(f"Unknown LLM backend: {backend!r}. Supported: 'local', 'mock'")
