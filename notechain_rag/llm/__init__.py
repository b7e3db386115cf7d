"""Local language-model clients used for suggestion generation."""

from notechain_rag.llm.llm_client import (
    GenerationResult,
    LLMClient,
    LLMError,
    LLMUnavailableError,
    MockLLMClient,
    build_llm_client,
)

__all__ = [
    "GenerationResult",
    "LLMClient",
    "LLMError",
    "LLMUnavailableError",
    "MockLLMClient",
    "build_llm_client",
]
