"""
Local LLM client: Ollama backend.

Connects to a locally running Ollama instance at http://localhost:11434.
Default model: llama3.2:1b (small enough for a laptop CPU).
"""

from __future__ import annotations

import logging
import re
import time
from typing import Optional

import httpx

from notechain_rag.llm.llm_client import GenerationResult, LLMClient, LLMError, LLMUnavailableError

LOG = logging.getLogger("llm.local_llm")

_SPECIAL_TOKEN_RE = re.compile(r"<\|[^|>]*\|>|</?s>")


class LocalLLMClient(LLMClient):
    """
    Local LLM backend using Ollama's HTTP API.

    Requires Ollama to be running locally: https://ollama.ai
    ``transport`` is passed through to httpx (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.2:1b",
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        recheck_interval: float = 30.0,
    ) -> None:
        self._base_url = base_url
        self._model = model
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
        )
        self._available = False
        self._recheck_interval = recheck_interval
        self._next_probe = 0.0

    @property
    def model(self) -> str:
        return self._model

    async def is_available(self) -> bool:
        """
        Check if Ollama is running and the model is available.

        A positive answer is kept. A negative one is re-probed once
        ``recheck_interval`` seconds have passed, so a server started later
        is picked up without a restart.
        """
        if self._available:
            return True
        if time.monotonic() < self._next_probe:
            return False
        try:
            resp = await self._client.get("/api/tags")
            if resp.status_code == 200:
                models = resp.json().get("models", [])
                model_names = [m.get("name", "") for m in models]
                # Tags may carry a suffix (":latest"), so prefix-match
                self._available = any(self._model in name for name in model_names)
                if not self._available:
                    LOG.warning(
                        "Ollama running but model '%s' not found. Available: %s. Pull with: ollama pull %s",
                        self._model,
                        model_names,
                        self._model,
                    )
        except httpx.HTTPError as exc:
            LOG.warning("Ollama not reachable at %s: %s", self._base_url, exc)
        if not self._available:
            self._next_probe = time.monotonic() + self._recheck_interval
        return self._available

    async def initialize(self) -> None:
        if not await self.is_available():
            raise LLMUnavailableError(
                f"Ollama not available at {self._base_url}. "
                f"Start with 'ollama serve' and ensure '{self._model}' is pulled."
            )

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 256,
        temperature: float = 0.7,
        top_p: float = 0.9,
    ) -> GenerationResult:
        await self.initialize()

        start = time.perf_counter()
        try:
            resp = await self._client.post(
                "/api/generate",
                json={
                    "model": self._model,
                    "prompt": prompt,
                    "stream": False,
                    "options": {
                        "temperature": temperature,
                        "top_p": top_p,
                        "num_predict": max_tokens,
                    },
                },
            )
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise LLMError(f"Ollama generation failed: {exc}") from exc

        text = self._clean(data.get("response", ""))
        duration_ms = (time.perf_counter() - start) * 1000
        LOG.debug("Ollama generated %s tokens in %.0fms", data.get("eval_count"), duration_ms)
        return GenerationResult(
            text=text,
            tokens_generated=int(data.get("eval_count") or len(text.split())),
            duration_ms=duration_ms,
            truncated=data.get("done_reason") == "length",
        )

    @staticmethod
    def _clean(text: str) -> str:
        """Strip special tokens and surrounding whitespace from model output."""
        return _SPECIAL_TOKEN_RE.sub("", text).strip()

    async def close(self) -> None:
        await self._client.aclose()
