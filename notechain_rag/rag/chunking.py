"""
Sliding-window text chunking with natural-boundary cuts.

Token counts are estimated at ~4 characters per token. Each cut point is
moved back to the nearest delimiter (paragraph break, line break, sentence
terminator, space, in that priority) found within a short lookback window,
and consecutive chunks share ``overlap`` tokens of text.
"""

from __future__ import annotations

import hashlib
import logging
import math
from typing import List, Optional

from notechain_rag.config import ChunkConfig
from notechain_rag.models import ContentChunk

LOG = logging.getLogger("rag.chunking")

CHARS_PER_TOKEN = 4
MAX_LOOKBACK_CHARS = 100


def content_hash(text: str) -> str:
    """Stable SHA-256 hex digest of ``text``. Drives change detection and cache keys."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _find_cut(text: str, start: int, end: int, min_chars: int, delimiters: tuple) -> int:
    """Move ``end`` back to just after the highest-priority delimiter in the lookback window."""
    lookback = min(MAX_LOOKBACK_CHARS, max(1, (end - start) // 4))
    window_start = max(start + min_chars, end - lookback)
    if window_start >= end:
        return end
    window = text[window_start:end]
    for delimiter in delimiters:
        idx = window.rfind(delimiter)
        if idx != -1:
            return window_start + idx + len(delimiter)
    return end


def chunk_text(text: str, config: Optional[ChunkConfig] = None) -> List[ContentChunk]:
    """
    Split ``text`` into overlapping chunks.

    Text that fits in one chunk is returned whole. Otherwise a
    ``max_chunk_size`` window slides forward by ``max_chunk_size - overlap``
    (adjusted to the chosen cut point). A trailing remainder too small to
    stand alone is folded into the last chunk, so the ordered chunks cover
    the whole input. Chunks whose stripped text is under ``min_chunk_size``
    are dropped.
    """
    config = config or ChunkConfig()
    if not text or not text.strip():
        return []

    if estimate_tokens(text) <= config.max_chunk_size:
        return [
            ContentChunk(
                text=text,
                index=0,
                total=1,
                start_position=0,
                end_position=len(text),
                content_hash=content_hash(text),
            )
        ]

    max_chars = config.max_chunk_size * CHARS_PER_TOKEN
    overlap_chars = config.overlap * CHARS_PER_TOKEN
    min_chars = config.min_chunk_size * CHARS_PER_TOKEN
    length = len(text)

    chunks: List[ContentChunk] = []
    start = 0
    while start < length:
        end = min(start + max_chars, length)
        if end < length:
            end = _find_cut(text, start, end, min_chars, config.split_delimiters)
            # Fold a too-short tail into this chunk rather than emit a runt.
            next_start = end - overlap_chars if end - overlap_chars > start else end
            if length - next_start < min_chars:
                end = length

        piece = text[start:end].strip()
        if piece and estimate_tokens(piece) >= config.min_chunk_size:
            chunks.append(
                ContentChunk(
                    text=piece,
                    index=len(chunks),
                    total=0,
                    start_position=start,
                    end_position=end,
                    content_hash=content_hash(piece),
                )
            )
        else:
            LOG.debug("Dropping undersized chunk at [%d, %d)", start, end)

        if end >= length:
            break
        next_start = end - overlap_chars
        start = next_start if next_start > start else end

    for chunk in chunks:
        chunk.total = len(chunks)
    return chunks
