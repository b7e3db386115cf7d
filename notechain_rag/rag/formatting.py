"""
Query building, prompt rendering and model-output parsing.

These are cheap deterministic text heuristics: key phrases only seed the
embedding search, and the bullet/insight parsers are tied to the prompt
wording below. They live on one class so a different prompting convention
can be swapped in without touching retrieval or storage.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import List, Optional

from notechain_rag.models import ContextItem, ContextType, CurrentContext, RetrievedContext

NO_CONTEXT_SENTINEL = "No relevant context found."
CONTEXT_SEPARATOR = "\n\n---\n\n"

STOP_WORDS = frozenset(
    """
    the a an is are was were be been being have has had do does did will would
    could should may might must can need dare ought used to of in for on with at
    by from as into through during before after above below between among and
    but or yet so if because although though while where when that which who
    whom whose what this these those i you he she it we they me him her us them
    my your his its our their mine yours hers ours theirs
    """.split()
)

_NON_WORD_RE = re.compile(r"[^\w\s]")
_SENTENCE_SPLIT_RE = re.compile(r"[.!?]+")
_SENTENCE_END_RE = re.compile(r"[.!?]")
_BULLET_PREFIXES = ("- ", "* ", "• ")


class PromptFormatter:
    """Default English heuristics and prompt templates."""

    max_key_phrases = 5
    top_word_count = 10
    phrase_word_count = 5
    scanned_sentences = 10
    item_content_chars = 500

    # ── Query building ────────────────────────────────────────────────

    def extract_key_phrases(self, text: str) -> List[str]:
        """
        Pick sentences that mention the most frequent non-stop-words.

        Falls back to the frequent words themselves when no sentence
        qualifies.
        """
        words = [
            w
            for w in _NON_WORD_RE.sub(" ", text.lower()).split()
            if len(w) > 3 and w not in STOP_WORDS
        ]
        top_words = [w for w, _ in Counter(words).most_common(self.top_word_count)]
        lead_words = top_words[: self.phrase_word_count]

        phrases: List[str] = []
        for sentence in _SENTENCE_SPLIT_RE.split(text)[: self.scanned_sentences]:
            stripped = sentence.strip()
            if len(stripped) <= 20:
                continue
            lowered = sentence.lower()
            if any(word in lowered for word in lead_words):
                phrases.append(stripped)

        return phrases or top_words

    def build_context_query(self, content: str, title: Optional[str] = None) -> str:
        """Short topical query: title plus up to five key phrases."""
        parts: List[str] = []
        if title:
            parts.append(title)
        parts.extend(self.extract_key_phrases(content)[: self.max_key_phrases])

        if len(parts) < 3 and len(content) > 100:
            first_sentence = _SENTENCE_END_RE.split(content[:200])[0]
            if len(first_sentence) > 50:
                parts.append(first_sentence)

        return ". ".join(parts)

    def build_request_query(self, current: Optional[CurrentContext]) -> str:
        """Query for a suggestion request that carries no explicit query."""
        if current is None:
            return ""
        parts: List[str] = []
        if current.title:
            parts.append(current.title)
        if current.content:
            parts.append(current.content[:500])
        return ". ".join(parts)

    def extract_local_context(self, content: str, cursor_position: int) -> str:
        """
        Text around the cursor: the enclosing paragraph if it ends after the
        cursor, otherwise the enclosing sentence.
        """
        cursor = max(0, min(cursor_position, len(content)))
        before = content[:cursor]
        after = content[cursor:]

        para_break = before.rfind("\n\n")
        para_start = para_break + 2 if para_break != -1 else 0
        para_end = after.find("\n\n")

        if para_end != -1:
            return (before[para_start:] + after[:para_end]).strip()

        sentence_start = para_start
        for terminator in (". ", "! ", "? "):
            idx = before.rfind(terminator)
            if idx != -1:
                sentence_start = max(sentence_start, idx + 2)
        match = _SENTENCE_END_RE.search(after)
        tail = after[: match.end()] if match else after
        return (before[sentence_start:] + tail).strip()

    # ── Context rendering ─────────────────────────────────────────────

    def format_context_item(self, item: ContextItem) -> str:
        lines = [f"[{item.type.value.upper()}] {item.title}"]
        if item.metadata.tags:
            lines.append(f"Tags: {', '.join(item.metadata.tags)}")
        if item.metadata.due_date:
            lines.append(f"Due: {item.metadata.due_date.strftime('%Y-%m-%d')}")
        lines.append("")
        lines.append(item.excerpt[: self.item_content_chars])
        return "\n".join(lines)

    def format_context(self, context: RetrievedContext, max_length: int = 2000) -> str:
        """Render ranked items greedily until ``max_length`` characters are used."""
        if not context.has_context:
            return NO_CONTEXT_SENTINEL

        parts: List[str] = []
        used = 0
        for item in context.items:
            formatted = self.format_context_item(item)
            if used + len(formatted) > max_length:
                break
            parts.append(formatted)
            used += len(formatted)
        return CONTEXT_SEPARATOR.join(parts)

    def format_related(self, item: ContextItem) -> str:
        """One-line-per-fact description of a related item for link suggestions."""
        parts: List[str] = []
        if item.type == ContextType.NOTE:
            parts.append(f'Related note: "{item.title}"')
            if item.excerpt:
                excerpt = item.excerpt[:150].replace("\n", " ")
                parts.append(excerpt + ("..." if len(item.excerpt) > 150 else ""))
        elif item.type == ContextType.TODO:
            parts.append(f'Related task: "{item.title}"')
            if item.metadata.due_date:
                parts.append(f"Due: {item.metadata.due_date.strftime('%Y-%m-%d')}")
            if item.metadata.priority:
                parts.append(f"Priority: {item.metadata.priority}")
        else:
            parts.append(f'From "{item.title}"')
            if item.excerpt:
                parts.append(item.excerpt[:200])
        return "\n".join(parts)

    # ── Prompts ───────────────────────────────────────────────────────

    def completion_prompt(self, content: str, context: RetrievedContext) -> str:
        return (
            "Based on the following context from my notes, continue the text:\n\n"
            f"{self.format_context(context, 1500)}\n\n"
            "Current text to continue:\n"
            f'"""\n{content[-500:]}\n"""\n\n'
            "Continue naturally (1-3 sentences):"
        )

    def action_items_prompt(self, content: str) -> str:
        return (
            'Extract action items from the following text. Return each action item on a new line starting with "- ".\n\n'
            "Text:\n"
            f'"""\n{content[:2000]}\n"""\n\n'
            "Action items:"
        )

    def insight_prompt(self, content: str, context: RetrievedContext) -> str:
        return (
            "Analyze the following text and provide 2-3 insights or connections. "
            "Each insight should be a single sentence.\n\n"
            "Text:\n"
            f'"""\n{content[:2000]}\n"""\n\n'
            "Relevant context from my notes:\n"
            f"{self.format_context(context, 1000)}\n\n"
            "Insights:"
        )

    # ── Output parsing ────────────────────────────────────────────────

    def parse_action_items(self, text: str) -> List[str]:
        """Bullet-prefixed lines with more than 10 characters of body."""
        items: List[str] = []
        for line in text.splitlines():
            line = line.strip()
            for prefix in _BULLET_PREFIXES:
                if line.startswith(prefix):
                    body = line[len(prefix) :].strip()
                    if len(body) > 10:
                        items.append(body)
                    break
        return items

    def parse_insights(self, text: str, limit: int = 3) -> List[str]:
        """Non-trivial lines (over 20 chars, not the "Insights" header), at most ``limit``."""
        insights = [
            line.strip()
            for line in text.splitlines()
            if len(line.strip()) > 20 and not line.strip().startswith("Insights")
        ]
        return insights[:limit]
