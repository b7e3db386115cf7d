"""
Core data models for retrieval and suggestions.

Internal values are dataclasses with explicit ``to_dict``/``from_dict`` for
the durable mirror. Upstream entities handed to the indexer are Pydantic
models, validated at the boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import numpy as np
from pydantic import BaseModel, Field


class EntityType(str, Enum):
    """Kinds of indexed entities."""

    NOTE = "note"
    TODO = "todo"
    DOCUMENT_CHUNK = "document-chunk"


class ContextType(str, Enum):
    """Kinds of retrieved context items."""

    NOTE = "note"
    TODO = "todo"
    DOCUMENT_EXCERPT = "document_excerpt"

    @classmethod
    def from_entity_type(cls, entity_type: str) -> "ContextType":
        if entity_type == EntityType.DOCUMENT_CHUNK.value:
            return cls.DOCUMENT_EXCERPT
        return cls(entity_type)


class SuggestionType(str, Enum):
    COMPLETION = "completion"
    RELATED = "related"
    ACTION_ITEMS = "action_items"
    SUMMARY = "summary"
    INSIGHT = "insight"


class ActionType(str, Enum):
    INSERT = "insert"
    LINK = "link"
    CREATE_TODO = "create_todo"
    NAVIGATE = "navigate"


class TodoPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class TodoStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


PRIORITY_WEIGHTS: Dict[str, int] = {
    TodoPriority.CRITICAL.value: 4,
    TodoPriority.HIGH.value: 3,
    TodoPriority.MEDIUM.value: 2,
    TodoPriority.LOW.value: 1,
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string (or pass through a datetime). Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ── Index records ─────────────────────────────────────────────────────────────


@dataclass
class VectorMetadata:
    """Filterable metadata attached to every vector record."""

    owner_id: str
    modified_at: str
    title: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    container_id: Optional[str] = None  # notebook for notes, project for todos
    priority: Optional[str] = None
    status: Optional[str] = None
    due_date: Optional[str] = None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner_id": self.owner_id,
            "modified_at": self.modified_at,
            "title": self.title,
            "tags": list(self.tags),
            "container_id": self.container_id,
            "priority": self.priority,
            "status": self.status,
            "due_date": self.due_date,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorMetadata":
        return cls(
            owner_id=data.get("owner_id", ""),
            modified_at=data.get("modified_at", ""),
            title=data.get("title"),
            tags=list(data.get("tags") or []),
            container_id=data.get("container_id"),
            priority=data.get("priority"),
            status=data.get("status"),
            due_date=data.get("due_date"),
        )


@dataclass
class VectorRecord:
    """
    One embedded chunk of an entity.

    ``content`` is kept in memory only and is never written to the durable
    mirror, so plaintext does not sit at rest next to the vectors.
    """

    id: str
    entity_type: str
    entity_id: str
    embedding: Any  # np.ndarray once stored; any float sequence on input
    content_hash: str
    metadata: VectorMetadata
    indexed_at: datetime = field(default_factory=utcnow)
    chunk_index: int = 0
    total_chunks: int = 1
    content: Optional[str] = None

    @staticmethod
    def make_id(entity_id: str, chunk_index: int) -> str:
        return f"{entity_id}_chunk_{chunk_index}"

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for persistence. Excludes ``content``."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "embedding": [float(x) for x in np.asarray(self.embedding).tolist()],
            "content_hash": self.content_hash,
            "indexed_at": self.indexed_at.isoformat(),
            "chunk_index": self.chunk_index,
            "total_chunks": self.total_chunks,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorRecord":
        return cls(
            id=data["id"],
            entity_type=data.get("entity_type", EntityType.NOTE.value),
            entity_id=data["entity_id"],
            embedding=np.asarray(data["embedding"], dtype=np.float64),
            content_hash=data.get("content_hash", ""),
            indexed_at=parse_timestamp(data.get("indexed_at")) or utcnow(),
            chunk_index=int(data.get("chunk_index", 0)),
            total_chunks=int(data.get("total_chunks", 1)),
            metadata=VectorMetadata.from_dict(data.get("metadata") or {}),
        )


@dataclass
class EmbeddingCacheEntry:
    """Embedding keyed by content hash, independent of which entity produced it."""

    content_hash: str
    embedding: List[float]
    model_id: str
    cached_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content_hash": self.content_hash,
            "embedding": list(self.embedding),
            "model_id": self.model_id,
            "cached_at": self.cached_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmbeddingCacheEntry":
        return cls(
            content_hash=data["content_hash"],
            embedding=[float(x) for x in data["embedding"]],
            model_id=data.get("model_id", ""),
            cached_at=parse_timestamp(data.get("cached_at")) or utcnow(),
        )


@dataclass
class ContentChunk:
    """A transient span of source text. Offsets are [start_position, end_position)."""

    text: str
    index: int
    total: int
    start_position: int
    end_position: int
    content_hash: str


@dataclass
class VectorSearchResult:
    record: VectorRecord
    score: float
    excerpt: Optional[str] = None


@dataclass
class StoreStats:
    vector_count: int
    cache_size: int
    memory_usage: int  # bytes, approximate
    persistence_active: bool = False
    cache_hits: int = 0
    cache_misses: int = 0
    searches: int = 0
    avg_search_time_ms: float = 0.0


# ── Retrieval values ──────────────────────────────────────────────────────────


@dataclass
class ContextSource:
    entity_id: str
    entity_type: str
    chunk_index: Optional[int] = None


@dataclass
class ContextMetadata:
    tags: List[str] = field(default_factory=list)
    due_date: Optional[datetime] = None
    priority: Optional[str] = None
    status: Optional[str] = None


@dataclass
class ContextItem:
    """A search hit promoted to a retrieval-facing value."""

    type: ContextType
    id: str
    title: str
    excerpt: str
    relevance: float
    source: ContextSource
    metadata: ContextMetadata = field(default_factory=ContextMetadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "id": self.id,
            "title": self.title,
            "excerpt": self.excerpt,
            "relevance": self.relevance,
            "source": {
                "entity_id": self.source.entity_id,
                "entity_type": self.source.entity_type,
                "chunk_index": self.source.chunk_index,
            },
            "metadata": {
                "tags": list(self.metadata.tags),
                "due_date": self.metadata.due_date.isoformat() if self.metadata.due_date else None,
                "priority": self.metadata.priority,
                "status": self.metadata.status,
            },
        }


@dataclass
class RetrievedContext:
    query: str
    items: List[ContextItem] = field(default_factory=list)
    total_results: int = 0
    retrieval_time_ms: float = 0.0
    has_context: bool = False

    @classmethod
    def empty(cls, query: str = "") -> "RetrievedContext":
        return cls(query=query)


# ── Suggestions ───────────────────────────────────────────────────────────────


@dataclass
class SuggestionAction:
    type: ActionType
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Suggestion:
    id: str
    type: SuggestionType
    content: str
    confidence: float
    source_context: List[ContextItem] = field(default_factory=list)
    action: Optional[SuggestionAction] = None
    generated_at: datetime = field(default_factory=utcnow)
    processing_time_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "content": self.content,
            "confidence": self.confidence,
            "source_context": [c.to_dict() for c in self.source_context],
            "action": (
                {"type": self.action.type.value, "payload": dict(self.action.payload)}
                if self.action
                else None
            ),
            "generated_at": self.generated_at.isoformat(),
            "processing_time_ms": self.processing_time_ms,
        }


@dataclass
class SuggestionResponse:
    suggestions: List[Suggestion]
    context: RetrievedContext
    total_time_ms: float = 0.0


@dataclass
class CurrentContext:
    """What the user is looking at right now."""

    content: str
    type: EntityType = EntityType.NOTE
    title: Optional[str] = None
    cursor_position: Optional[int] = None


@dataclass
class SuggestionFilters:
    tags: List[str] = field(default_factory=list)
    modified_after: Optional[datetime] = None
    modified_before: Optional[datetime] = None


@dataclass
class SuggestionRequest:
    suggestion_type: SuggestionType
    current_context: Optional[CurrentContext] = None
    max_suggestions: Optional[int] = None
    query: Optional[str] = None
    filters: Optional[SuggestionFilters] = None


# ── Upstream entities ─────────────────────────────────────────────────────────


class DecryptedContent(BaseModel):
    """Plaintext supplied by the caller after decryption. Never persisted."""

    title: Optional[str] = None
    content: Optional[str] = None
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)


class IndexableEntity(BaseModel):
    """A note, task or document chunk handed to the indexer."""

    id: str
    owner_id: str
    type: EntityType
    updated_at: datetime
    decrypted_content: Optional[DecryptedContent] = None
    tags: List[str] = Field(default_factory=list)
    priority: Optional[TodoPriority] = None
    status: Optional[TodoStatus] = None
    due_date: Optional[datetime] = None
    container_id: Optional[str] = None

    @property
    def label(self) -> str:
        if self.decrypted_content and self.decrypted_content.title:
            return self.decrypted_content.title
        return self.id
