"""Configuration management for notechain-rag.

Dataclass configuration with defaults tuned for one user's personal corpus.
Settings can be loaded from environment variables via ``AppConfig.from_env``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

VALID_METRICS = ("cosine", "euclidean", "dot")


@dataclass
class ChunkConfig:
    """Sliding-window chunking parameters. Sizes are in estimated tokens (~4 chars each)."""

    max_chunk_size: int = 512
    overlap: int = 50
    min_chunk_size: int = 100
    split_delimiters: Tuple[str, ...] = ("\n\n", "\n", ". ", "! ", "? ", " ")

    def __post_init__(self) -> None:
        if self.max_chunk_size < 1:
            raise ValueError(f"max_chunk_size must be >= 1, got {self.max_chunk_size}")
        if self.overlap < 0:
            raise ValueError(f"overlap must be >= 0, got {self.overlap}")
        if self.overlap >= self.max_chunk_size:
            raise ValueError(
                f"overlap ({self.overlap}) must be smaller than max_chunk_size ({self.max_chunk_size})"
            )
        if not 0 <= self.min_chunk_size <= self.max_chunk_size:
            raise ValueError(f"min_chunk_size must be 0-{self.max_chunk_size}, got {self.min_chunk_size}")
        self.split_delimiters = tuple(self.split_delimiters)


@dataclass
class VectorStoreConfig:
    """Vector store configuration."""

    dimensions: int = 384  # all-MiniLM-L6-v2
    metric: str = "cosine"
    max_in_memory_vectors: int = 10000
    enable_persistence: bool = True
    persistence_key: str = "notechain_vectors"
    chunk: ChunkConfig = field(default_factory=ChunkConfig)

    def __post_init__(self) -> None:
        if self.dimensions < 1:
            raise ValueError(f"dimensions must be >= 1, got {self.dimensions}")
        if self.metric not in VALID_METRICS:
            raise ValueError(f"metric must be one of {VALID_METRICS}, got {self.metric!r}")
        if self.max_in_memory_vectors < 1:
            raise ValueError(f"max_in_memory_vectors must be >= 1, got {self.max_in_memory_vectors}")


@dataclass
class SearchOptions:
    """Options for a single similarity search."""

    top_k: int = 10
    threshold: float = 0.5
    entity_types: Optional[Tuple[str, ...]] = None
    metadata_filter: Optional[Dict[str, Any]] = None
    modified_after: Optional[str] = None  # ISO-8601, inclusive
    modified_before: Optional[str] = None  # ISO-8601, inclusive
    include_content: bool = True
    timeout_ms: float = 100.0

    def __post_init__(self) -> None:
        if self.top_k < 1:
            raise ValueError(f"top_k must be >= 1, got {self.top_k}")

    def merged(self, **overrides: Any) -> "SearchOptions":
        """Return a copy with the given non-None overrides applied."""
        values = {k: v for k, v in self.__dict__.items()}
        values.update({k: v for k, v in overrides.items() if v is not None})
        return SearchOptions(**values)


@dataclass
class IndexingProgress:
    """Progress snapshot reported during batch indexing."""

    progress: float = 0.0  # percent, 0-100
    processed: int = 0
    total: int = 0
    current_item: Optional[str] = None
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "progress": self.progress,
            "processed": self.processed,
            "total": self.total,
            "current_item": self.current_item,
            "errors": list(self.errors),
        }


@dataclass
class IndexingOptions:
    """Batch indexing options."""

    batch_size: int = 10
    on_progress: Optional[Callable[[IndexingProgress], None]] = None
    skip_existing: bool = True
    force_reindex: bool = False

    def __post_init__(self) -> None:
        if self.batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {self.batch_size}")


@dataclass
class SuggestionConfig:
    """Suggestion generation tunables."""

    max_context_items: int = 5
    min_confidence: float = 0.6
    quick_min_relevance: float = 0.6

    def __post_init__(self) -> None:
        if not 0.0 <= self.min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be 0-1, got {self.min_confidence}")
        if not 0.0 <= self.quick_min_relevance <= 1.0:
            raise ValueError(f"quick_min_relevance must be 0-1, got {self.quick_min_relevance}")
        if self.max_context_items < 1:
            raise ValueError(f"max_context_items must be >= 1, got {self.max_context_items}")


@dataclass
class RAGConfig:
    """Configuration for the whole retrieval/suggestion pipeline."""

    vector_store: VectorStoreConfig = field(default_factory=VectorStoreConfig)
    search: SearchOptions = field(default_factory=SearchOptions)
    indexing: IndexingOptions = field(default_factory=IndexingOptions)
    suggestions: SuggestionConfig = field(default_factory=SuggestionConfig)

    @classmethod
    def from_env(cls) -> "RAGConfig":
        return cls(
            vector_store=VectorStoreConfig(
                dimensions=int(os.getenv("RAG_DIMENSIONS", "384")),
                metric=os.getenv("RAG_METRIC", "cosine"),
                max_in_memory_vectors=int(os.getenv("RAG_MAX_VECTORS", "10000")),
                enable_persistence=os.getenv("RAG_PERSISTENCE", "1") not in ("0", "false", "no"),
            ),
            search=SearchOptions(
                top_k=int(os.getenv("RAG_TOP_K", "10")),
                threshold=float(os.getenv("RAG_THRESHOLD", "0.5")),
                timeout_ms=float(os.getenv("RAG_SEARCH_TIMEOUT_MS", "100")),
            ),
            suggestions=SuggestionConfig(
                min_confidence=float(os.getenv("RAG_MIN_CONFIDENCE", "0.6")),
            ),
        )


@dataclass
class AppConfig:
    """Top-level application configuration."""

    data_dir: Path = Path(".notechain")
    store_backend: str = "sqlite"  # "sqlite", "memory"
    embedding_backend: str = "local"  # "local", "mock"
    embedding_model: str = "all-MiniLM-L6-v2"
    llm_backend: str = "local"  # "local", "mock"
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llama3.2:1b"
    owner_id: str = "local-user"
    rag: RAGConfig = field(default_factory=RAGConfig)
    log_level: str = "INFO"

    @property
    def db_path(self) -> Path:
        return self.data_dir / "vectors.sqlite3"

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            data_dir=Path(os.getenv("NOTECHAIN_DATA_DIR", ".notechain")),
            store_backend=os.getenv("NOTECHAIN_STORE_BACKEND", "sqlite"),
            embedding_backend=os.getenv("NOTECHAIN_EMBEDDING_BACKEND", "local"),
            embedding_model=os.getenv("NOTECHAIN_EMBEDDING_MODEL", "all-MiniLM-L6-v2"),
            llm_backend=os.getenv("NOTECHAIN_LLM_BACKEND", "local"),
            ollama_base_url=os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
            ollama_model=os.getenv("OLLAMA_MODEL", "llama3.2:1b"),
            owner_id=os.getenv("NOTECHAIN_OWNER_ID", "local-user"),
            rag=RAGConfig.from_env(),
            log_level=os.getenv("NOTECHAIN_LOG_LEVEL", "INFO").upper(),
        )
