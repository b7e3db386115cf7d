"""
Namespaced durable key-value storage backing the vector store's mirror.

SQLite is the primary backend (stdlib sqlite3, WAL mode). Values are JSON
objects. Backends raise PersistenceError on I/O failure; the vector store
catches it and continues in memory-only mode.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

LOG = logging.getLogger("rag.kv_store")

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv (
    namespace TEXT NOT NULL,
    key TEXT NOT NULL,
    value_json TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (namespace, key)
);

CREATE INDEX IF NOT EXISTS idx_kv_namespace ON kv(namespace);
"""


class PersistenceError(Exception):
    """Raised when the durable store cannot complete an operation."""

    pass


class KeyValueStore(ABC):
    """Abstract async key-value store scoped to one namespace."""

    def __init__(self, namespace: str) -> None:
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    @abstractmethod
    def with_namespace(self, namespace: str) -> "KeyValueStore":
        """Return a store over the same backing storage, scoped to ``namespace``."""

    @abstractmethod
    async def put(self, key: str, value: Dict[str, Any]) -> None:
        """Insert or replace ``key``."""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the value for ``key`` or None."""

    @abstractmethod
    async def get_all(self) -> List[Dict[str, Any]]:
        """Return every value in the namespace."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key in the namespace."""

    async def close(self) -> None:
        """Release resources. Override if needed."""


class InMemoryKeyValueStore(KeyValueStore):
    """Process-local store. Namespaces derived via ``with_namespace`` share one dict."""

    def __init__(self, namespace: str = "default", _data: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        super().__init__(namespace)
        self._data: Dict[str, Dict[str, Any]] = _data if _data is not None else {}

    def _bucket(self) -> Dict[str, Any]:
        return self._data.setdefault(self._namespace, {})

    def with_namespace(self, namespace: str) -> "InMemoryKeyValueStore":
        return InMemoryKeyValueStore(namespace, _data=self._data)

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        # Round-trip through JSON so stored values never alias caller objects.
        self._bucket()[key] = json.loads(json.dumps(value))

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        value = self._bucket().get(key)
        return json.loads(json.dumps(value)) if value is not None else None

    async def get_all(self) -> List[Dict[str, Any]]:
        return [json.loads(json.dumps(v)) for v in self._bucket().values()]

    async def delete(self, key: str) -> None:
        self._bucket().pop(key, None)

    async def clear(self) -> None:
        self._bucket().clear()


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed store. Namespaces derived via ``with_namespace`` share one connection."""

    def __init__(
        self,
        db_path: Path,
        namespace: str = "default",
        _conn: Optional[sqlite3.Connection] = None,
    ) -> None:
        super().__init__(namespace)
        self._db_path = Path(db_path)
        if _conn is not None:
            self._conn = _conn
            self._owns_conn = False
            return
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self._db_path))
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(_SCHEMA_SQL)
            self._conn.commit()
        except (OSError, sqlite3.Error) as exc:
            raise PersistenceError(f"Cannot open key-value store at {self._db_path}: {exc}") from exc
        self._owns_conn = True
        LOG.debug("SQLite key-value store at %s", self._db_path)

    def with_namespace(self, namespace: str) -> "SQLiteKeyValueStore":
        return SQLiteKeyValueStore(self._db_path, namespace, _conn=self._conn)

    def _execute(self, sql: str, params: tuple = (), commit: bool = False) -> List[tuple]:
        try:
            rows = self._conn.execute(sql, params).fetchall()
            if commit:
                self._conn.commit()
            return rows
        except sqlite3.Error as exc:
            raise PersistenceError(f"{self._namespace}: {exc}") from exc

    async def put(self, key: str, value: Dict[str, Any]) -> None:
        self._execute(
            "INSERT OR REPLACE INTO kv (namespace, key, value_json, updated_at) VALUES (?, ?, ?, ?)",
            (self._namespace, key, json.dumps(value), datetime.now(timezone.utc).isoformat()),
            commit=True,
        )

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        rows = self._execute(
            "SELECT value_json FROM kv WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        )
        return json.loads(rows[0][0]) if rows else None

    async def get_all(self) -> List[Dict[str, Any]]:
        rows = self._execute(
            "SELECT key, value_json FROM kv WHERE namespace = ? ORDER BY updated_at, key",
            (self._namespace,),
        )
        values: List[Dict[str, Any]] = []
        for key, raw in rows:
            try:
                values.append(json.loads(raw))
            except json.JSONDecodeError:
                LOG.warning("Skipping malformed value %r in namespace %s", key, self._namespace)
        return values

    async def delete(self, key: str) -> None:
        self._execute(
            "DELETE FROM kv WHERE namespace = ? AND key = ?",
            (self._namespace, key),
            commit=True,
        )

    async def clear(self) -> None:
        self._execute("DELETE FROM kv WHERE namespace = ?", (self._namespace,), commit=True)

    async def close(self) -> None:
        if self._owns_conn:
            try:
                self._conn.close()
            except sqlite3.Error as exc:
                LOG.warning("Error closing %s: %s", self._db_path, exc)


def build_kv_store(backend: str = "sqlite", **kwargs: Any) -> KeyValueStore:
    """
    Factory: create a KeyValueStore of the requested type.

    Args:
        backend: "sqlite" (requires ``db_path``) or "memory"
        **kwargs: Backend-specific configuration

    Raises:
        ValueError: Unknown backend
    """
    if backend == "sqlite":
        return SQLiteKeyValueStore(**kwargs)
    if backend == "memory":
        return InMemoryKeyValueStore(**kwargs)
    raise ValueError(f"Unknown key-value store backend: {backend!r}. Supported: 'sqlite', 'memory'")
