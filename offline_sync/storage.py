"""
Offline Sync Engine - Local Persistence

A small key-value layer under the Offline Store, Task Queue, Conflict Queue
and Response Cache. Backends raise ``StorageError``; ``PersistentStorage``
turns those into ``Result`` values and keeps an in-memory mirror so that a
failing backend degrades to "succeed in memory, skip durable persistence".
"""

import json
import logging
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from .errors import Result, StorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Fixed storage keys
OFFLINE_DATA_KEY = "offline-data-store"
SYNC_METADATA_KEY = "sync-metadata"
SYNC_QUEUE_KEY = "background-sync-queue"
CONFLICT_QUEUE_KEY = "conflict-resolution-queue"
CACHE_METADATA_KEY = "cache-metadata"
CACHE_KEY_PREFIX = "cache:"


def cache_key(tag: str) -> str:
    """Storage key holding the response map of one cache tag."""
    return f"{CACHE_KEY_PREFIX}{tag}"


# =============================================================================
# Backends
# =============================================================================

class KeyValueBackend(ABC):
    """Durable string key-value store."""

    @abstractmethod
    def read(self, key: str) -> Optional[str]:
        """Return the stored text, or None when the key is absent."""

    @abstractmethod
    def write(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove ``key``; absent keys are ignored."""

    @abstractmethod
    def keys(self) -> list[str]:
        """All stored keys."""


class MemoryBackend(KeyValueBackend):
    """Dict-backed store for tests and ephemeral sessions.

    ``quota_bytes`` simulates a browser-style quota: a write that would push
    the total stored size past it raises ``StorageError``.
    """

    def __init__(self, quota_bytes: Optional[int] = None):
        self.data: dict[str, str] = {}
        self.quota_bytes = quota_bytes
        self.available = True

    def _check_available(self) -> None:
        if not self.available:
            raise StorageError("Storage is disabled")

    def read(self, key: str) -> Optional[str]:
        self._check_available()
        return self.data.get(key)

    def write(self, key: str, value: str) -> None:
        self._check_available()
        if self.quota_bytes is not None:
            used = sum(len(v) for k, v in self.data.items() if k != key)
            if used + len(value) > self.quota_bytes:
                raise StorageError(f"Quota exceeded writing {key}")
        self.data[key] = value

    def delete(self, key: str) -> None:
        self._check_available()
        self.data.pop(key, None)

    def keys(self) -> list[str]:
        self._check_available()
        return list(self.data)


class SQLiteBackend(KeyValueBackend):
    """SQLite-based key-value store."""

    SCHEMA = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper cleanup and retry for SQLITE_BUSY."""
        conn = None
        for attempt in range(5):
            try:
                conn = sqlite3.connect(str(self.db_path), timeout=30.0)
                break
            except sqlite3.OperationalError as e:
                if "database is locked" in str(e) and attempt < 4:
                    time.sleep(0.1 * (2 ** attempt))
                else:
                    raise StorageError(f"Cannot open {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}") from e
        finally:
            if conn:
                conn.close()

    def read(self, key: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
        return row[0] if row else None

    def write(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO kv_store (key, value, updated_at)
                VALUES (?, ?, ?)
                """,
                (key, value, datetime.now(timezone.utc).isoformat()),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list[str]:
        with self._get_connection() as conn:
            return [row[0] for row in conn.execute("SELECT key FROM kv_store")]


# =============================================================================
# JSON boundary
# =============================================================================

class PersistentStorage:
    """Serializes structured values onto a backend.

    Reads go to the backend so out-of-band changes are seen, except for keys
    whose last save failed (quota, disk errors): those are served from the
    in-memory mirror until a later save of the key succeeds. The mirror is
    also served when the backend cannot answer a read.
    """

    def __init__(self, backend: KeyValueBackend):
        self.backend = backend
        self._mirror: dict[str, Any] = {}
        self._unsaved: set[str] = set()

    def is_unsaved(self, key: str) -> bool:
        """Whether ``key`` currently lives only in memory."""
        return key in self._unsaved

    def load(self, key: str) -> Result[Any]:
        """Load and decode the value under ``key`` (None when absent)."""
        if key in self._unsaved:
            return Result.success(self._mirror.get(key))

        try:
            raw = self.backend.read(key)
        except StorageError as e:
            if key in self._mirror:
                return Result(value=self._mirror[key], error=e)
            return Result.failure(e)

        if raw is None:
            self._mirror.pop(key, None)
            return Result.success(None)

        try:
            value = json.loads(raw)
        except (TypeError, ValueError) as e:
            return Result.failure(StorageError(f"Corrupt value under {key}: {e}"))

        self._mirror[key] = value
        return Result.success(value)

    def save(self, key: str, value: Any) -> Result[None]:
        """Encode and store ``value``. The mirror is updated even on failure."""
        self._mirror[key] = value
        try:
            self.backend.write(key, json.dumps(value, default=str))
        except (StorageError, TypeError, ValueError) as e:
            if not isinstance(e, StorageError):
                e = StorageError(f"Cannot serialize value under {key}: {e}")
            self._unsaved.add(key)
            return Result.failure(e)
        self._unsaved.discard(key)
        return Result.success()

    def remove(self, key: str) -> Result[None]:
        self._mirror.pop(key, None)
        result = Result.capture(lambda: self.backend.delete(key))
        if result.ok:
            self._unsaved.discard(key)
        else:
            # Keep reading the (now absent) in-memory value, not the stale backend copy
            self._unsaved.add(key)
        return result

    def keys(self, prefix: str = "") -> Result[list[str]]:
        result = Result.capture(self.backend.keys)
        names = set(result.unwrap_or([])) | set(self._mirror)
        names -= {k for k in self._unsaved if k not in self._mirror}
        return Result(
            value=sorted(k for k in names if k.startswith(prefix)),
            error=result.error,
        )


def settle(result: Result[T], default: T, action: str) -> T:
    """Log a failed storage result once and fall back to ``default``.

    When the backend failed but the mirror still had a value, that value is
    returned instead of the default.
    """
    if not result.ok:
        logger.error(f"Failed to {action}: {result.error}")
    if result.value is None:
        return default
    return result.value


def load_as(storage: PersistentStorage, key: str, kind: type, default_factory: Callable[[], T], action: str) -> T:
    """Load ``key`` expecting a ``kind`` (dict or list); anything else defaults."""
    value = settle(storage.load(key), None, action)
    if value is None:
        return default_factory()
    if not isinstance(value, kind):
        logger.error(f"Failed to {action}: expected {kind.__name__}, got {type(value).__name__}")
        return default_factory()
    return value
