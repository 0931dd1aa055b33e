"""
Offline Sync Engine - Data Models

Records persisted by the Offline Store, Task Queue, Response Cache and
Conflict Queue, plus the small result/state values handed back to callers.
Every persisted model round-trips through ``to_dict``/``from_dict`` so the
storage layer only ever sees plain JSON structures.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def compute_checksum(payload: Any) -> str:
    """Calculate SHA256 checksum of a JSON-compatible payload."""
    data_str = json.dumps(payload, sort_keys=True, default=str)
    return hashlib.sha256(data_str.encode()).hexdigest()


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Enums
# =============================================================================

class Priority(str, Enum):
    """Task priority tier. Higher rank drains first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


class TaskKind(str, Enum):
    """Remote write operation carried by a SyncTask."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    CUSTOM = "custom-action"


class CacheStrategy(str, Enum):
    """Declarative read strategy attached to a cache tag.

    The cache does not enforce these; callers decide when to hit the
    network and when to consult the cache.
    """
    CACHE_FIRST = "cache-first"
    NETWORK_FIRST = "network-first"
    STALE_WHILE_REVALIDATE = "stale-while-revalidate"
    NETWORK_ONLY = "network-only"
    CACHE_ONLY = "cache-only"


class ResolutionStrategy(str, Enum):
    """How to resolve a sync conflict."""
    CLIENT_WINS = "client-wins"
    SERVER_WINS = "server-wins"
    MERGE = "merge"
    MANUAL = "manual"


# =============================================================================
# Persisted records
# =============================================================================

@dataclass
class StoredRecord:
    """A locally written entity awaiting synchronization."""
    id: str
    resource_type: str
    payload: Any
    local_timestamp: datetime
    version: int
    checksum: str

    @staticmethod
    def make_key(resource_type: str, record_id: str) -> str:
        return f"{resource_type}-{record_id}"

    @property
    def key(self) -> str:
        return self.make_key(self.resource_type, self.id)

    def is_intact(self) -> bool:
        """Check the payload still matches the checksum taken at write time."""
        return compute_checksum(self.payload) == self.checksum

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource_type": self.resource_type,
            "payload": self.payload,
            "local_timestamp": self.local_timestamp.isoformat(),
            "version": self.version,
            "checksum": self.checksum,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StoredRecord":
        return cls(
            id=d["id"],
            resource_type=d["resource_type"],
            payload=d["payload"],
            local_timestamp=datetime.fromisoformat(d["local_timestamp"]),
            version=int(d["version"]),
            checksum=d["checksum"],
        )


@dataclass
class SyncTask:
    """A pending remote write operation in the Task Queue."""
    id: str
    kind: TaskKind
    payload: dict
    created_at: datetime = field(default_factory=utcnow)
    retry_count: int = 0
    max_retries: int = 3
    priority: Priority = Priority.MEDIUM
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def sort_key(self) -> tuple[int, datetime]:
        """Priority descending, then FIFO within a tier."""
        return (-self.priority.rank, self.created_at)

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "priority": self.priority.value,
            "last_attempt_at": self.last_attempt_at.isoformat() if self.last_attempt_at else None,
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "SyncTask":
        return cls(
            id=d["id"],
            kind=TaskKind(d["kind"]),
            payload=d["payload"],
            created_at=datetime.fromisoformat(d["created_at"]),
            retry_count=d.get("retry_count", 0),
            max_retries=d.get("max_retries", 3),
            priority=Priority(d.get("priority", "medium")),
            last_attempt_at=_parse_dt(d.get("last_attempt_at")),
            last_error=d.get("last_error"),
        )


@dataclass(frozen=True)
class CachePolicy:
    """Expiry and size policy for one cache tag."""
    strategy: CacheStrategy
    max_entries: Optional[int] = None
    max_age_seconds: Optional[int] = None


@dataclass
class CachedResponse:
    """A previously fetched read result."""
    resource_key: str
    body: Any
    cached_at: datetime
    tag: str

    def age_seconds(self, now: datetime) -> float:
        return (now - self.cached_at).total_seconds()

    def is_expired(self, policy: CachePolicy, now: datetime) -> bool:
        if not policy.max_age_seconds:
            return False
        return self.age_seconds(now) > policy.max_age_seconds

    def to_dict(self) -> dict:
        return {
            "resource_key": self.resource_key,
            "body": self.body,
            "cached_at": self.cached_at.isoformat(),
            "tag": self.tag,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "CachedResponse":
        return cls(
            resource_key=d["resource_key"],
            body=d["body"],
            cached_at=datetime.fromisoformat(d["cached_at"]),
            tag=d["tag"],
        )


@dataclass
class ConflictRecord:
    """A divergence between a local write and the server's copy."""
    id: str
    resource_type: str
    client_payload: Any
    server_payload: Any
    detected_at: datetime = field(default_factory=utcnow)

    @property
    def key(self) -> str:
        return StoredRecord.make_key(self.resource_type, self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "resource_type": self.resource_type,
            "client_payload": self.client_payload,
            "server_payload": self.server_payload,
            "detected_at": self.detected_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: dict) -> "ConflictRecord":
        return cls(
            id=d["id"],
            resource_type=d["resource_type"],
            client_payload=d["client_payload"],
            server_payload=d["server_payload"],
            detected_at=datetime.fromisoformat(d["detected_at"]),
        )


# =============================================================================
# Results and state
# =============================================================================

@dataclass
class DrainResult:
    """Counts from one pass over the Task Queue."""
    processed: int = 0
    failed: int = 0
    deferred: int = 0


@dataclass
class SyncPassResult:
    """Counts from one reconciliation pass, queue drain included."""
    synced: int = 0
    conflicts: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    timestamp: datetime = field(default_factory=utcnow)


@dataclass
class TaskOutcome:
    """Final outcome of a task, delivered through its TaskHandle."""
    task_id: str
    success: bool
    data: Any = None
    error: Optional[str] = None


@dataclass(frozen=True)
class SyncState:
    """Snapshot exposed to the UI and notification layer."""
    is_online: bool
    is_reachable: bool
    pending_task_count: int
    sync_in_progress: bool
    last_online: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "is_online": self.is_online,
            "is_reachable": self.is_reachable,
            "pending_task_count": self.pending_task_count,
            "sync_in_progress": self.sync_in_progress,
            "last_online": self.last_online.isoformat() if self.last_online else None,
        }
