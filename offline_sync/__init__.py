"""
Offline Sync Engine

Client-side offline-first synchronization: a tagged response cache, a
durable checksummed offline store, a prioritized retrying task queue, a
sync coordinator and conflict resolution against a remote resource API.
"""

__version__ = "0.1.0"

from .cache import DEFAULT_CACHE_POLICIES, ResponseCache
from .config import SyncSettings, get_settings
from .conflicts import ConflictQueue, ConflictResolver, has_conflict, merge_payloads
from .connectivity import ConnectivityMonitor
from .coordinator import SyncCoordinator
from .engine import OfflineSyncEngine, create_engine, engine_session
from .errors import (
    ClientError,
    IntegrityError,
    NetworkError,
    Result,
    ServerError,
    StorageError,
    SyncError,
)
from .models import (
    CachePolicy,
    CacheStrategy,
    ConflictRecord,
    DrainResult,
    Priority,
    ResolutionStrategy,
    StoredRecord,
    SyncPassResult,
    SyncState,
    SyncTask,
    TaskKind,
)
from .remote import RemoteClient
from .storage import MemoryBackend, PersistentStorage, SQLiteBackend
from .store import OfflineStore
from .task_queue import TaskHandle, TaskQueue

__all__ = [
    # Main classes
    "OfflineSyncEngine",
    "ResponseCache",
    "OfflineStore",
    "TaskQueue",
    "TaskHandle",
    "SyncCoordinator",
    "ConflictQueue",
    "ConflictResolver",
    "ConnectivityMonitor",
    "RemoteClient",

    # Storage
    "PersistentStorage",
    "MemoryBackend",
    "SQLiteBackend",

    # Configuration
    "SyncSettings",
    "get_settings",
    "DEFAULT_CACHE_POLICIES",

    # Data models
    "CachePolicy",
    "CacheStrategy",
    "ConflictRecord",
    "DrainResult",
    "Priority",
    "ResolutionStrategy",
    "StoredRecord",
    "SyncPassResult",
    "SyncState",
    "SyncTask",
    "TaskKind",
    "Result",

    # Exceptions
    "SyncError",
    "NetworkError",
    "ServerError",
    "ClientError",
    "StorageError",
    "IntegrityError",

    # Convenience functions
    "create_engine",
    "engine_session",
    "has_conflict",
    "merge_payloads",
]
