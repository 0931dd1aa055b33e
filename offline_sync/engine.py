"""
Offline Sync Engine - Wiring

Builds the services from settings and hands them to each other explicitly;
nothing here is a module-level singleton, so several engines (one per test,
one per profile) can coexist over different storage backends.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

import httpx

from .cache import ResponseCache
from .config import SyncSettings, get_settings
from .conflicts import ConflictQueue, ConflictResolver
from .connectivity import ConnectivityMonitor
from .coordinator import SyncCoordinator
from .errors import StorageError
from .models import Clock, ConflictRecord, ResolutionStrategy, SyncPassResult, SyncState, utcnow
from .remote import RemoteClient
from .storage import KeyValueBackend, MemoryBackend, PersistentStorage, SQLiteBackend
from .store import OfflineStore
from .task_queue import BackgroundSyncRegistrar, TaskQueue

logger = logging.getLogger(__name__)


def open_backend(settings: SyncSettings) -> KeyValueBackend:
    """Open the SQLite backend, falling back to memory when the disk is unusable."""
    try:
        return SQLiteBackend(settings.storage_path)
    except (StorageError, OSError) as e:
        logger.error(f"Durable storage unavailable, keeping data in memory only: {e}")
        return MemoryBackend()


class OfflineSyncEngine:
    """All offline-sync services for one client, wired together."""

    def __init__(
        self,
        settings: Optional[SyncSettings] = None,
        backend: Optional[KeyValueBackend] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        registrar: Optional[BackgroundSyncRegistrar] = None,
        clock: Clock = utcnow,
        initially_online: bool = True,
    ):
        self.settings = settings or get_settings()
        self.storage = PersistentStorage(backend or open_backend(self.settings))
        self.remote = RemoteClient(self.settings, transport=transport)

        self.cache = ResponseCache(self.storage, clock=clock)
        self.store = OfflineStore(self.storage, clock=clock)
        self.queue = TaskQueue(
            self.storage,
            self.remote,
            clock=clock,
            retry_delays=self.settings.retry_delays,
            default_max_retries=self.settings.default_max_retries,
            default_priority=self.settings.default_priority,
            registrar=registrar,
            auto_drain=not self.settings.background_sync_available,
            debounce=self.settings.immediate_drain_debounce,
        )
        self.conflicts = ConflictQueue(self.storage, clock=clock)
        self.resolver = ConflictResolver(
            self.conflicts,
            self.store,
            self.remote,
            self.settings.client_authoritative_fields,
        )
        self.connectivity = ConnectivityMonitor(
            self.remote.health_check,
            timeout=self.settings.probe_timeout,
            initially_online=initially_online,
            clock=clock,
        )
        self.coordinator = SyncCoordinator(
            self.store, self.queue, self.conflicts, self.remote, self.connectivity
        )

    # === Lifecycle ===

    async def start(self, periodic: bool = True) -> None:
        """Probe connectivity, recover pending work, start timers."""
        if await self.connectivity.check():
            await self.queue.process_pending_on_startup()
        self.cache.purge_expired()
        if periodic:
            self.coordinator.start_periodic_sync(self.settings.periodic_sync_interval)
            self.cache.start_janitor(self.settings.cache_janitor_interval)
        logger.info("Offline sync engine started")

    async def close(self) -> None:
        """Stop timers and release the HTTP client."""
        await self.coordinator.stop_periodic_sync()
        await self.cache.stop_janitor()
        await self.queue.close()
        await self.remote.close()
        logger.info("Offline sync engine closed")

    # === Facade ===

    def store_offline(self, resource_type: str, record_id: str, payload: Any) -> None:
        self.store.store(resource_type, record_id, payload)

    def get_offline(self, resource_type: str, record_id: str) -> Optional[Any]:
        return self.store.get(resource_type, record_id)

    async def force_sync(self) -> SyncPassResult:
        return await self.coordinator.force_sync()

    async def resolve_conflict(
        self,
        record_id: str,
        resource_type: str,
        strategy: Union[ResolutionStrategy, str],
        manual_payload: Any = None,
    ) -> bool:
        return await self.resolver.resolve(record_id, resource_type, strategy, manual_payload)

    def pending_conflicts(self) -> list[ConflictRecord]:
        return self.conflicts.pending()

    def clear_conflict(self, resource_type: str, record_id: str) -> bool:
        """Operator override: drop a conflict without resolving it."""
        return self.conflicts.remove(resource_type, record_id)

    def get_state(self) -> SyncState:
        return self.coordinator.get_state()

    def clear_offline_data(self) -> None:
        """Drop offline records, versions and conflicts."""
        self.store.clear()
        self.conflicts.clear()


# =============================================================================
# Convenience Functions
# =============================================================================

async def create_engine(
    settings: Optional[SyncSettings] = None,
    auto_start: bool = False,
    **kwargs,
) -> OfflineSyncEngine:
    """
    Create and optionally start an engine.

    Args:
        settings: Optional configuration
        auto_start: Whether to probe, recover pending tasks and start timers
        **kwargs: Passed to ``OfflineSyncEngine``

    Returns:
        Configured OfflineSyncEngine instance
    """
    engine = OfflineSyncEngine(settings, **kwargs)
    if auto_start:
        await engine.start()
    return engine


@asynccontextmanager
async def engine_session(settings: Optional[SyncSettings] = None, **kwargs):
    """
    Context manager for an engine session.

    Usage:
        async with engine_session() as engine:
            engine.store_offline("notes", "n1", {"text": "hello"})
            await engine.force_sync()
    """
    engine = OfflineSyncEngine(settings, **kwargs)
    try:
        yield engine
    finally:
        await engine.close()
