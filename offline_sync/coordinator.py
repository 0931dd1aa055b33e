"""
Offline Sync Engine - Synchronization Coordinator

Stateless orchestration of one reconciliation pass:

1. For every intact Offline Store record, fetch the server copy.
   Absent -> create it; success removes the local record.
2. Present and newer than the local write -> conflict (queued, record kept).
   Otherwise push the local payload as an update; success removes the record,
   failure leaves it for the next pass.
3. Drain the Task Queue and fold its counts into the pass totals.

Only one pass runs at a time; overlapping triggers return zero counts.
Passes are triggered by a confirmed reconnect, a periodic timer while
connected, or an explicit force-sync.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from .conflicts import ConflictQueue, has_conflict
from .connectivity import ConnectivityMonitor
from .errors import SyncError
from .models import ConflictRecord, StoredRecord, SyncPassResult, SyncState
from .store import OfflineStore
from .task_queue import TaskQueue

logger = logging.getLogger(__name__)

StateCallback = Callable[[SyncState], None]
ConflictCallback = Callable[[ConflictRecord], None]


class SyncCoordinator:
    """Reconciles the Offline Store against the server, then drains the queue."""

    def __init__(
        self,
        store: OfflineStore,
        queue: TaskQueue,
        conflicts: ConflictQueue,
        remote,
        connectivity: ConnectivityMonitor,
    ):
        self.store = store
        self.queue = queue
        self.conflicts = conflicts
        self.remote = remote
        self.connectivity = connectivity

        self._sync_in_progress = False
        self._state_callbacks: list[StateCallback] = []
        self._conflict_callbacks: list[ConflictCallback] = []
        self._periodic_task: Optional[asyncio.Task] = None

    @property
    def sync_in_progress(self) -> bool:
        return self._sync_in_progress

    # === Sync pass ===

    async def synchronize(self) -> SyncPassResult:
        """Run one reconciliation pass if connected and none is running."""
        if self._sync_in_progress or not self.connectivity.is_reachable:
            return SyncPassResult()

        self._sync_in_progress = True
        self._notify_state_change()
        start_time = time.time()
        result = SyncPassResult()

        try:
            logger.info("Starting data synchronization")

            for record in self.store.entries():
                try:
                    outcome = await self._sync_record(record)
                except SyncError as e:
                    result.errors += 1
                    logger.warning(f"Sync failed for: {record.key}: {e}")
                    continue

                if outcome == "conflict":
                    result.conflicts += 1
                else:
                    result.synced += 1

            drained = await self.queue.drain()
            result.synced += drained.processed
            result.errors += drained.failed

            result.duration_seconds = time.time() - start_time
            logger.info(
                f"Sync completed in {result.duration_seconds:.2f}s: {result.synced} synced, "
                f"{result.conflicts} conflicts, {result.errors} errors"
            )
        finally:
            self._sync_in_progress = False
            self._notify_state_change()

        return result

    async def _sync_record(self, record: StoredRecord) -> str:
        """Reconcile one record. Raises SyncError on transient failure."""
        server_payload = await self.remote.fetch(record.resource_type, record.id)

        if server_payload is None:
            await self.remote.create(record.resource_type, self._with_id(record))
            self._forget(record)
            return "created"

        if has_conflict(record, server_payload):
            conflict = self.conflicts.add(record, server_payload)
            logger.info(f"Conflict detected for: {record.resource_type} {record.id}")
            self._notify_conflict(conflict)
            return "conflict"

        await self.remote.update(record.resource_type, record.id, record.payload)
        self._forget(record)
        return "updated"

    @staticmethod
    def _with_id(record: StoredRecord):
        # The server must create the entity under the client-chosen ID
        if isinstance(record.payload, dict) and "id" not in record.payload:
            return {"id": record.id, **record.payload}
        return record.payload

    def _forget(self, record: StoredRecord) -> None:
        # A write made while the request was in flight must survive
        current = self.store.get_record(record.resource_type, record.id)
        if current is not None and current.version == record.version:
            self.store.remove(record.resource_type, record.id)

    async def force_sync(self) -> SyncPassResult:
        """Caller-invoked sync: re-probe connectivity, then run a pass."""
        if not self.connectivity.is_reachable:
            await self.connectivity.check()
        return await self.synchronize()

    # === Connectivity events ===

    async def handle_online(self) -> SyncPassResult:
        """Platform reports the network is back; sync once reachability is confirmed."""
        logger.info("Connection restored")
        self.connectivity.mark_online()
        result = SyncPassResult()
        if await self.connectivity.check():
            result = await self.synchronize()
        self._notify_state_change()
        return result

    def handle_offline(self) -> None:
        logger.info("Connection lost")
        self.connectivity.mark_offline()
        self._notify_state_change()

    # === Periodic sync ===

    def start_periodic_sync(self, interval: float) -> None:
        """Start the periodic sync loop on the running event loop."""
        if self._periodic_task and not self._periodic_task.done():
            logger.warning("Periodic sync already running")
            return
        self._periodic_task = asyncio.create_task(self._periodic_loop(interval))
        logger.info("Periodic sync started")

    async def stop_periodic_sync(self) -> None:
        if self._periodic_task:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None
            logger.info("Periodic sync stopped")

    async def _periodic_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                if self.connectivity.is_reachable and not self._sync_in_progress:
                    await self.synchronize()
            except Exception as e:
                logger.error(f"Error in periodic sync: {e}")

    # === State and subscriptions ===

    def get_state(self) -> SyncState:
        return SyncState(
            is_online=self.connectivity.is_online,
            is_reachable=self.connectivity.is_reachable,
            pending_task_count=self.queue.pending_count(),
            sync_in_progress=self._sync_in_progress,
            last_online=self.connectivity.last_online,
        )

    def on_state_change(self, callback: StateCallback) -> Callable[[], None]:
        """Subscribe to state transitions. Returns an unsubscribe function."""
        self._state_callbacks.append(callback)
        return lambda: self._unsubscribe(self._state_callbacks, callback)

    def on_conflict(self, callback: ConflictCallback) -> Callable[[], None]:
        """Subscribe to newly detected conflicts. Returns an unsubscribe function."""
        self._conflict_callbacks.append(callback)
        return lambda: self._unsubscribe(self._conflict_callbacks, callback)

    @staticmethod
    def _unsubscribe(callbacks: list, callback) -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    def _notify_state_change(self) -> None:
        state = self.get_state()
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception as e:
                logger.error(f"State callback failed: {e}")

    def _notify_conflict(self, conflict: ConflictRecord) -> None:
        for callback in list(self._conflict_callbacks):
            try:
                callback(conflict)
            except Exception as e:
                logger.error(f"Conflict callback failed: {e}")
