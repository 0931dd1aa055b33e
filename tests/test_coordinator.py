"""
Synchronization Coordinator Tests

Tests for reconciliation passes, connectivity handling, periodic sync and
state subscriptions.
"""

import asyncio
from datetime import timedelta

import pytest

from offline_sync.conflicts import ConflictQueue
from offline_sync.connectivity import ConnectivityMonitor
from offline_sync.coordinator import SyncCoordinator
from offline_sync.errors import NetworkError, ServerError
from offline_sync.store import OfflineStore
from offline_sync.task_queue import TaskQueue

from conftest import T0


class Probe:
    """Reachability probe with a switchable answer."""

    def __init__(self, reachable=True):
        self.reachable = reachable
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return self.reachable


@pytest.fixture
def probe():
    return Probe()


@pytest.fixture
def coordinator(storage, remote, clock, probe):
    """Coordinator over in-memory storage and the scripted remote."""
    store = OfflineStore(storage, clock=clock)
    queue = TaskQueue(storage, remote, clock=clock, auto_drain=False)
    conflicts = ConflictQueue(storage, clock=clock)
    connectivity = ConnectivityMonitor(probe, timeout=1, clock=clock)
    connectivity.is_reachable = True
    return SyncCoordinator(store, queue, conflicts, remote, connectivity)


def later(minutes=5):
    return (T0 + timedelta(minutes=minutes)).isoformat()


def earlier(minutes=5):
    return (T0 - timedelta(minutes=minutes)).isoformat()


class TestSynchronize:
    """Tests for a single reconciliation pass."""

    @pytest.mark.asyncio
    async def test_newer_server_copy_is_conflict(self, coordinator, remote):
        """Test a server edit after the local write yields a conflict, not a push."""
        coordinator.store.store("notes", "n1", {"text": "local"})
        remote.server[("notes", "n1")] = {"text": "server", "updatedAt": later()}

        result = await coordinator.synchronize()

        assert (result.synced, result.conflicts, result.errors) == (0, 1, 0)
        assert not remote.calls_named("update")
        assert coordinator.store.get("notes", "n1") == {"text": "local"}
        assert coordinator.conflicts.get("notes", "n1").server_payload["text"] == "server"

    @pytest.mark.asyncio
    async def test_older_server_copy_is_updated(self, coordinator, remote):
        """Test a stale server copy is overwritten and the local record removed."""
        coordinator.store.store("notes", "n1", {"text": "local"})
        remote.server[("notes", "n1")] = {"text": "server", "updatedAt": earlier()}

        result = await coordinator.synchronize()

        assert (result.synced, result.conflicts, result.errors) == (1, 0, 0)
        assert remote.calls_named("update") == [("update", "notes", "n1", {"text": "local"})]
        assert coordinator.store.get("notes", "n1") is None
        assert len(coordinator.conflicts) == 0

    @pytest.mark.asyncio
    async def test_equal_timestamp_is_not_conflict(self, coordinator, remote):
        """Test a server copy stamped exactly at the local write is pushed."""
        coordinator.store.store("notes", "n1", {"text": "local"})
        remote.server[("notes", "n1")] = {"updatedAt": T0.isoformat()}

        result = await coordinator.synchronize()

        assert (result.synced, result.conflicts) == (1, 0)

    @pytest.mark.asyncio
    async def test_absent_on_server_is_created(self, coordinator, remote):
        """Test a record the server does not know is created under its local ID."""
        coordinator.store.store("notes", "n1", {"text": "new"})

        result = await coordinator.synchronize()

        assert result.synced == 1
        assert remote.calls_named("create") == [("create", "notes", {"id": "n1", "text": "new"})]
        assert coordinator.store.get("notes", "n1") is None

    @pytest.mark.asyncio
    async def test_failure_keeps_record(self, coordinator, remote):
        """Test a transient failure counts as an error and keeps the record."""
        coordinator.store.store("notes", "n1", {"text": "local"})
        coordinator.store.store("notes", "n2", {"text": "other"})
        remote.errors = [ServerError("HTTP 503", 503)]

        result = await coordinator.synchronize()

        assert (result.synced, result.errors) == (1, 1)
        assert coordinator.store.get("notes", "n1") == {"text": "local"}
        assert coordinator.store.get("notes", "n2") is None

    @pytest.mark.asyncio
    async def test_write_during_push_survives(self, coordinator, remote):
        """Test a local write made while its push is in flight is not forgotten."""
        coordinator.store.store("notes", "n1", {"text": "v1"})
        remote.gate = asyncio.Event()

        running = asyncio.create_task(coordinator.synchronize())
        while not remote.calls:
            await asyncio.sleep(0)
        coordinator.store.store("notes", "n1", {"text": "v2"})
        remote.gate.set()
        await running

        assert coordinator.store.get("notes", "n1") == {"text": "v2"}

    @pytest.mark.asyncio
    async def test_drains_queue(self, coordinator, remote):
        """Test the pass drains the task queue and folds its counts in."""
        await coordinator.queue.enqueue("create", {"resource_type": "notes", "data": {}}, max_retries=0)
        await coordinator.queue.enqueue("create", {"resource_type": "notes", "data": {}})
        remote.errors = [NetworkError("down")]

        result = await coordinator.synchronize()

        assert (result.synced, result.errors) == (1, 1)
        assert coordinator.queue.pending_count() == 0

    @pytest.mark.asyncio
    async def test_not_reachable_does_nothing(self, coordinator, remote):
        """Test no pass runs while the API is unreachable."""
        coordinator.connectivity.is_reachable = False
        coordinator.store.store("notes", "n1", {})

        result = await coordinator.synchronize()

        assert (result.synced, result.conflicts, result.errors) == (0, 0, 0)
        assert not remote.calls

    @pytest.mark.asyncio
    async def test_overlapping_pass_returns_zero(self, coordinator, remote):
        """Test a pass requested during another pass does nothing."""
        coordinator.store.store("notes", "n1", {})
        remote.gate = asyncio.Event()

        running = asyncio.create_task(coordinator.synchronize())
        while not remote.calls:
            await asyncio.sleep(0)

        assert coordinator.get_state().sync_in_progress
        second = await coordinator.synchronize()
        assert (second.synced, second.conflicts, second.errors) == (0, 0, 0)

        remote.gate.set()
        assert (await running).synced == 1
        assert not coordinator.sync_in_progress


class TestConnectivity:
    """Tests for online/offline handling."""

    @pytest.mark.asyncio
    async def test_online_event_syncs_after_probe(self, coordinator, remote, probe):
        """Test coming back online probes, then syncs."""
        coordinator.handle_offline()
        coordinator.store.store("notes", "n1", {})

        result = await coordinator.handle_online()

        assert probe.calls == 1
        assert result.synced == 1
        assert coordinator.get_state().is_reachable

    @pytest.mark.asyncio
    async def test_online_but_unreachable(self, coordinator, remote, probe):
        """Test an interface-up event without a reachable API does not sync."""
        coordinator.handle_offline()
        coordinator.store.store("notes", "n1", {})
        probe.reachable = False

        result = await coordinator.handle_online()

        assert result.synced == 0
        assert not remote.calls
        state = coordinator.get_state()
        assert state.is_online and not state.is_reachable

    @pytest.mark.asyncio
    async def test_probe_timeout_counts_as_unreachable(self, clock):
        """Test a probe that exceeds its timeout reports not connected."""
        async def hanging_probe():
            await asyncio.sleep(10)
            return True

        monitor = ConnectivityMonitor(hanging_probe, timeout=0.01, clock=clock)
        assert await monitor.check() is False
        assert monitor.is_reachable is False

    @pytest.mark.asyncio
    async def test_offline_skips_probe(self, clock, probe):
        """Test no probe is sent while the platform reports offline."""
        monitor = ConnectivityMonitor(probe, initially_online=False, clock=clock)
        assert await monitor.check() is False
        assert probe.calls == 0
        assert monitor.last_online is None

    @pytest.mark.asyncio
    async def test_force_sync_reprobes(self, coordinator, probe):
        """Test force-sync re-checks reachability when it was lost."""
        coordinator.connectivity.is_reachable = False
        coordinator.store.store("notes", "n1", {})

        result = await coordinator.force_sync()

        assert probe.calls == 1
        assert result.synced == 1


class TestPeriodicSync:
    """Tests for the periodic timer."""

    @pytest.mark.asyncio
    async def test_periodic_pass_runs(self, coordinator, remote):
        """Test the timer triggers passes while connected."""
        coordinator.store.store("notes", "n1", {})

        coordinator.start_periodic_sync(0.01)
        await asyncio.sleep(0.05)
        await coordinator.stop_periodic_sync()

        assert coordinator.store.get("notes", "n1") is None
        assert remote.calls_named("create")

    @pytest.mark.asyncio
    async def test_periodic_skips_when_unreachable(self, coordinator, remote):
        """Test the timer does nothing while disconnected."""
        coordinator.connectivity.is_reachable = False
        coordinator.store.store("notes", "n1", {})

        coordinator.start_periodic_sync(0.01)
        await asyncio.sleep(0.05)
        await coordinator.stop_periodic_sync()

        assert not remote.calls


class TestSubscriptions:
    """Tests for state and conflict callbacks."""

    @pytest.mark.asyncio
    async def test_state_notifications(self, coordinator):
        """Test subscribers see the pass start and finish."""
        states = []
        coordinator.on_state_change(states.append)

        await coordinator.synchronize()

        assert [s.sync_in_progress for s in states] == [True, False]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, coordinator):
        """Test an unsubscribed callback is not called."""
        states = []
        unsubscribe = coordinator.on_state_change(states.append)
        unsubscribe()
        unsubscribe()

        await coordinator.synchronize()

        assert states == []

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self, coordinator):
        """Test a raising subscriber does not break the pass or other subscribers."""
        def broken(state):
            raise RuntimeError("boom")

        states = []
        coordinator.on_state_change(broken)
        coordinator.on_state_change(states.append)

        await coordinator.synchronize()

        assert len(states) == 2

    @pytest.mark.asyncio
    async def test_conflict_notification(self, coordinator, remote):
        """Test conflict subscribers receive each detected conflict."""
        seen = []
        coordinator.on_conflict(seen.append)
        coordinator.store.store("notes", "n1", {})
        remote.server[("notes", "n1")] = {"updatedAt": later()}

        await coordinator.synchronize()

        assert [c.key for c in seen] == ["notes-n1"]

    def test_state_snapshot(self, coordinator, clock):
        """Test the state snapshot reflects connectivity and the queue."""
        state = coordinator.get_state()
        assert state.to_dict() == {
            "is_online": True,
            "is_reachable": True,
            "pending_task_count": 0,
            "sync_in_progress": False,
            "last_online": clock().isoformat(),
        }
