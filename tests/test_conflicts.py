"""
Conflict Tests

Tests for conflict detection, the conflict queue and each resolution strategy.
"""

from datetime import datetime, timedelta, timezone

import pytest

from offline_sync.conflicts import (
    ConflictQueue,
    ConflictResolver,
    has_conflict,
    merge_payloads,
    parse_timestamp,
    server_last_modified,
)
from offline_sync.errors import NetworkError
from offline_sync.models import ResolutionStrategy
from offline_sync.store import OfflineStore

from conftest import T0


@pytest.fixture
def store(storage, clock):
    return OfflineStore(storage, clock=clock)


@pytest.fixture
def conflicts(storage, clock):
    return ConflictQueue(storage, clock=clock)


@pytest.fixture
def resolver(conflicts, store, remote):
    return ConflictResolver(conflicts, store, remote, ["userPreferences", "localNotes"])


@pytest.fixture
def open_conflict(store, conflicts, remote):
    """A local edit that lost a race with a later server edit."""
    record = store.store("profiles", "p1", {"name": "local", "localNotes": "mine"})
    server = {"name": "server", "localNotes": "theirs", "updatedAt": (T0 + timedelta(minutes=5)).isoformat()}
    remote.server[("profiles", "p1")] = server
    return conflicts.add(record, server)


class TestTimestamps:
    """Tests for last-modified parsing."""

    def test_iso_with_z(self):
        """Test a trailing Z is read as UTC."""
        assert parse_timestamp("2024-01-01T12:00:00Z") == T0

    def test_naive_iso_is_utc(self):
        """Test an offset-less timestamp is assumed UTC."""
        assert parse_timestamp("2024-01-01T12:00:00") == T0

    def test_epoch_seconds_and_millis(self):
        """Test numeric markers in seconds and milliseconds."""
        seconds = T0.timestamp()
        assert parse_timestamp(seconds) == T0
        assert parse_timestamp(int(seconds * 1000)) == T0

    def test_unparseable(self):
        """Test garbage and booleans yield None."""
        assert parse_timestamp("yesterday") is None
        assert parse_timestamp(True) is None
        assert parse_timestamp(None) is None

    def test_field_precedence(self):
        """Test updatedAt is preferred over later fallbacks."""
        payload = {"timestamp": "2020-01-01T00:00:00Z", "updatedAt": "2024-01-01T12:00:00Z"}
        assert server_last_modified(payload) == T0

    def test_non_dict_payload(self):
        """Test non-object payloads have no marker."""
        assert server_last_modified(["a"]) is None


class TestDetection:
    """Tests for has_conflict."""

    def test_newer_server_conflicts(self, store):
        """Test a server edit after the local write is a conflict."""
        record = store.store("notes", "n1", {})
        assert has_conflict(record, {"updatedAt": (T0 + timedelta(seconds=1)).isoformat()})

    def test_older_or_equal_server_does_not(self, store):
        """Test a server copy at or before the local write is not a conflict."""
        record = store.store("notes", "n1", {})
        assert not has_conflict(record, {"updatedAt": T0.isoformat()})
        assert not has_conflict(record, {"updatedAt": (T0 - timedelta(hours=1)).isoformat()})

    def test_missing_marker_does_not(self, store):
        """Test a server copy without a last-modified marker never conflicts."""
        record = store.store("notes", "n1", {})
        assert not has_conflict(record, {"text": "no marker"})


class TestMerge:
    """Tests for the merge strategy's payload combination."""

    def test_server_wins_by_default(self):
        """Test overlapping fields take the server value."""
        merged = merge_payloads({"a": 1, "b": 1}, {"b": 2, "c": 2})
        assert merged == {"a": 1, "b": 2, "c": 2}

    def test_client_authoritative_fields(self):
        """Test allow-listed fields keep the client value."""
        merged = merge_payloads(
            {"userPreferences": {"theme": "dark"}, "title": "mine"},
            {"userPreferences": {"theme": "light"}, "title": "theirs"},
            ["userPreferences"],
        )
        assert merged == {"userPreferences": {"theme": "dark"}, "title": "theirs"}

    def test_client_none_does_not_override(self):
        """Test a null client value does not clobber the server value."""
        merged = merge_payloads({"localNotes": None}, {"localNotes": "kept"}, ["localNotes"])
        assert merged["localNotes"] == "kept"

    def test_non_dict_takes_server(self):
        """Test non-object payloads resolve to the server copy."""
        assert merge_payloads([1], [2]) == [2]


class TestConflictQueue:
    """Tests for conflict persistence."""

    def test_add_and_get(self, store, conflicts, clock):
        """Test a conflict is stored with both payloads."""
        record = store.store("notes", "n1", {"v": "client"})
        conflicts.add(record, {"v": "server"})

        conflict = conflicts.get("notes", "n1")
        assert conflict.client_payload == {"v": "client"}
        assert conflict.server_payload == {"v": "server"}
        assert conflict.detected_at == clock()

    def test_one_conflict_per_entity(self, store, conflicts):
        """Test re-detecting a conflict replaces the earlier one."""
        record = store.store("notes", "n1", {"v": 1})
        conflicts.add(record, {"v": "s1"})
        conflicts.add(record, {"v": "s2"})

        assert len(conflicts) == 1
        assert conflicts.get("notes", "n1").server_payload == {"v": "s2"}

    def test_remove(self, store, conflicts):
        """Test removal reports whether anything was removed."""
        conflicts.add(store.store("notes", "n1", {}), {})
        assert conflicts.remove("notes", "n1") is True
        assert conflicts.remove("notes", "n1") is False
        assert conflicts.pending() == []


class TestResolver:
    """Tests for each resolution strategy."""

    @pytest.mark.asyncio
    async def test_client_wins(self, resolver, open_conflict, remote, store, conflicts):
        """Test client-wins pushes the client payload and clears the conflict."""
        assert await resolver.resolve("p1", "profiles", "client-wins")

        assert remote.calls_named("update") == [
            ("update", "profiles", "p1", {"name": "local", "localNotes": "mine"})
        ]
        assert conflicts.get("profiles", "p1") is None
        assert store.get("profiles", "p1") == {"name": "local", "localNotes": "mine"}

    @pytest.mark.asyncio
    async def test_server_wins(self, resolver, open_conflict, remote, store, conflicts):
        """Test server-wins keeps the server copy locally without a network call."""
        assert await resolver.resolve("p1", "profiles", ResolutionStrategy.SERVER_WINS)

        assert not remote.calls
        assert conflicts.get("profiles", "p1") is None
        assert store.get("profiles", "p1") == open_conflict.server_payload

    @pytest.mark.asyncio
    async def test_merge(self, resolver, open_conflict, remote):
        """Test merge takes server fields except client-authoritative ones."""
        assert await resolver.resolve("p1", "profiles", "merge")

        pushed = remote.calls_named("update")[0][3]
        assert pushed["name"] == "server"
        assert pushed["localNotes"] == "mine"

    @pytest.mark.asyncio
    async def test_manual(self, resolver, open_conflict, remote):
        """Test manual pushes the caller's payload."""
        assert await resolver.resolve("p1", "profiles", "manual", {"name": "agreed"})
        assert remote.calls_named("update")[0][3] == {"name": "agreed"}

    @pytest.mark.asyncio
    async def test_manual_requires_payload(self, resolver, open_conflict):
        """Test manual resolution without a payload is rejected."""
        with pytest.raises(ValueError):
            await resolver.resolve("p1", "profiles", "manual")

    @pytest.mark.asyncio
    async def test_unknown_conflict(self, resolver, remote):
        """Test resolving a non-existent conflict returns False."""
        assert await resolver.resolve("nope", "profiles", "client-wins") is False
        assert not remote.calls

    @pytest.mark.asyncio
    async def test_failed_push_keeps_conflict(self, resolver, open_conflict, remote, conflicts):
        """Test a failed push leaves the conflict open for another attempt."""
        remote.errors = [NetworkError("offline")]

        assert await resolver.resolve("p1", "profiles", "client-wins") is False
        assert conflicts.get("profiles", "p1") is not None

        assert await resolver.resolve("p1", "profiles", "client-wins") is True
