"""
Shared fixtures: a controllable clock, in-memory storage and a scripted
remote that records every call.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest

from offline_sync.storage import MemoryBackend, PersistentStorage

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeRemote:
    """
    Stand-in for RemoteClient.

    ``server`` maps (resource_type, id) to the server copy. Exceptions put in
    ``errors`` are raised by the next calls, one per call. When ``gate`` is
    set, every call blocks until the event fires.
    """

    def __init__(self):
        self.server: dict[tuple[str, str], Any] = {}
        self.calls: list[tuple] = []
        self.errors: list[Exception] = []
        self.gate: Optional[asyncio.Event] = None

    async def _call(self, *call) -> None:
        self.calls.append(call)
        if self.gate is not None:
            await self.gate.wait()
        if self.errors:
            raise self.errors.pop(0)

    def calls_named(self, name: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == name]

    async def fetch(self, resource_type: str, record_id: str) -> Any:
        await self._call("fetch", resource_type, record_id)
        return self.server.get((resource_type, record_id))

    async def create(self, resource_type: str, payload: Any) -> Any:
        await self._call("create", resource_type, payload)
        if isinstance(payload, dict) and "id" in payload:
            self.server[(resource_type, str(payload["id"]))] = payload
        return payload

    async def update(self, resource_type: str, record_id: str, payload: Any) -> Any:
        await self._call("update", resource_type, record_id, payload)
        self.server[(resource_type, record_id)] = payload
        return payload

    async def delete(self, resource_type: str, record_id: str) -> None:
        await self._call("delete", resource_type, record_id)
        self.server.pop((resource_type, record_id), None)

    async def request(self, method: str, url: str, body: Any = None, headers: Any = None) -> Any:
        await self._call("request", method, url, body)
        return {"ok": True}


@pytest.fixture
def clock():
    """Clock frozen at T0."""
    return FakeClock()


@pytest.fixture
def backend():
    """Fresh in-memory backend."""
    return MemoryBackend()


@pytest.fixture
def storage(backend):
    """Persistent storage over the in-memory backend."""
    return PersistentStorage(backend)


@pytest.fixture
def remote():
    """Scripted remote API."""
    return FakeRemote()
