"""
Offline Sync Engine - Conflict Detection and Resolution

A conflict exists when the server's last-modified marker for an entity is
newer than the local write's timestamp. Detection compares wall-clock
timestamps from two machines, so clock skew between client and server can
produce false positives or hide a real divergence; a server-issued version
or ETag would be the stronger signal.

Resolution strategies:

- client-wins: push the client payload, overwriting the server
- server-wins: keep the server payload locally, dropping the pending write
- merge: shallow merge, server fields win except client-authoritative ones
- manual: push a caller-supplied payload
"""

import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from .errors import SyncError
from .models import Clock, ConflictRecord, ResolutionStrategy, StoredRecord, utcnow
from .storage import CONFLICT_QUEUE_KEY, PersistentStorage, load_as, settle
from .store import OfflineStore

logger = logging.getLogger(__name__)

LAST_MODIFIED_FIELDS = ("updatedAt", "updated_at", "lastModified", "last_modified", "timestamp")

# Numeric markers above this are epoch milliseconds, below it epoch seconds
_EPOCH_MS_THRESHOLD = 100_000_000_000


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string or epoch number into an aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > _EPOCH_MS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


def server_last_modified(server_payload: Any) -> Optional[datetime]:
    """Extract the last-modified marker from a server payload."""
    if not isinstance(server_payload, dict):
        return None
    for name in LAST_MODIFIED_FIELDS:
        if name in server_payload:
            parsed = parse_timestamp(server_payload[name])
            if parsed is not None:
                return parsed
    return None


def has_conflict(record: StoredRecord, server_payload: Any) -> bool:
    """True when the server copy was modified after the local write."""
    marker = server_last_modified(server_payload)
    if marker is None:
        return False
    return marker > record.local_timestamp


def merge_payloads(client: Any, server: Any, client_fields: Iterable[str] = ()) -> Any:
    """Shallow merge with server precedence, except for client-authoritative fields."""
    if not isinstance(client, dict) or not isinstance(server, dict):
        return server
    merged = {**client, **server}
    for name in client_fields:
        if client.get(name) is not None:
            merged[name] = client[name]
    return merged


# =============================================================================
# Conflict Queue
# =============================================================================

class ConflictQueue:
    """Persisted list of open conflicts, at most one per entity."""

    def __init__(self, storage: PersistentStorage, clock: Clock = utcnow):
        self.storage = storage
        self.clock = clock

    def _load(self) -> list[ConflictRecord]:
        raw = load_as(self.storage, CONFLICT_QUEUE_KEY, list, list, "get conflict queue")
        conflicts = []
        for item in raw:
            try:
                conflicts.append(ConflictRecord.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.error(f"Dropping unreadable conflict record: {e}")
        return conflicts

    def _save(self, conflicts: list[ConflictRecord]) -> None:
        settle(
            self.storage.save(CONFLICT_QUEUE_KEY, [c.to_dict() for c in conflicts]),
            None,
            "save conflict queue",
        )

    def add(self, record: StoredRecord, server_payload: Any) -> ConflictRecord:
        """Record a conflict, replacing any earlier one for the same entity."""
        conflict = ConflictRecord(
            id=record.id,
            resource_type=record.resource_type,
            client_payload=record.payload,
            server_payload=server_payload,
            detected_at=self.clock(),
        )
        conflicts = [c for c in self._load() if c.key != conflict.key]
        conflicts.append(conflict)
        self._save(conflicts)
        return conflict

    def get(self, resource_type: str, record_id: str) -> Optional[ConflictRecord]:
        key = StoredRecord.make_key(resource_type, record_id)
        return next((c for c in self._load() if c.key == key), None)

    def pending(self) -> list[ConflictRecord]:
        return self._load()

    def remove(self, resource_type: str, record_id: str) -> bool:
        key = StoredRecord.make_key(resource_type, record_id)
        conflicts = self._load()
        remaining = [c for c in conflicts if c.key != key]
        if len(remaining) == len(conflicts):
            return False
        self._save(remaining)
        return True

    def clear(self) -> None:
        settle(self.storage.remove(CONFLICT_QUEUE_KEY), None, "clear conflict queue")

    def __len__(self) -> int:
        return len(self._load())


# =============================================================================
# Resolver
# =============================================================================

class ConflictResolver:
    """Applies a resolution strategy and persists the outcome."""

    def __init__(
        self,
        conflicts: ConflictQueue,
        store: OfflineStore,
        remote: Any,
        client_authoritative_fields: Iterable[str] = (),
    ):
        self.conflicts = conflicts
        self.store = store
        self.remote = remote
        self.client_authoritative_fields = list(client_authoritative_fields)

    async def resolve(
        self,
        record_id: str,
        resource_type: str,
        strategy: Union[ResolutionStrategy, str],
        manual_payload: Any = None,
    ) -> bool:
        """
        Resolve an open conflict.

        Args:
            record_id: The conflicting entity ID
            resource_type: The entity's resource type
            strategy: client-wins, server-wins, merge or manual
            manual_payload: Required for manual resolution

        Returns:
            True if the conflict was resolved and removed
        """
        strategy = ResolutionStrategy(strategy)
        if strategy == ResolutionStrategy.MANUAL and manual_payload is None:
            raise ValueError("Manual resolution requires manual_payload")

        conflict = self.conflicts.get(resource_type, record_id)
        if conflict is None:
            logger.warning(f"No pending conflict for {resource_type} {record_id}")
            return False

        if strategy == ResolutionStrategy.SERVER_WINS:
            # Nothing to push; the server copy replaces the pending local write
            self.store.store(resource_type, record_id, conflict.server_payload)
            self.conflicts.remove(resource_type, record_id)
            logger.info(f"Conflict resolved: {resource_type} {record_id} ({strategy.value})")
            return True

        if strategy == ResolutionStrategy.CLIENT_WINS:
            resolved = conflict.client_payload
        elif strategy == ResolutionStrategy.MERGE:
            resolved = merge_payloads(
                conflict.client_payload,
                conflict.server_payload,
                self.client_authoritative_fields,
            )
        else:
            resolved = manual_payload

        try:
            await self.remote.update(resource_type, record_id, resolved)
        except SyncError as e:
            logger.error(f"Failed to resolve conflict for {resource_type} {record_id}: {e}")
            return False

        self.conflicts.remove(resource_type, record_id)
        self.store.store(resource_type, record_id, resolved)
        logger.info(f"Conflict resolved: {resource_type} {record_id} ({strategy.value})")
        return True
