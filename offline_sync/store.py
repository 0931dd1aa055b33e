"""
Offline Sync Engine - Durable Offline Store

Locally mutated records waiting to be reconciled with the server. Each write
is stamped with a per-record version (tracked in separate metadata) and a
SHA256 checksum of its payload. A record whose checksum no longer matches is
discarded on read; corruption is never surfaced as valid data.
"""

import logging
from typing import Any, Optional

from .errors import IntegrityError
from .models import Clock, StoredRecord, compute_checksum, utcnow
from .storage import OFFLINE_DATA_KEY, SYNC_METADATA_KEY, PersistentStorage, load_as, settle

logger = logging.getLogger(__name__)


class OfflineStore:
    """Versioned, checksummed map of not-yet-synced entity writes."""

    def __init__(self, storage: PersistentStorage, clock: Clock = utcnow):
        self.storage = storage
        self.clock = clock

    def _load(self) -> dict[str, dict]:
        return load_as(self.storage, OFFLINE_DATA_KEY, dict, dict, "load offline store")

    def _save(self, data: dict[str, dict]) -> None:
        settle(self.storage.save(OFFLINE_DATA_KEY, data), None, "save offline store")

    def _next_version(self, key: str) -> int:
        versions = load_as(self.storage, SYNC_METADATA_KEY, dict, dict, "load version metadata")
        version = int(versions.get(key, 0)) + 1
        versions[key] = version
        settle(self.storage.save(SYNC_METADATA_KEY, versions), None, "save version metadata")
        return version

    def store(self, resource_type: str, record_id: str, payload: Any) -> StoredRecord:
        """Persist a local write, bumping the record's version."""
        key = StoredRecord.make_key(resource_type, record_id)
        record = StoredRecord(
            id=record_id,
            resource_type=resource_type,
            payload=payload,
            local_timestamp=self.clock(),
            version=self._next_version(key),
            checksum=compute_checksum(payload),
        )

        data = self._load()
        data[key] = record.to_dict()
        self._save(data)

        logger.debug(f"Data stored offline: {resource_type} {record_id} v{record.version}")
        return record

    def get_record(self, resource_type: str, record_id: str) -> Optional[StoredRecord]:
        """Return the verified record, or None (corrupt records are removed)."""
        key = StoredRecord.make_key(resource_type, record_id)
        raw = self._load().get(key)
        if raw is None:
            return None

        record = self._decode(key, raw)
        if record is None:
            self.remove(resource_type, record_id)
        return record

    def get(self, resource_type: str, record_id: str) -> Optional[Any]:
        """Return the stored payload, or None when absent or corrupt."""
        record = self.get_record(resource_type, record_id)
        return record.payload if record else None

    def remove(self, resource_type: str, record_id: str) -> None:
        key = StoredRecord.make_key(resource_type, record_id)
        data = self._load()
        if data.pop(key, None) is not None:
            self._save(data)
            logger.debug(f"Offline data removed: {resource_type} {record_id}")

    def entries(self) -> list[StoredRecord]:
        """All intact records. Corrupt ones are discarded as a side effect."""
        data = self._load()
        records = []
        corrupt = []
        for key, raw in data.items():
            record = self._decode(key, raw)
            if record is None:
                corrupt.append(key)
            else:
                records.append(record)

        if corrupt:
            for key in corrupt:
                del data[key]
            self._save(data)
        return records

    def version_of(self, resource_type: str, record_id: str) -> int:
        """Last version issued for a record (0 if never written)."""
        versions = load_as(self.storage, SYNC_METADATA_KEY, dict, dict, "load version metadata")
        return int(versions.get(StoredRecord.make_key(resource_type, record_id), 0))

    def clear(self) -> None:
        """Drop all offline data and version metadata."""
        settle(self.storage.remove(OFFLINE_DATA_KEY), None, "clear offline store")
        settle(self.storage.remove(SYNC_METADATA_KEY), None, "clear version metadata")
        logger.info("Offline data cleared")

    def __len__(self) -> int:
        return len(self._load())

    @staticmethod
    def _verify(key: str, raw: Any) -> StoredRecord:
        try:
            record = StoredRecord.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            raise IntegrityError(f"Unreadable offline record {key}: {e}", key) from e
        if not record.is_intact():
            raise IntegrityError(f"Data integrity check failed for: {key}", key)
        return record

    @classmethod
    def _decode(cls, key: str, raw: Any) -> Optional[StoredRecord]:
        try:
            return cls._verify(key, raw)
        except IntegrityError as e:
            logger.warning(str(e))
            return None
