"""
Offline Sync Engine - Response Cache

Holds previously fetched read results keyed by resource identity and grouped
by cache tag. Each tag carries a ``CachePolicy``; an entry older than the
tag's ``max_age_seconds`` is treated as absent on read even while it is still
physically stored. A janitor pass purges such entries across all tags.

Caching is best-effort: a storage failure is logged and never fails the
caller's primary operation.
"""

import asyncio
import logging
from typing import Any, Optional

from .models import CachedResponse, CachePolicy, CacheStrategy, Clock, utcnow
from .storage import CACHE_METADATA_KEY, PersistentStorage, cache_key, load_as, settle

logger = logging.getLogger(__name__)

DAY = 60 * 60 * 24

DEFAULT_CACHE_POLICIES: dict[str, CachePolicy] = {
    "app-shell": CachePolicy(CacheStrategy.CACHE_FIRST, max_entries=1, max_age_seconds=30 * DAY),
    "api-cache": CachePolicy(CacheStrategy.NETWORK_FIRST, max_entries=100, max_age_seconds=DAY),
    "resource-status": CachePolicy(CacheStrategy.NETWORK_FIRST, max_entries=50, max_age_seconds=60 * 30),
    "static-assets": CachePolicy(
        CacheStrategy.STALE_WHILE_REVALIDATE, max_entries=60, max_age_seconds=30 * DAY
    ),
    "images": CachePolicy(CacheStrategy.CACHE_FIRST, max_entries=100, max_age_seconds=30 * DAY),
}


class ResponseCache:
    """Tag-partitioned response cache with lazy expiry."""

    def __init__(
        self,
        storage: PersistentStorage,
        policies: Optional[dict[str, CachePolicy]] = None,
        clock: Clock = utcnow,
    ):
        self.storage = storage
        self.policies = dict(policies if policies is not None else DEFAULT_CACHE_POLICIES)
        self.clock = clock
        self._janitor_task: Optional[asyncio.Task] = None

    def policy_for(self, tag: str) -> CachePolicy:
        try:
            return self.policies[tag]
        except KeyError:
            raise ValueError(f"Unknown cache tag: {tag}") from None

    def _load_tag(self, tag: str) -> dict[str, dict]:
        return load_as(self.storage, cache_key(tag), dict, dict, f"load cache '{tag}'")

    def _save_tag(self, tag: str, entries: dict[str, dict]) -> bool:
        result = self.storage.save(cache_key(tag), entries)
        settle(result, None, f"save cache '{tag}'")
        return result.ok

    # === Contract ===

    def get(self, resource_key: str, tag: str) -> Optional[Any]:
        """Return the cached body, or None when absent or expired."""
        policy = self.policy_for(tag)
        raw = self._load_tag(tag).get(resource_key)
        if raw is None:
            return None

        try:
            entry = CachedResponse.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Unreadable cache entry {tag}/{resource_key}: {e}")
            return None

        if entry.is_expired(policy, self.clock()):
            logger.debug(f"Cache expired for: {resource_key}")
            return None

        return entry.body

    def put(self, resource_key: str, body: Any, tag: str) -> None:
        """Cache ``body`` under ``resource_key``, replacing any previous entry."""
        policy = self.policy_for(tag)
        now = self.clock()
        entries = self._load_tag(tag)
        entries[resource_key] = CachedResponse(
            resource_key=resource_key,
            body=body,
            cached_at=now,
            tag=tag,
        ).to_dict()

        if policy.max_entries and len(entries) > policy.max_entries:
            # Oldest first; the entry just written is the newest so it survives
            ordered = sorted(entries.items(), key=lambda kv: kv[1].get("cached_at", ""))
            for key, _ in ordered[: len(entries) - policy.max_entries]:
                del entries[key]
                logger.debug(f"Evicted cache entry {tag}/{key}")

        if self._save_tag(tag, entries):
            self._touch_metadata(f"{tag}_last_update")

    def invalidate_all(self) -> None:
        """Drop every cached response across all tags."""
        for tag in self.policies:
            settle(self.storage.remove(cache_key(tag)), None, f"clear cache '{tag}'")
        settle(self.storage.remove(CACHE_METADATA_KEY), None, "clear cache metadata")
        logger.info("All caches cleared")

    # === Maintenance ===

    def purge_expired(self) -> int:
        """Remove logically expired entries from every tag."""
        now = self.clock()
        removed = 0
        for tag, policy in self.policies.items():
            entries = self._load_tag(tag)
            if not entries:
                continue
            kept = {}
            for key, raw in entries.items():
                try:
                    expired = CachedResponse.from_dict(raw).is_expired(policy, now)
                except (KeyError, TypeError, ValueError):
                    expired = True
                if expired:
                    logger.debug(f"Expired cache entry removed: {tag}/{key}")
                else:
                    kept[key] = raw
            if len(kept) != len(entries):
                removed += len(entries) - len(kept)
                self._save_tag(tag, kept)

        self._touch_metadata("last_cleanup")
        if removed:
            logger.info(f"Cache janitor purged {removed} expired entries")
        return removed

    def stats(self) -> dict[str, dict]:
        """Entry counts and policy summary per tag."""
        return {
            tag: {
                "entries": len(self._load_tag(tag)),
                "max_entries": policy.max_entries,
                "max_age_seconds": policy.max_age_seconds,
                "strategy": policy.strategy.value,
            }
            for tag, policy in self.policies.items()
        }

    def metadata(self) -> dict:
        return load_as(self.storage, CACHE_METADATA_KEY, dict, dict, "load cache metadata")

    def _touch_metadata(self, field_name: str) -> None:
        meta = self.metadata()
        meta[field_name] = self.clock().isoformat()
        settle(self.storage.save(CACHE_METADATA_KEY, meta), None, "update cache metadata")

    # === Janitor ===

    def start_janitor(self, interval: float) -> None:
        """Start the periodic purge loop on the running event loop."""
        if self._janitor_task and not self._janitor_task.done():
            logger.warning("Cache janitor already running")
            return
        self._janitor_task = asyncio.create_task(self._janitor_loop(interval))

    async def stop_janitor(self) -> None:
        if self._janitor_task:
            self._janitor_task.cancel()
            try:
                await self._janitor_task
            except asyncio.CancelledError:
                pass
            self._janitor_task = None

    async def _janitor_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.purge_expired()
