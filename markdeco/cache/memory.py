"""
In-memory cache storage.

Process-local, no I/O.  The namespace is the instance itself: two
``MemoryCacheStorage`` objects never see each other's keys.

Reads that land on a live entry take no lock.  The mutex only orders the
operations that mutate the map (writes, deletes, expiry-driven reaping), so two
concurrent ``get()`` calls on an expired key can never double-delete or race a
``set()`` that refreshed it in between.
"""

import logging
from typing import Optional

from markdeco.cache.base import CacheEntry, is_expired, now_ms, validate_ttl
from markdeco.cache.lock import AsyncMutex

logger = logging.getLogger(__name__)


class MemoryCacheStorage:
    """Async-compatible in-memory key-value store with per-entry TTL.

    Storage layout:
        _entries: dict[str, CacheEntry]
            key -> entry (payload, creation time, optional ttl in ms)

    Expiration is lazy: entries are removed when ``get()`` or ``size()``
    finds them expired.  No background cleanup task is started.
    """

    def __init__(self) -> None:
        self._entries: dict[str, CacheEntry] = {}
        self._mutex = AsyncMutex()

    async def get(self, key: str) -> Optional[str]:
        """Return the cached payload for *key* if it exists and has not expired.

        If the entry is found but expired, it is deleted before ``None`` is
        returned.  Expiry is re-checked under the lock because a concurrent
        ``set()`` may have replaced the entry in the meantime; a refreshed
        entry is returned as a hit.

        Args:
            key: Cache key to look up.

        Returns:
            The cached string, or ``None`` if the key is absent or expired.
        """
        entry = self._entries.get(key)
        if entry is None:
            logger.debug("Cache miss (not found): key=%r", key)
            return None

        if not is_expired(entry):
            logger.debug("Cache hit: key=%r", key)
            return entry.data

        async with self._mutex.lock():
            current = self._entries.get(key)
            if current is None:
                return None
            if not is_expired(current):
                return current.data
            del self._entries[key]
        logger.debug("Cache miss (expired): key=%r", key)
        return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        """Store *value* under *key*, overwriting any existing entry.

        Args:
            key:   Cache key.
            value: Serialized payload.
            ttl:   Milliseconds until expiry.  ``None`` never expires; ``0`` is
                   already expired.
        """
        validate_ttl(ttl)
        entry = CacheEntry.create(value, ttl)
        async with self._mutex.lock():
            self._entries[key] = entry
        logger.debug("Cache set: key=%r ttl=%s", key, ttl)

    async def delete(self, key: str) -> None:
        """Remove *key*.  A no-op if the key does not exist."""
        async with self._mutex.lock():
            removed = self._entries.pop(key, None)
        if removed is not None:
            logger.debug("Cache delete: key=%r", key)

    async def clear(self) -> None:
        """Remove all entries held by this instance."""
        async with self._mutex.lock():
            count = len(self._entries)
            self._entries.clear()
        logger.debug("Cache cleared: removed %d entries", count)

    async def size(self) -> int:
        """Reap expired entries and return the number of live ones."""
        if not self._entries:
            return 0

        async with self._mutex.lock():
            now = now_ms()
            expired = [k for k, entry in self._entries.items() if is_expired(entry, now)]
            for key in expired:
                del self._entries[key]
            if expired:
                logger.debug("Cache size: reaped %d expired entries", len(expired))
            return len(self._entries)
