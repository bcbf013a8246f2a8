"""
Cache storage layered over a shared, synchronous key-value store.

This is the browser-persistent backend: in a browser runtime the handle wraps
``window.localStorage``; anywhere else the caller injects any object that
satisfies :class:`KeyValueStorage` (for example :class:`InMemoryKeyValueStorage`).
The store is shared and global, so each :class:`LocalCacheStorage` confines
itself to keys starting with its prefix.  ``clear()`` never touches keys
outside that prefix.

Entries are stored uncompressed as the JSON form of :class:`CacheEntry`.

Quota handling: when the handle raises :class:`QuotaExceededError` during
``set()``, every expired or corrupt entry under the prefix is swept and the
write is retried exactly once.
"""

import logging
from typing import Iterable, Optional, Protocol

from pydantic import ValidationError

from markdeco.cache.base import CacheEntry, is_expired, now_ms, validate_ttl
from markdeco.cache.lock import AsyncMutex
from markdeco.errors import CacheWriteError, QuotaExceededError, StorageUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX: str = "cache:"


class KeyValueStorage(Protocol):
    """Synchronous string-to-string store, modelled on the Web Storage API."""

    def is_available(self) -> bool: ...

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> Iterable[str]: ...


class InMemoryKeyValueStorage:
    """Process-local :class:`KeyValueStorage` with an optional size quota.

    The quota is counted in characters of keys plus values, the way browsers
    account for ``localStorage``.  A write that would exceed it raises
    :class:`QuotaExceededError` and leaves the store unchanged.

    Args:
        quota:     Maximum total characters, or ``None`` for unlimited.
        available: Initial availability; toggle with :attr:`available`.
    """

    def __init__(self, quota: Optional[int] = None, available: bool = True) -> None:
        self._items: dict[str, str] = {}
        self.quota = quota
        self.available = available

    def is_available(self) -> bool:
        return self.available

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        if self.quota is not None:
            previous = self._items.get(key)
            used = self.used()
            if previous is not None:
                used -= len(key) + len(previous)
            if used + len(key) + len(value) > self.quota:
                raise QuotaExceededError(
                    f"Storage quota of {self.quota} characters exceeded writing {key!r}"
                )
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)

    def used(self) -> int:
        """Characters currently consumed by keys and values."""
        return sum(len(k) + len(v) for k, v in self._items.items())

    def __len__(self) -> int:
        return len(self._items)


class LocalCacheStorage:
    """TTL cache over a prefixed namespace of a shared :class:`KeyValueStorage`.

    Args:
        storage:    The shared key-value handle.  ``None`` means no storage is
                    available in this environment.
        key_prefix: Namespace prepended to every key (default ``"cache:"``).

    Raises:
        StorageUnavailableError: From every method, whenever the handle is
            missing or reports itself unavailable.
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage],
        key_prefix: str = DEFAULT_KEY_PREFIX,
    ) -> None:
        self._storage = storage
        self._prefix = key_prefix
        self._mutex = AsyncMutex()

    @property
    def key_prefix(self) -> str:
        return self._prefix

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require_storage(self) -> KeyValueStorage:
        storage = self._storage
        if storage is None or not storage.is_available():
            raise StorageUnavailableError("localStorage is not available in this environment")
        return storage

    def _own_keys(self, storage: KeyValueStorage) -> list[str]:
        return [k for k in list(storage.keys()) if k.startswith(self._prefix)]

    @staticmethod
    def _is_stale(stored: str, now: Optional[int] = None) -> bool:
        """True if *stored* is unparseable or holds an expired entry."""
        try:
            entry = CacheEntry.model_validate_json(stored)
        except ValidationError:
            return True
        return is_expired(entry, now)

    def _sweep_expired(self, storage: KeyValueStorage) -> int:
        """Remove expired and corrupt entries under the prefix.  Caller holds the lock."""
        now = now_ms()
        doomed: list[str] = []
        for full_key in self._own_keys(storage):
            stored = storage.get_item(full_key)
            if stored and self._is_stale(stored, now):
                doomed.append(full_key)

        for full_key in doomed:
            storage.remove_item(full_key)
        return len(doomed)

    # ------------------------------------------------------------------
    # CacheStorage
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        storage = self._require_storage()
        full_key = self._prefix + key
        stored = storage.get_item(full_key)
        if not stored:
            return None

        try:
            entry = CacheEntry.model_validate_json(stored)
        except ValidationError:
            logger.warning("Removing corrupt cache entry: key=%r", full_key)
            async with self._mutex.lock():
                storage.remove_item(full_key)
            return None

        if not is_expired(entry):
            return entry.data

        async with self._mutex.lock():
            # Another writer may have refreshed the key since the unlocked read.
            current = storage.get_item(full_key)
            if not current:
                return None
            if not self._is_stale(current):
                return CacheEntry.model_validate_json(current).data
            storage.remove_item(full_key)
        logger.debug("Cache miss (expired): key=%r", full_key)
        return None

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None:
        storage = self._require_storage()
        validate_ttl(ttl)
        full_key = self._prefix + key
        serialized = CacheEntry.create(value, ttl).to_json()

        async with self._mutex.lock():
            try:
                storage.set_item(full_key, serialized)
            except QuotaExceededError:
                reaped = self._sweep_expired(storage)
                logger.warning(
                    "Storage quota exceeded writing %r; swept %d expired entries, retrying",
                    full_key,
                    reaped,
                )
                try:
                    storage.set_item(full_key, serialized)
                except Exception as exc:
                    raise CacheWriteError(f"Failed to store cache entry: {exc}") from exc
            except Exception as exc:
                raise CacheWriteError(f"Failed to store cache entry: {exc}") from exc

    async def delete(self, key: str) -> None:
        storage = self._require_storage()
        full_key = self._prefix + key
        async with self._mutex.lock():
            storage.remove_item(full_key)

    async def clear(self) -> None:
        storage = self._require_storage()
        doomed = self._own_keys(storage)
        if not doomed:
            return

        async with self._mutex.lock():
            for full_key in doomed:
                storage.remove_item(full_key)
        logger.debug("Cache cleared: prefix=%r removed %d entries", self._prefix, len(doomed))

    async def size(self) -> int:
        storage = self._require_storage()
        candidates = self._own_keys(storage)
        if not candidates:
            return 0

        async with self._mutex.lock():
            now = now_ms()
            live = 0
            for full_key in candidates:
                stored = storage.get_item(full_key)
                if not stored:
                    # Removed by someone else since the pre-scan.
                    continue
                if self._is_stale(stored, now):
                    storage.remove_item(full_key)
                    continue
                live += 1
            return live
