"""
Shared contract for all cache storage backends.

Defines the serialized unit of cached data (:class:`CacheEntry`), the storage
protocol every backend implements (:class:`CacheStorage`), and the fingerprint
used by the fetchers to address cached responses.

Expiry rules, identical for every backend:

* ``ttl is None``  -- the entry never expires.
* ``ttl == 0``     -- the entry is already expired the moment it is written.
  This is an intentional contract (tests and callers use it to write
  tombstones), not "no expiry" as in some other systems.
* otherwise        -- the entry expires once ``now > timestamp + ttl``.
"""

import time
from typing import Optional, Protocol, runtime_checkable

from pydantic import BaseModel, Field

__all__ = [
    "CacheEntry",
    "CacheStorage",
    "generate_cache_key",
    "is_expired",
    "now_ms",
    "validate_ttl",
]


def now_ms() -> int:
    """Current wall-clock time in integer milliseconds since the epoch."""
    return time.time_ns() // 1_000_000


class CacheEntry(BaseModel):
    """One stored value plus the metadata needed to decide expiry.

    ``timestamp`` is always stamped by the store at write time; callers never
    supply it.
    """

    data: str
    timestamp: int
    ttl: Optional[int] = Field(default=None, ge=0)

    @classmethod
    def create(cls, value: str, ttl: Optional[int] = None) -> "CacheEntry":
        return cls(data=value, timestamp=now_ms(), ttl=ttl)

    def to_json(self) -> str:
        # ``ttl`` is omitted rather than written as null when absent.
        return self.model_dump_json(exclude_none=True)


def is_expired(entry: CacheEntry, now: Optional[int] = None) -> bool:
    """Return True if *entry* is past its TTL at *now* (defaults to the current time)."""
    if entry.ttl is None:
        return False
    if entry.ttl == 0:
        return True
    current = now_ms() if now is None else now
    return current > entry.timestamp + entry.ttl


def validate_ttl(ttl: Optional[int]) -> None:
    """Reject negative TTLs before anything is written."""
    if ttl is not None and ttl < 0:
        raise ValueError(f"ttl must be a non-negative number of milliseconds, got {ttl}")


@runtime_checkable
class CacheStorage(Protocol):
    """Async key-value storage with per-entry TTL.

    All three backends (memory, local key-value storage, filesystem) implement
    exactly this surface.  ``size()`` is a full garbage-collection pass: it
    reaps every expired entry it encounters and returns the live count.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ttl: Optional[int] = None) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def clear(self) -> None: ...

    async def size(self) -> int: ...


def generate_cache_key(url: str, accept: str, user_agent: Optional[str] = None) -> str:
    """Build the fingerprint that addresses a cached network response.

    A missing or empty user agent is recorded as ``"default"``.

    Example::

        >>> generate_cache_key("https://example.com", "text/html", "bot/1.0")
        'fetch:https://example.com:text/html:bot/1.0'
    """
    agent = user_agent or "default"
    return f"fetch:{url}:{accept}:{agent}"
