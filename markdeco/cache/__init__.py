"""
Pluggable cache storage backends.

Usage:
    from markdeco.cache import MemoryCacheStorage, FileSystemCacheStorage
    from markdeco.cache import create_cache_storage   # pick a backend by name
"""

from typing import Optional, Union

from markdeco.cache.base import (
    CacheEntry,
    CacheStorage,
    generate_cache_key,
    is_expired,
)
from markdeco.cache.filesystem import FileSystemCacheStorage
from markdeco.cache.localstorage import (
    DEFAULT_KEY_PREFIX,
    InMemoryKeyValueStorage,
    KeyValueStorage,
    LocalCacheStorage,
)
from markdeco.cache.lock import AsyncMutex
from markdeco.cache.memory import MemoryCacheStorage


BACKENDS: tuple[str, ...] = ("memory", "filesystem", "local")


def create_cache_storage(
    backend: Union[str, CacheStorage, None] = None,
    *,
    cache_dir: Optional[str] = None,
    enable_compression: bool = True,
    key_prefix: str = DEFAULT_KEY_PREFIX,
    kv_storage: Optional[KeyValueStorage] = None,
) -> CacheStorage:
    """Resolve a cache storage instance from a backend name, an instance, or the default.

    Args:
        backend:            ``"memory"`` (default), ``"filesystem"`` or
                            ``"local"``; an existing storage instance is
                            returned unchanged.
        cache_dir:          Directory for the filesystem backend (required).
        enable_compression: Gzip files in the filesystem backend.
        key_prefix:         Namespace for the local backend.
        kv_storage:         Key-value handle for the local backend.

    Raises:
        ValueError: Unknown backend name, or missing ``cache_dir``.
    """
    if backend is None:
        return MemoryCacheStorage()
    if not isinstance(backend, str):
        return backend

    name = backend.strip().lower()
    if name == "memory":
        return MemoryCacheStorage()
    if name == "filesystem":
        if not cache_dir:
            raise ValueError("The filesystem cache backend requires cache_dir")
        return FileSystemCacheStorage(cache_dir, enable_compression=enable_compression)
    if name == "local":
        return LocalCacheStorage(kv_storage, key_prefix=key_prefix)
    raise ValueError(f"Unknown cache backend {backend!r}; expected one of {', '.join(BACKENDS)}")


__all__ = [
    "AsyncMutex",
    "BACKENDS",
    "CacheEntry",
    "CacheStorage",
    "FileSystemCacheStorage",
    "InMemoryKeyValueStorage",
    "KeyValueStorage",
    "LocalCacheStorage",
    "MemoryCacheStorage",
    "create_cache_storage",
    "generate_cache_key",
    "is_expired",
]
