"""
markdeco: cache storage and cached network fetching for the Markdown
processing pipeline.

Usage:
    from markdeco import FileSystemCacheStorage, create_cached_fetcher, fetch_text

    storage = FileSystemCacheStorage(".cache/markdeco")
    async with create_cached_fetcher("my-bot/1.0", cache_storage=storage) as fetcher:
        html = await fetch_text(fetcher, "https://example.com", "text/html")
"""

from markdeco.cache import (
    CacheEntry,
    CacheStorage,
    FileSystemCacheStorage,
    InMemoryKeyValueStorage,
    KeyValueStorage,
    LocalCacheStorage,
    MemoryCacheStorage,
    create_cache_storage,
    generate_cache_key,
)
from markdeco.errors import (
    CacheError,
    CachedFetchError,
    CacheWriteError,
    FetchAbortedError,
    FetchError,
    FetchHTTPError,
    FetchTimeoutError,
    QuotaExceededError,
    StorageUnavailableError,
)
from markdeco.fetcher import (
    CachedFetcher,
    CachedFetcherOptions,
    DirectFetcher,
    Fetcher,
    create_cached_fetcher,
    create_cached_fetcher_from_settings,
    create_direct_fetcher,
    fetch_data,
    fetch_json,
    fetch_text,
)

__version__ = "1.0.0"
