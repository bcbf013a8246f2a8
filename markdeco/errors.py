"""
Exception hierarchy for the caching layer and the network fetchers.

Storage errors derive from :class:`CacheError`; network errors derive from
:class:`FetchError`.  Callers that only care about "the cache broke" versus
"the network broke" can catch the two bases.
"""

from typing import Optional


class CacheError(RuntimeError):
    """Base class for cache storage failures."""


class StorageUnavailableError(CacheError):
    """The backing storage cannot be used in the current environment.

    Raised from every affected method call, not only at construction, because
    availability can change between calls.
    """


class CacheWriteError(CacheError):
    """Writing a cache entry failed.  The underlying cause is chained."""


class QuotaExceededError(CacheError):
    """A key-value storage handle refused a write because it is full."""


class FetchError(RuntimeError):
    """Base class for network fetch failures."""


class FetchHTTPError(FetchError):
    """The server answered with a non-2xx status."""

    def __init__(self, status: int) -> None:
        super().__init__(f"HTTP error, status: {status}")
        self.status = status


class FetchTimeoutError(FetchError):
    """The request did not complete within the configured timeout."""


class FetchAbortedError(FetchError):
    """The caller's abort signal fired before the request completed."""


class CachedFetchError(FetchError):
    """A negative-cache hit: the same request failed recently.

    Attributes:
        original_message: Message of the error that was cached.
        status:           HTTP status of the cached failure, if it was an HTTP
                          error.
    """

    def __init__(self, original_message: str, status: Optional[int] = None) -> None:
        super().__init__("Cached error")
        self.original_message = original_message
        self.status = status
