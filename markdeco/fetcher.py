"""
HTTP fetchers used by the block plugins.

All network access made on behalf of a document goes through one of the two
fetchers defined here:

* :class:`DirectFetcher` -- every call hits the network.
* :class:`CachedFetcher` -- wraps the network call with a pluggable
  :class:`~markdeco.cache.CacheStorage`, keyed by
  ``fetch:<url>:<accept>:<user-agent>``.  Successful responses are cached for
  ``cache_ttl``; with ``cache_failures`` enabled, failures are cached for
  ``failure_cache_ttl`` and replayed as :class:`CachedFetchError` without
  touching the network.

Concurrent requests for the same fingerprint are not coalesced: until the first
one completes and is stored, each of them performs its own live fetch.

Cancellation uses an ``asyncio.Event`` as the abort signal.  The live request
is raced against the signal and the timeout; whichever fires first cancels the
in-flight request.
"""

import asyncio
import contextlib
import logging
from typing import Annotated, Any, Literal, Mapping, Optional, Protocol, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from markdeco.cache import (
    CacheStorage,
    KeyValueStorage,
    MemoryCacheStorage,
    create_cache_storage,
    generate_cache_key,
)
from markdeco.cache.base import now_ms
from markdeco.config import Settings, get_settings
from markdeco.errors import (
    CachedFetchError,
    FetchAbortedError,
    FetchError,
    FetchHTTPError,
    FetchTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS: int = 60000
DEFAULT_FAILURE_CACHE_TTL_MS: int = 5 * 60 * 1000
CACHE_HIT_HEADER: str = "X-Cache"


# ---------------------------------------------------------------------------
# Cached entry shapes (stored JSON-encoded in CacheEntry.data)
# ---------------------------------------------------------------------------


class FetchFailureInfo(BaseModel):
    """Enough of a failed request to rebuild an error on replay."""

    message: str
    status: Optional[int] = None


class SuccessEntry(BaseModel):
    type: Literal["success"] = "success"
    data: str
    timestamp: int


class FailureEntry(BaseModel):
    type: Literal["failure"] = "failure"
    error: FetchFailureInfo
    timestamp: int


CachedFetchEntry = Annotated[Union[SuccessEntry, FailureEntry], Field(discriminator="type")]
_entry_adapter: TypeAdapter = TypeAdapter(CachedFetchEntry)


class CachedFetcherOptions(BaseModel):
    """Caching behaviour of a :class:`CachedFetcher`.

    The camelCase names (``cacheTTL``, ``cacheFailures``, ``failureCacheTTL``)
    are accepted as aliases.  TTLs are in milliseconds; ``None`` means the
    entry never expires.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    cache: bool = True
    cache_ttl: Optional[int] = Field(default=None, ge=0, alias="cacheTTL")
    cache_failures: bool = Field(default=False, alias="cacheFailures")
    failure_cache_ttl: Optional[int] = Field(
        default=DEFAULT_FAILURE_CACHE_TTL_MS, ge=0, alias="failureCacheTTL"
    )


# ---------------------------------------------------------------------------
# Network primitive
# ---------------------------------------------------------------------------


async def _request(
    client: httpx.AsyncClient,
    url: str,
    accept: str,
    user_agent: str,
    timeout: float,
    signal: Optional[asyncio.Event],
    log: logging.Logger,
) -> httpx.Response:
    headers = {"Accept": accept, "User-Agent": user_agent}
    log.debug("Fetching data from URL: %s", url)

    # The caller's deadline replaces the client's default timeout.
    request = asyncio.ensure_future(
        client.get(url, headers=headers, timeout=httpx.Timeout(timeout / 1000))
    )
    abort = asyncio.ensure_future(signal.wait()) if signal is not None else None
    waiters = {request} if abort is None else {request, abort}
    try:
        done, _ = await asyncio.wait(
            waiters,
            timeout=timeout / 1000,
            return_when=asyncio.FIRST_COMPLETED,
        )
    finally:
        if abort is not None:
            abort.cancel()
        if not request.done():
            request.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await request

    if request not in done:
        if abort is not None and abort in done:
            log.debug("Request aborted by caller: %s", url)
            raise FetchAbortedError(f"Request to {url} was aborted")
        log.error("Request timed out after %d ms: %s", timeout, url)
        raise FetchTimeoutError(f"Request to {url} timed out after {timeout} ms")

    try:
        response = request.result()
    except httpx.TimeoutException as exc:
        log.error("Request timed out: %s -- %s", url, exc)
        raise FetchTimeoutError(f"Request to {url} timed out: {exc}") from exc
    except httpx.HTTPError as exc:
        log.error("Network error for URL %s -- %s", url, exc)
        raise FetchError(f"Network error fetching {url}: {exc}") from exc

    if not response.is_success:
        log.error("HTTP error for URL %s, status: %d", url, response.status_code)
        raise FetchHTTPError(response.status_code)

    log.debug("Successfully fetched data from URL: %s", url)
    return response


async def fetch_data(
    url: str,
    accept: str,
    user_agent: str,
    timeout: float = DEFAULT_TIMEOUT_MS,
    signal: Optional[asyncio.Event] = None,
    logger: Optional[logging.Logger] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> httpx.Response:
    """
    GET *url* with the given ``Accept`` and ``User-Agent`` headers.

    Args:
        url:        Fully-qualified URL.
        accept:     ``Accept`` header value.
        user_agent: ``User-Agent`` header value.
        timeout:    Milliseconds before the request is abandoned.
        signal:     Optional abort signal; setting it cancels the request.
        logger:     Optional logger for request tracing.
        client:     Client to send the request with; a short-lived one is
                    created when omitted.

    Returns:
        The response, with its body already read.

    Raises:
        FetchAbortedError: The signal was set before or during the request.
        FetchTimeoutError: The timeout elapsed first.
        FetchHTTPError:    Non-2xx status.
        FetchError:        Any other transport failure.
    """
    log = logger or logging.getLogger(__name__)
    if signal is not None and signal.is_set():
        raise FetchAbortedError(f"Request to {url} was aborted")

    if client is not None:
        return await _request(client, url, accept, user_agent, timeout, signal, log)
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout / 1000), follow_redirects=True) as owned:
        return await _request(owned, url, accept, user_agent, timeout, signal, log)


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


class Fetcher(Protocol):
    """What block plugins receive: a fetch callable plus its user agent."""

    user_agent: str

    async def raw_fetch(
        self,
        url: str,
        accept: str,
        signal: Optional[asyncio.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> httpx.Response: ...


class DirectFetcher:
    """
    Fetcher without caching: every call goes to the network.

    Usage::

        async with create_direct_fetcher("my-bot/1.0") as fetcher:
            response = await fetcher.raw_fetch(url, "text/html")
    """

    def __init__(
        self,
        user_agent: str,
        timeout: float = DEFAULT_TIMEOUT_MS,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        if not user_agent:
            raise ValueError("user_agent is required")
        self.user_agent = user_agent
        self.timeout = timeout
        self._owns_client = client is None
        self._client: httpx.AsyncClient = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout / 1000),
            follow_redirects=True,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client if this fetcher created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "DirectFetcher":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def _fetch_live(
        self,
        url: str,
        accept: str,
        signal: Optional[asyncio.Event],
        log: logging.Logger,
    ) -> httpx.Response:
        return await fetch_data(
            url,
            accept,
            self.user_agent,
            self.timeout,
            signal=signal,
            logger=log,
            client=self._client,
        )

    async def raw_fetch(
        self,
        url: str,
        accept: str,
        signal: Optional[asyncio.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> httpx.Response:
        log = logger or logging.getLogger(__name__)
        log.debug("Direct fetch for URL: %s", url)
        return await self._fetch_live(url, accept, signal, log)


class CachedFetcher(DirectFetcher):
    """
    Fetcher that consults a :class:`CacheStorage` before going to the network.

    Cache hits come back as a synthetic ``200`` response carrying
    ``X-Cache: HIT``.  Failures are re-raised to the caller whether or not they
    were also cached.  Errors writing to the cache are logged and never fail
    the request.

    Args:
        user_agent:    ``User-Agent`` for every request; part of the cache key.
        timeout:       Per-request timeout in milliseconds.
        cache_storage: Backend to use; a fresh in-memory store by default.
                       Ignored when caching is disabled.
        options:       :class:`CachedFetcherOptions` or a mapping of them.
        client:        Optional injected HTTP client.
    """

    def __init__(
        self,
        user_agent: str,
        timeout: float = DEFAULT_TIMEOUT_MS,
        cache_storage: Optional[CacheStorage] = None,
        options: Union[CachedFetcherOptions, Mapping[str, Any], None] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(user_agent, timeout, client)
        if options is None:
            options = CachedFetcherOptions()
        elif not isinstance(options, CachedFetcherOptions):
            options = CachedFetcherOptions.model_validate(options)
        self.options: CachedFetcherOptions = options

        self.storage: Optional[CacheStorage] = None
        if options.cache:
            self.storage = cache_storage if cache_storage is not None else MemoryCacheStorage()

    @staticmethod
    def _parse_entry(raw: str, url: str, log: logging.Logger) -> Optional[Union[SuccessEntry, FailureEntry]]:
        try:
            return _entry_adapter.validate_json(raw)
        except ValidationError as exc:
            log.warning("Failed to parse cached entry for URL %s: %s", url, exc)
            return None

    def _cached_response(self, url: str, accept: str, body: str) -> httpx.Response:
        request = httpx.Request("GET", url, headers={"Accept": accept, "User-Agent": self.user_agent})
        return httpx.Response(
            200,
            headers={"Content-Type": accept, CACHE_HIT_HEADER: "HIT"},
            content=body.encode("utf-8"),
            request=request,
        )

    @staticmethod
    async def _store(
        storage: CacheStorage,
        key: str,
        entry: Union[SuccessEntry, FailureEntry],
        ttl: Optional[int],
        url: str,
        log: logging.Logger,
    ) -> None:
        try:
            await storage.set(key, entry.model_dump_json(), ttl)
        except Exception as exc:  # noqa: BLE001 - a broken cache must not fail the request
            log.warning("Failed to cache %s entry for URL %s: %s", entry.type, url, exc)
            return
        log.debug("Cached %s entry for URL: %s", entry.type, url)

    async def raw_fetch(
        self,
        url: str,
        accept: str,
        signal: Optional[asyncio.Event] = None,
        logger: Optional[logging.Logger] = None,
    ) -> httpx.Response:
        log = logger or logging.getLogger(__name__)
        storage = self.storage
        if storage is None:
            return await self._fetch_live(url, accept, signal, log)

        key = generate_cache_key(url, accept, self.user_agent)
        cached = await storage.get(key)
        if cached is None:
            log.info("Cache MISS for URL: %s", url)
        else:
            entry = self._parse_entry(cached, url, log)
            if isinstance(entry, SuccessEntry):
                log.info("Cache HIT (success) for URL: %s", url)
                return self._cached_response(url, accept, entry.data)
            if isinstance(entry, FailureEntry):
                if self.options.cache_failures:
                    log.info("Cache HIT (failure) for URL: %s", url)
                    raise CachedFetchError(entry.error.message, entry.error.status)
                log.debug("Ignoring cached failure for URL %s: failure caching is disabled", url)

        try:
            response = await self._fetch_live(url, accept, signal, log)
        except Exception as exc:
            if self.options.cache_failures:
                status = exc.status if isinstance(exc, FetchHTTPError) else None
                failure = FailureEntry(
                    error=FetchFailureInfo(message=str(exc), status=status),
                    timestamp=now_ms(),
                )
                await self._store(storage, key, failure, self.options.failure_cache_ttl, url, log)
            raise

        success = SuccessEntry(data=response.text, timestamp=now_ms())
        await self._store(storage, key, success, self.options.cache_ttl, url, log)
        return response


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_direct_fetcher(
    user_agent: str,
    timeout: float = DEFAULT_TIMEOUT_MS,
    client: Optional[httpx.AsyncClient] = None,
) -> DirectFetcher:
    """Create a fetcher that never caches."""
    return DirectFetcher(user_agent, timeout, client=client)


def create_cached_fetcher(
    user_agent: str,
    timeout: float = DEFAULT_TIMEOUT_MS,
    cache_storage: Optional[CacheStorage] = None,
    options: Union[CachedFetcherOptions, Mapping[str, Any], None] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> CachedFetcher:
    """Create a caching fetcher.  See :class:`CachedFetcher` for the arguments."""
    return CachedFetcher(user_agent, timeout, cache_storage, options, client=client)


def create_cached_fetcher_from_settings(
    settings: Optional[Settings] = None,
    kv_storage: Optional[KeyValueStorage] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> CachedFetcher:
    """Build a :class:`CachedFetcher` and its storage backend from :class:`Settings`.

    Args:
        settings:   Defaults to :func:`get_settings`.
        kv_storage: Key-value handle, used only by the ``"local"`` backend.
        client:     Optional injected HTTP client.
    """
    settings = settings or get_settings()
    options = CachedFetcherOptions(
        cache=settings.cache_enabled,
        cache_ttl=settings.cache_ttl_ms,
        cache_failures=settings.cache_failures,
        failure_cache_ttl=settings.failure_cache_ttl_ms,
    )
    storage: Optional[CacheStorage] = None
    if settings.cache_enabled:
        storage = create_cache_storage(
            settings.cache_backend,
            cache_dir=settings.cache_dir,
            enable_compression=settings.cache_compression,
            key_prefix=settings.cache_key_prefix,
            kv_storage=kv_storage,
        )
    logger.debug(
        "Creating cached fetcher: backend=%s cache=%s ttl=%s failures=%s",
        settings.cache_backend,
        settings.cache_enabled,
        settings.cache_ttl_ms,
        settings.cache_failures,
    )
    return CachedFetcher(
        settings.user_agent,
        settings.fetch_timeout_ms,
        storage,
        options,
        client=client,
    )


async def fetch_text(
    fetcher: Fetcher,
    url: str,
    accept: str,
    signal: Optional[asyncio.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> str:
    """Fetch *url* through *fetcher* and return the body as text."""
    response = await fetcher.raw_fetch(url, accept, signal, logger)
    return response.text


async def fetch_json(
    fetcher: Fetcher,
    url: str,
    signal: Optional[asyncio.Event] = None,
    logger: Optional[logging.Logger] = None,
) -> Any:
    """Fetch *url* through *fetcher* with ``Accept: application/json`` and decode it."""
    response = await fetcher.raw_fetch(url, "application/json", signal, logger)
    return response.json()
