"""
Tests for markdeco.fetcher.

The network is replaced by ``httpx.MockTransport`` handlers injected through
the ``client=`` argument, so every test counts exactly how many requests
reached the "server".  Timeout tests that depend on real socket behaviour run
against a throwaway localhost server instead.
"""

import asyncio
import contextlib
import json
import logging
from typing import AsyncIterator, Callable, Optional
from unittest.mock import AsyncMock

import httpx
import pytest

from markdeco.cache import MemoryCacheStorage, generate_cache_key
from markdeco.errors import (
    CachedFetchError,
    CacheWriteError,
    FetchAbortedError,
    FetchError,
    FetchHTTPError,
    FetchTimeoutError,
)
from markdeco.fetcher import (
    CACHE_HIT_HEADER,
    CachedFetcher,
    CachedFetcherOptions,
    DirectFetcher,
    FailureEntry,
    FetchFailureInfo,
    create_cached_fetcher,
    create_direct_fetcher,
    fetch_data,
    fetch_json,
    fetch_text,
)

URL = "https://api.example.com/data"
AGENT = "test-agent/1.0"


class CountingServer:
    """MockTransport handler that records every request it receives."""

    def __init__(
        self,
        status: int = 200,
        body: str = '{"ok": true}',
        delay: float = 0.0,
        error: Optional[Callable[[httpx.Request], Exception]] = None,
    ) -> None:
        self.status = status
        self.body = body
        self.delay = delay
        self.error = error
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error(request)
        return httpx.Response(self.status, text=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def server() -> CountingServer:
    return CountingServer()


@pytest.fixture
def failing_server() -> CountingServer:
    return CountingServer(status=500, body="boom")


# ---------------------------------------------------------------------------
# fetch_data
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_data_sends_headers(server: CountingServer) -> None:
    """Accept and User-Agent headers are sent as given."""
    async with server.client() as client:
        response = await fetch_data(URL, "application/json", AGENT, client=client)

    assert response.status_code == 200
    sent = server.requests[0]
    assert sent.headers["accept"] == "application/json"
    assert sent.headers["user-agent"] == AGENT


@pytest.mark.asyncio
async def test_fetch_data_http_error(failing_server: CountingServer) -> None:
    async with failing_server.client() as client:
        with pytest.raises(FetchHTTPError) as exc_info:
            await fetch_data(URL, "text/html", AGENT, client=client)

    assert exc_info.value.status == 500
    assert str(exc_info.value) == "HTTP error, status: 500"


@pytest.mark.asyncio
async def test_fetch_data_network_error() -> None:
    server = CountingServer(error=lambda request: httpx.ConnectError("refused", request=request))
    async with server.client() as client:
        with pytest.raises(FetchError) as exc_info:
            await fetch_data(URL, "text/html", AGENT, client=client)

    assert not isinstance(exc_info.value, FetchHTTPError)
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


@pytest.mark.asyncio
async def test_fetch_data_timeout() -> None:
    """A response slower than the timeout raises FetchTimeoutError."""
    server = CountingServer(delay=2.0)
    async with server.client() as client:
        with pytest.raises(FetchTimeoutError):
            await fetch_data(URL, "text/html", AGENT, timeout=50, client=client)


@pytest.mark.asyncio
async def test_fetch_data_transport_timeout_is_mapped() -> None:
    server = CountingServer(error=lambda request: httpx.ReadTimeout("slow", request=request))
    async with server.client() as client:
        with pytest.raises(FetchTimeoutError):
            await fetch_data(URL, "text/html", AGENT, client=client)


@pytest.mark.asyncio
async def test_fetch_data_pre_aborted_signal_skips_network(server: CountingServer) -> None:
    signal = asyncio.Event()
    signal.set()
    async with server.client() as client:
        with pytest.raises(FetchAbortedError):
            await fetch_data(URL, "text/html", AGENT, signal=signal, client=client)

    assert server.calls == 0


@pytest.mark.asyncio
async def test_fetch_data_abort_mid_flight() -> None:
    """Setting the signal while the request is in flight cancels it."""
    server = CountingServer(delay=2.0)
    signal = asyncio.Event()

    async def abort_soon() -> None:
        await asyncio.sleep(0.02)
        signal.set()

    async with server.client() as client:
        aborter = asyncio.create_task(abort_soon())
        with pytest.raises(FetchAbortedError):
            await fetch_data(URL, "text/html", AGENT, signal=signal, client=client)
        await aborter

    assert server.calls == 1


# ---------------------------------------------------------------------------
# Timeouts against a real socket
# ---------------------------------------------------------------------------


@contextlib.asynccontextmanager
async def slow_http_server(delay: float) -> AsyncIterator[str]:
    """Serve a single ``200 ok`` on localhost after *delay* seconds."""

    async def handle(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            await reader.readuntil(b"\r\n\r\n")
            await asyncio.sleep(delay)
            writer.write(
                b"HTTP/1.1 200 OK\r\nContent-Type: text/plain\r\n"
                b"Content-Length: 2\r\nConnection: close\r\n\r\nok"
            )
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    async with server:
        yield f"http://127.0.0.1:{port}/"


@pytest.fixture
def no_proxy(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY", "http_proxy", "https_proxy", "all_proxy"):
        monkeypatch.delenv(name, raising=False)


@pytest.mark.asyncio
async def test_owned_client_honours_timeouts_above_five_seconds(no_proxy: None) -> None:
    """A server slower than httpx's 5 s default still answers within a 20 s timeout."""
    async with slow_http_server(5.5) as url:
        response = await fetch_data(url, "text/plain", AGENT, timeout=20000)

    assert response.status_code == 200
    assert response.text == "ok"


@pytest.mark.asyncio
async def test_injected_client_default_timeout_is_overridden(no_proxy: None) -> None:
    """The per-call timeout wins over a shorter default configured on the client."""
    async with slow_http_server(0.3) as url:
        async with httpx.AsyncClient(timeout=0.05) as client:
            response = await fetch_data(url, "text/plain", AGENT, timeout=5000, client=client)

    assert response.text == "ok"


@pytest.mark.asyncio
async def test_slow_server_exceeding_timeout(no_proxy: None) -> None:
    async with slow_http_server(1.0) as url:
        with pytest.raises(FetchTimeoutError):
            await fetch_data(url, "text/plain", AGENT, timeout=100)


@pytest.mark.asyncio
async def test_fetcher_client_uses_configured_timeout() -> None:
    async with DirectFetcher(AGENT, timeout=20000) as fetcher:
        assert fetcher._client.timeout == httpx.Timeout(20.0)


# ---------------------------------------------------------------------------
# DirectFetcher
# ---------------------------------------------------------------------------


def test_empty_user_agent_rejected() -> None:
    with pytest.raises(ValueError):
        DirectFetcher("")
    with pytest.raises(ValueError):
        CachedFetcher("")


@pytest.mark.asyncio
async def test_direct_fetcher_never_caches(server: CountingServer) -> None:
    async with server.client() as client:
        fetcher = create_direct_fetcher(AGENT, client=client)
        assert fetcher.user_agent == AGENT
        first = await fetcher.raw_fetch(URL, "application/json")
        second = await fetcher.raw_fetch(URL, "application/json")

    assert server.calls == 2
    assert CACHE_HIT_HEADER not in first.headers
    assert CACHE_HIT_HEADER not in second.headers


@pytest.mark.asyncio
async def test_close_only_closes_owned_client(server: CountingServer) -> None:
    async with server.client() as client:
        async with DirectFetcher(AGENT, client=client):
            pass
        assert not client.is_closed

    fetcher = DirectFetcher(AGENT)
    await fetcher.close()
    assert fetcher._client.is_closed


# ---------------------------------------------------------------------------
# CachedFetcher: success caching
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_second_fetch_is_served_from_cache(server: CountingServer) -> None:
    """Same URL, Accept and User-Agent: one network call, the second is a HIT."""
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, client=client)
        first = await fetcher.raw_fetch(URL, "application/json")
        second = await fetcher.raw_fetch(URL, "application/json")

    assert server.calls == 1
    assert CACHE_HIT_HEADER not in first.headers
    assert second.status_code == 200
    assert second.headers[CACHE_HIT_HEADER] == "HIT"
    assert second.headers["content-type"] == "application/json"
    assert second.text == first.text
    assert second.json() == {"ok": True}


@pytest.mark.asyncio
async def test_different_accept_is_a_different_entry(server: CountingServer) -> None:
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, client=client)
        await fetcher.raw_fetch(URL, "application/json")
        await fetcher.raw_fetch(URL, "text/html")

    assert server.calls == 2


@pytest.mark.asyncio
async def test_success_ttl_expires(server: CountingServer) -> None:
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, options={"cacheTTL": 50}, client=client)
        await fetcher.raw_fetch(URL, "text/html")
        await asyncio.sleep(0.1)
        await fetcher.raw_fetch(URL, "text/html")

    assert server.calls == 2


@pytest.mark.asyncio
async def test_success_entry_layout(server: CountingServer) -> None:
    """The stored payload is a JSON success record with the response body."""
    storage = MemoryCacheStorage()
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, cache_storage=storage, client=client)
        await fetcher.raw_fetch(URL, "application/json")

    raw = await storage.get(generate_cache_key(URL, "application/json", AGENT))
    stored = json.loads(raw)
    assert stored["type"] == "success"
    assert stored["data"] == '{"ok": true}'
    assert isinstance(stored["timestamp"], int)


@pytest.mark.asyncio
async def test_cache_disabled_always_hits_network(server: CountingServer) -> None:
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, options=CachedFetcherOptions(cache=False), client=client)
        assert fetcher.storage is None
        await fetcher.raw_fetch(URL, "text/html")
        await fetcher.raw_fetch(URL, "text/html")

    assert server.calls == 2


@pytest.mark.asyncio
async def test_custom_storage_is_used(server: CountingServer) -> None:
    storage = MemoryCacheStorage()
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, cache_storage=storage, client=client)
        assert fetcher.storage is storage
        await fetcher.raw_fetch(URL, "text/html")

    assert await storage.size() == 1


@pytest.mark.asyncio
async def test_default_storage_is_per_fetcher(server: CountingServer) -> None:
    async with server.client() as client:
        first = create_cached_fetcher(AGENT, client=client)
        second = create_cached_fetcher(AGENT, client=client)
        await first.raw_fetch(URL, "text/html")
        await second.raw_fetch(URL, "text/html")

    assert isinstance(first.storage, MemoryCacheStorage)
    assert first.storage is not second.storage
    assert server.calls == 2


@pytest.mark.asyncio
async def test_corrupt_cached_entry_is_a_miss(server: CountingServer) -> None:
    storage = MemoryCacheStorage()
    key = generate_cache_key(URL, "text/html", AGENT)
    await storage.set(key, "definitely not json")

    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, cache_storage=storage, client=client)
        response = await fetcher.raw_fetch(URL, "text/html")

    assert server.calls == 1
    assert CACHE_HIT_HEADER not in response.headers
    assert json.loads(await storage.get(key))["type"] == "success"


@pytest.mark.asyncio
async def test_cache_write_failure_does_not_fail_request(server: CountingServer) -> None:
    """A broken backend is logged and the live response is still returned."""
    storage = AsyncMock()
    storage.get.return_value = None
    storage.set.side_effect = CacheWriteError("disk full")

    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, cache_storage=storage, client=client)
        response = await fetcher.raw_fetch(URL, "text/html")

    assert response.status_code == 200
    storage.set.assert_awaited_once()


# ---------------------------------------------------------------------------
# CachedFetcher: failure caching
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_failures_not_cached_by_default() -> None:
    """A 404 with failure caching off reaches the network on every call."""
    not_found = CountingServer(status=404, body="missing")
    async with not_found.client() as client:
        fetcher = create_cached_fetcher("agent", 5000, client=client)
        for _ in range(2):
            with pytest.raises(FetchHTTPError) as exc_info:
                await fetcher.raw_fetch(URL, "text/html")
            assert exc_info.value.status == 404

    assert not_found.calls == 2


@pytest.mark.asyncio
async def test_cached_failure_replayed_until_ttl(failing_server: CountingServer) -> None:
    """With failure caching, the second call raises CachedFetchError without the network."""
    options = {"cacheFailures": True, "failureCacheTTL": 50}
    async with failing_server.client() as client:
        fetcher = create_cached_fetcher(AGENT, options=options, client=client)

        with pytest.raises(FetchHTTPError):
            await fetcher.raw_fetch(URL, "text/html")

        with pytest.raises(CachedFetchError) as exc_info:
            await fetcher.raw_fetch(URL, "text/html")
        assert failing_server.calls == 1
        assert str(exc_info.value) == "Cached error"
        assert exc_info.value.original_message == "HTTP error, status: 500"
        assert exc_info.value.status == 500

        await asyncio.sleep(0.1)

        with pytest.raises(FetchHTTPError):
            await fetcher.raw_fetch(URL, "text/html")

    assert failing_server.calls == 2


@pytest.mark.asyncio
async def test_network_failure_is_cached_without_status() -> None:
    server = CountingServer(error=lambda request: httpx.ConnectError("refused", request=request))
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, options={"cacheFailures": True}, client=client)
        with pytest.raises(FetchError):
            await fetcher.raw_fetch(URL, "text/html")
        with pytest.raises(CachedFetchError) as exc_info:
            await fetcher.raw_fetch(URL, "text/html")

    assert exc_info.value.status is None
    assert "refused" in exc_info.value.original_message
    assert server.calls == 1


@pytest.mark.asyncio
async def test_cached_failure_ignored_when_failure_caching_off(server: CountingServer) -> None:
    """A failure record left by another fetcher is not replayed by one that does not cache failures."""
    storage = MemoryCacheStorage()
    key = generate_cache_key(URL, "text/html", AGENT)
    failure = FailureEntry(error=FetchFailureInfo(message="HTTP error, status: 503", status=503), timestamp=1)
    await storage.set(key, failure.model_dump_json())

    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, cache_storage=storage, client=client)
        response = await fetcher.raw_fetch(URL, "text/html")

    assert response.status_code == 200
    assert server.calls == 1


@pytest.mark.asyncio
async def test_cached_fetcher_respects_pre_aborted_signal() -> None:
    server = CountingServer(delay=2.0)
    signal = asyncio.Event()
    signal.set()
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, client=client)
        with pytest.raises(FetchAbortedError):
            await fetcher.raw_fetch(URL, "text/html", signal=signal)

    assert server.calls == 0


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


class TestCachedFetcherOptions:
    def test_defaults(self) -> None:
        options = CachedFetcherOptions()
        assert options.cache is True
        assert options.cache_ttl is None
        assert options.cache_failures is False
        assert options.failure_cache_ttl == 300000

    def test_camel_case_aliases(self) -> None:
        options = CachedFetcherOptions.model_validate(
            {"cacheTTL": 1000, "cacheFailures": True, "failureCacheTTL": 2000}
        )
        assert options.cache_ttl == 1000
        assert options.cache_failures is True
        assert options.failure_cache_ttl == 2000

    def test_snake_case_names(self) -> None:
        options = CachedFetcherOptions(cache_ttl=10, cache_failures=True)
        assert options.cache_ttl == 10
        assert options.cache_failures is True

    def test_negative_ttl_rejected(self) -> None:
        with pytest.raises(ValueError):
            CachedFetcherOptions(cache_ttl=-1)

    def test_mapping_is_accepted_by_fetcher(self) -> None:
        fetcher = CachedFetcher(AGENT, options={"cacheTTL": 5})
        assert fetcher.options.cache_ttl == 5


# ---------------------------------------------------------------------------
# Convenience helpers and logging
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_fetch_text_and_json(server: CountingServer) -> None:
    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, client=client)
        assert await fetch_text(fetcher, URL, "application/json") == '{"ok": true}'
        assert await fetch_json(fetcher, URL) == {"ok": True}

    assert server.requests[0].headers["accept"] == "application/json"
    assert server.calls == 1


@pytest.mark.asyncio
async def test_cache_miss_and_hit_are_logged(server: CountingServer, caplog: pytest.LogCaptureFixture) -> None:
    log = logging.getLogger("markdeco.tests.fetch")
    caplog.set_level(logging.INFO, logger="markdeco.tests.fetch")

    async with server.client() as client:
        fetcher = create_cached_fetcher(AGENT, client=client)
        await fetcher.raw_fetch(URL, "text/html", logger=log)
        await fetcher.raw_fetch(URL, "text/html", logger=log)

    messages = [record.getMessage() for record in caplog.records if record.name == "markdeco.tests.fetch"]
    assert f"Cache MISS for URL: {URL}" in messages
    assert f"Cache HIT (success) for URL: {URL}" in messages
