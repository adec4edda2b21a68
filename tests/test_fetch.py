"""Tests for the retrying upstream fetch client."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from solara_proxy.core.exceptions import UpstreamUnavailableError
from solara_proxy.proxy.fetch import (
    RetryingFetcher,
    RetryPolicy,
    UpstreamRequest,
    create_http_client,
)

URL = "http://music.kuwo.cn/a.mp3"


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_fetcher(handler) -> tuple[RetryingFetcher, SleepRecorder]:
    sleeps = SleepRecorder()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RetryingFetcher(client, sleep=sleeps), sleeps


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    def test_backoff_sequence(self):
        """Test delays double per attempt without jitter."""
        policy = RetryPolicy(max_attempts=4, base_delay=1.0)
        assert [policy.delay_for(n) for n in range(3)] == [1.0, 2.0, 4.0]

    def test_backoff_fractional_base(self):
        """Test a fractional base delay."""
        policy = RetryPolicy(base_delay=0.25)
        assert policy.delay_for(0) == 0.25
        assert policy.delay_for(2) == 1.0

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"base_delay": -1.0}, {"timeout": 0.0}],
    )
    def test_invalid_policy(self, kwargs):
        """Test nonsensical policies are refused."""
        with pytest.raises(ValueError):
            RetryPolicy(**kwargs)


class TestRetryingFetcher:
    """Tests for RetryingFetcher."""

    @pytest.mark.asyncio
    async def test_success_single_attempt(self):
        """Test a 200 is returned after one attempt."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, content=b"ok")

        fetcher, sleeps = make_fetcher(handler)
        response = await fetcher.fetch(UpstreamRequest("GET", URL))
        body = await response.aread()
        await response.aclose()
        await fetcher.aclose()

        assert response.status_code == 200
        assert body == b"ok"
        assert len(calls) == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_server_error_exhausts_and_returns_last(self):
        """Test an always-503 upstream gets 3 attempts and the 503 is returned."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, content=b"busy")

        fetcher, sleeps = make_fetcher(handler)
        policy = RetryPolicy(max_attempts=3, base_delay=1.0)
        response = await fetcher.fetch(UpstreamRequest("GET", URL, policy=policy))
        await response.aclose()
        await fetcher.aclose()

        assert response.status_code == 503
        assert len(calls) == 3
        assert sleeps.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self):
        """Test a 404 is returned immediately."""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(404)

        fetcher, sleeps = make_fetcher(handler)
        response = await fetcher.fetch(
            UpstreamRequest("GET", URL, policy=RetryPolicy(max_attempts=3))
        )
        await response.aclose()
        await fetcher.aclose()

        assert response.status_code == 404
        assert len(calls) == 1
        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_recovers_after_server_error(self):
        """Test a 502 followed by 200 returns the 200."""
        statuses = iter([502, 200])

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(next(statuses))

        fetcher, sleeps = make_fetcher(handler)
        response = await fetcher.fetch(
            UpstreamRequest("GET", URL, policy=RetryPolicy(max_attempts=3, base_delay=0.5))
        )
        await response.aclose()
        await fetcher.aclose()

        assert response.status_code == 200
        assert sleeps.delays == [0.5]

    @pytest.mark.asyncio
    async def test_recovers_after_connect_error(self):
        """Test a transport failure followed by success returns the response."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        fetcher, sleeps = make_fetcher(handler)
        response = await fetcher.fetch(UpstreamRequest("GET", URL))
        await response.aclose()
        await fetcher.aclose()

        assert response.status_code == 200
        assert len(attempts) == 2
        assert sleeps.delays == [1.0]

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_to_error(self):
        """Test repeated timeouts raise UpstreamUnavailableError after max attempts."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ConnectTimeout("timed out", request=request)

        fetcher, sleeps = make_fetcher(handler)
        policy = RetryPolicy(max_attempts=2, base_delay=0.5)
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await fetcher.fetch(UpstreamRequest("GET", URL, policy=policy))
        await fetcher.aclose()

        assert len(attempts) == 2
        assert sleeps.delays == [0.5]
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.__cause__, httpx.ConnectTimeout)

    @pytest.mark.asyncio
    async def test_per_attempt_timeout(self):
        """Test a stalled attempt is aborted by the policy timeout and retried."""
        attempts = []

        async def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            await asyncio.sleep(5)
            return httpx.Response(200)

        fetcher, sleeps = make_fetcher(handler)
        policy = RetryPolicy(max_attempts=2, base_delay=0.0, timeout=0.05)
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await fetcher.fetch(UpstreamRequest("GET", URL, policy=policy))
        await fetcher.aclose()

        assert len(attempts) == 2
        assert sleeps.delays == [0.0]
        assert isinstance(exc_info.value.__cause__, TimeoutError)

    @pytest.mark.asyncio
    async def test_single_attempt_no_sleep(self):
        """Test a one-attempt policy never sleeps."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        fetcher, sleeps = make_fetcher(handler)
        with pytest.raises(UpstreamUnavailableError):
            await fetcher.fetch(UpstreamRequest("GET", URL, policy=RetryPolicy(max_attempts=1)))
        await fetcher.aclose()

        assert sleeps.delays == []

    @pytest.mark.asyncio
    async def test_non_transport_error_propagates(self):
        """Test unexpected errors are not retried or wrapped."""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise RuntimeError("bug")

        fetcher, _ = make_fetcher(handler)
        with pytest.raises(RuntimeError):
            await fetcher.fetch(UpstreamRequest("GET", URL))
        await fetcher.aclose()

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_request_method_and_headers_sent(self):
        """Test the descriptor's method and headers reach the upstream."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200)

        fetcher, _ = make_fetcher(handler)
        response = await fetcher.fetch(
            UpstreamRequest("HEAD", URL, headers={"Range": "bytes=0-100", "User-Agent": "test/1"})
        )
        await response.aclose()
        await fetcher.aclose()

        assert seen[0].method == "HEAD"
        assert seen[0].headers["Range"] == "bytes=0-100"
        assert seen[0].headers["User-Agent"] == "test/1"


class TestCreateHttpClient:
    """Tests for the shared upstream client factory."""

    @pytest.mark.asyncio
    async def test_client_settings(self):
        """Test redirects are followed and the client itself has no timeout."""
        client = create_http_client(max_connections=10)
        try:
            assert client.follow_redirects is True
            assert client.timeout == httpx.Timeout(None)
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_read_timeout_bounds_body_reads(self):
        """Test a read timeout applies to body reads only."""
        client = create_http_client(read_timeout=7.5)
        try:
            assert client.timeout.read == 7.5
            assert client.timeout.connect is None
            assert client.timeout.pool is None
        finally:
            await client.aclose()

    @pytest.mark.asyncio
    async def test_fetcher_creates_default_client(self):
        """Test a fetcher without an explicit client builds its own."""
        fetcher = RetryingFetcher()
        try:
            assert isinstance(fetcher.client, httpx.AsyncClient)
            assert fetcher.client.follow_redirects is True
        finally:
            await fetcher.aclose()
