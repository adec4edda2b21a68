"""Upstream HTTP client with bounded retries and exponential backoff.

Retry rules:
- Transport failures (connection refused, DNS errors, timeouts) are retried.
- 5xx responses are retried; the last one is returned as-is, not raised.
- Anything below 500 is returned immediately.

The delay before attempt ``n + 1`` is ``base_delay * 2 ** n``. There is no
jitter and no delay after the final attempt.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field

import httpx
import structlog

from solara_proxy.core.exceptions import UpstreamUnavailableError
from solara_proxy.observability.metrics import UPSTREAM_ATTEMPTS, UPSTREAM_RETRIES

logger = structlog.get_logger()


@dataclass(frozen=True)
class RetryPolicy:
    """Retry behaviour for one class of upstream requests.

    Attributes:
        max_attempts: Total attempts, including the first one.
        base_delay: Delay before the first retry (seconds).
        timeout: Upper bound for a single attempt (seconds).
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    timeout: float = 15.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must not be negative")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")

    def delay_for(self, attempt: int) -> float:
        """Backoff delay after the zero-based ``attempt`` fails."""
        return self.base_delay * (2**attempt)


@dataclass(frozen=True)
class UpstreamRequest:
    """Immutable description of one outbound request."""

    method: str
    url: str
    headers: Mapping[str, str] = field(default_factory=dict)
    policy: RetryPolicy = field(default_factory=RetryPolicy)
    route: str = "api"


def create_http_client(
    max_connections: int = 100,
    read_timeout: float | None = None,
) -> httpx.AsyncClient:
    """Create the shared client used for all upstream requests.

    Per-attempt deadlines up to the response headers are enforced by
    RetryingFetcher. ``read_timeout`` bounds each read while the body is
    relayed, so a stalled stream releases its connection. Redirects are
    followed because the audio hosts bounce between CDN nodes.
    """
    limits = httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(1, max_connections // 5),
    )
    return httpx.AsyncClient(
        timeout=httpx.Timeout(None, read=read_timeout),
        limits=limits,
        follow_redirects=True,
    )


class RetryingFetcher:
    """Sends UpstreamRequests, retrying according to their RetryPolicy.

    Responses are opened in streaming mode and handed back unread; the caller
    is responsible for closing them.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ):
        self._client = client or create_http_client()
        self._sleep = sleep

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _attempt(self, request: UpstreamRequest) -> httpx.Response:
        outbound = self._client.build_request(
            request.method,
            request.url,
            headers=dict(request.headers),
        )
        async with asyncio.timeout(request.policy.timeout):
            return await self._client.send(outbound, stream=True)

    async def fetch(self, request: UpstreamRequest) -> httpx.Response:
        """Fetch ``request.url``, retrying transport failures and 5xx.

        Raises:
            UpstreamUnavailableError: Every attempt failed at the transport level.
        """
        policy = request.policy
        last_error: Exception | None = None

        for attempt in range(policy.max_attempts):
            is_last = attempt == policy.max_attempts - 1
            try:
                response = await self._attempt(request)
            except (httpx.TransportError, TimeoutError) as e:
                last_error = e
                UPSTREAM_ATTEMPTS.labels(route=request.route, outcome="transport_error").inc()
                if is_last:
                    break
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Upstream request failed, retrying",
                    route=request.route,
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    error=str(e) or type(e).__name__,
                    delay=delay,
                )
            else:
                if response.status_code < 500:
                    UPSTREAM_ATTEMPTS.labels(route=request.route, outcome="ok").inc()
                    return response

                UPSTREAM_ATTEMPTS.labels(route=request.route, outcome="server_error").inc()
                if is_last:
                    return response

                await response.aclose()
                delay = policy.delay_for(attempt)
                logger.warning(
                    "Upstream returned server error, retrying",
                    route=request.route,
                    status=response.status_code,
                    attempt=attempt + 1,
                    max_attempts=policy.max_attempts,
                    delay=delay,
                )

            UPSTREAM_RETRIES.labels(route=request.route).inc()
            await self._sleep(delay)

        logger.error(
            "Upstream unreachable",
            route=request.route,
            url=request.url,
            attempts=policy.max_attempts,
            error=str(last_error) or type(last_error).__name__,
        )
        raise UpstreamUnavailableError(request.url, policy.max_attempts) from last_error
