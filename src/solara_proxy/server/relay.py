"""HTTP proxy server: request routing and streaming response relay.

Every inbound request is classified as one of:
1. CORS preflight (OPTIONS, any path)
2. Health check (/health)
3. Metrics (/metrics, when enabled)
4. Audio fetch (?target=<url> on an allow-listed host)
5. Metadata API fetch (everything else, requires ?types=)
"""

from __future__ import annotations

import time
from datetime import UTC, datetime

import httpx
import structlog
from aiohttp import web
from multidict import CIMultiDict

from solara_proxy.core.config import ProxySettings
from solara_proxy.core.exceptions import UpstreamUnavailableError
from solara_proxy.observability.metrics import (
    PROXY_REQUESTS,
    REQUEST_DURATION,
    generate_metrics,
    get_content_type,
)
from solara_proxy.proxy.fetch import (
    RetryingFetcher,
    UpstreamRequest,
    create_http_client,
)
from solara_proxy.proxy.headers import (
    AUDIO_CACHE_CONTROL,
    CORS_PREFLIGHT_HEADERS,
    sanitize_headers,
)
from solara_proxy.security.hostallow import create_host_allow_list

logger = structlog.get_logger()

DEFAULT_USER_AGENT = "Mozilla/5.0"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"
AUDIO_CONTENT_TYPE = "audio/mpeg"
PICTURE_CONTENT_TYPE = "image/jpeg"

# Query parameters consumed by the proxy and never sent to the metadata API
STRIPPED_PARAMS = frozenset({"target", "callback"})

ACCEPT_BY_TYPE = {
    "pic": "image/*,*/*;q=0.8",
    "url": "audio/*,application/json,*/*;q=0.8",
}

RELAY_CHUNK_SIZE = 64 * 1024


def _plain(text: str, status: int) -> web.Response:
    return web.Response(
        text=text,
        status=status,
        content_type="text/plain",
        headers={"Access-Control-Allow-Origin": "*"},
    )


def _abort(request: web.Request, response: web.StreamResponse) -> None:
    # Headers are already sent; closing the connection marks the body truncated
    response.force_close()
    if request.transport is not None:
        request.transport.close()


async def relay_response(
    request: web.Request,
    upstream: httpx.Response,
    headers: CIMultiDict[str],
    force_ranges: bool = False,
) -> web.StreamResponse:
    """Stream an upstream response back to the caller.

    The body is copied chunk by chunk and never held in memory as a whole.
    The upstream response is always closed, even if the caller goes away.
    Once headers have been sent this never raises; a failure mid-body
    closes the connection instead.

    Args:
        request: Inbound request being answered.
        upstream: Open streaming response from RetryingFetcher.
        headers: Sanitized outbound headers.
        force_ranges: Advertise byte ranges and echo Content-Range, for
            audio requests that carried a Range header.
    """
    if force_ranges:
        headers["Accept-Ranges"] = "bytes"
        headers["Content-Range"] = upstream.headers.get("Content-Range", "")

    # Upstream ignored Accept-Encoding: identity, so relay decoded bytes
    encoded = "content-encoding" in upstream.headers
    if encoded:
        headers.popall("Content-Length", None)

    response = web.StreamResponse(
        status=upstream.status_code,
        reason=upstream.reason_phrase or None,
        headers=headers,
    )
    try:
        await response.prepare(request)
        if request.method != "HEAD":
            # A body that was already read can only be replayed decoded
            chunks = (
                upstream.aiter_bytes(RELAY_CHUNK_SIZE)
                if encoded or upstream.is_stream_consumed
                else upstream.aiter_raw(RELAY_CHUNK_SIZE)
            )
            async for chunk in chunks:
                await response.write(chunk)
        await response.write_eof()
    except (httpx.HTTPError, ConnectionResetError) as e:
        logger.warning(
            "Relay interrupted",
            path=request.path,
            status=upstream.status_code,
            error=str(e) or type(e).__name__,
        )
        _abort(request, response)
    except Exception:
        logger.exception("Relay failed", path=request.path, status=upstream.status_code)
        _abort(request, response)
    finally:
        await upstream.aclose()
    return response


class ProxyServer:
    """CORS relay in front of the metadata API and the audio hosts."""

    def __init__(self, config: ProxySettings, fetcher: RetryingFetcher | None = None):
        self.config = config
        self._allow_list = create_host_allow_list(config.audio_domains)
        self._api_policy = config.api_retry_policy()
        self._audio_policy = config.audio_retry_policy()
        self._fetcher = fetcher
        self._owns_fetcher = fetcher is None
        self._started_at = time.monotonic()
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        """Build the aiohttp application. A single catch-all route does the dispatch."""
        app = web.Application()
        app.router.add_route("*", "/{path:.*}", self._handle_request)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        self._app = app
        return app

    async def _on_startup(self, app: web.Application) -> None:
        self._started_at = time.monotonic()
        if self._fetcher is None:
            self._fetcher = RetryingFetcher(
                create_http_client(
                    self.config.max_connections,
                    read_timeout=self.config.upstream_timeout,
                )
            )

    async def _on_cleanup(self, app: web.Application) -> None:
        if self._owns_fetcher and self._fetcher is not None:
            await self._fetcher.aclose()
            self._fetcher = None

    async def start(self) -> None:
        """Start serving on the configured host and port."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.config.host, self.config.port)
        await site.start()
        logger.info(
            "Proxy server started",
            host=self.config.host,
            port=self.config.port,
            api_base_url=self.config.api_base_url,
            audio_domains=self.config.audio_domains,
            metrics_enabled=self.config.metrics_enabled,
        )

    async def stop(self) -> None:
        """Stop the server and release upstream connections."""
        logger.info("Stopping proxy server...")
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Proxy server stopped")

    @property
    def fetcher(self) -> RetryingFetcher:
        if self._fetcher is None:
            raise RuntimeError("Proxy server is not running")
        return self._fetcher

    async def _handle_request(self, request: web.Request) -> web.StreamResponse:
        if request.method == "OPTIONS":
            PROXY_REQUESTS.labels(route="preflight", status="204").inc()
            return web.Response(status=204, headers=CORS_PREFLIGHT_HEADERS)

        if request.method not in ("GET", "HEAD"):
            PROXY_REQUESTS.labels(route="rejected", status="405").inc()
            return _plain("Method not allowed", 405)

        if request.path == "/health":
            return self._handle_health()

        if self.config.metrics_enabled and request.path == "/metrics":
            return web.Response(
                body=generate_metrics(),
                headers={"Content-Type": get_content_type()},
            )

        target = request.query.get("target")
        route = "audio" if target else "api"
        request_start = time.monotonic()
        try:
            if target:
                response = await self._proxy_audio(request, target)
            else:
                response = await self._proxy_api(request)
        except UpstreamUnavailableError:
            response = _plain("Proxy error", 502)
        except Exception:
            logger.exception("Unhandled proxy error", route=route, path=request.path)
            response = _plain("Internal server error", 500)

        PROXY_REQUESTS.labels(route=route, status=str(response.status)).inc()
        REQUEST_DURATION.labels(route=route).observe(time.monotonic() - request_start)
        return response

    def _handle_health(self) -> web.Response:
        """Liveness probe. Never touches an upstream."""
        try:
            payload = {
                "status": "ok",
                "timestamp": datetime.now(UTC).isoformat(),
                "uptime": round(time.monotonic() - self._started_at, 3),
                "port": self.config.port,
            }
        except Exception:
            logger.exception("Health check failed")
            PROXY_REQUESTS.labels(route="health", status="500").inc()
            return web.json_response(
                {"status": "error", "message": "Health check failed"},
                status=500,
                headers={"Access-Control-Allow-Origin": "*"},
            )
        PROXY_REQUESTS.labels(route="health", status="200").inc()
        return web.json_response(payload, headers={"Access-Control-Allow-Origin": "*"})

    async def _proxy_audio(self, request: web.Request, target: str) -> web.StreamResponse:
        result = self._allow_list.check(target)
        if not result.allowed or result.url is None:
            logger.info("Rejected audio target", reason=result.reason)
            return _plain("Invalid target", 400)

        headers = {
            "User-Agent": request.headers.get("User-Agent") or DEFAULT_USER_AGENT,
            "Accept": request.headers.get("Accept") or "*/*",
            "Accept-Encoding": "identity",
        }
        if self.config.audio_referer:
            headers["Referer"] = self.config.audio_referer
        range_header = request.headers.get("Range")
        if range_header:
            headers["Range"] = range_header

        upstream = await self.fetcher.fetch(
            UpstreamRequest(
                method=request.method,
                url=result.url,
                headers=headers,
                policy=self._audio_policy,
                route="audio",
            )
        )
        outbound = sanitize_headers(upstream.headers, default_cache_control=AUDIO_CACHE_CONTROL)
        outbound.setdefault("Content-Type", AUDIO_CONTENT_TYPE)
        return await relay_response(request, upstream, outbound, force_ranges=bool(range_header))

    async def _proxy_api(self, request: web.Request) -> web.StreamResponse:
        params = {
            key: value
            for key, value in request.query.items()
            if key not in STRIPPED_PARAMS
        }
        if "types" not in params:
            return _plain("Missing types", 400)

        types = params["types"]
        url = httpx.URL(self.config.api_base_url).copy_merge_params(params)
        upstream = await self.fetcher.fetch(
            UpstreamRequest(
                method=request.method,
                url=str(url),
                headers={
                    "User-Agent": request.headers.get("User-Agent") or DEFAULT_USER_AGENT,
                    "Accept": ACCEPT_BY_TYPE.get(types, "application/json"),
                    "Accept-Encoding": "identity",
                },
                policy=self._api_policy,
                route="api",
            )
        )
        outbound = sanitize_headers(upstream.headers)
        outbound.setdefault(
            "Content-Type",
            PICTURE_CONTENT_TYPE if types == "pic" else JSON_CONTENT_TYPE,
        )
        return await relay_response(request, upstream, outbound)
