"""Response header sanitization for proxied responses.

Upstream responses carry infrastructure headers (Server, Set-Cookie, Via, ...)
that must never reach the browser. Only the names in SAFE_RESPONSE_HEADERS are
copied; everything else is dropped.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from multidict import CIMultiDict

SAFE_RESPONSE_HEADERS: frozenset[str] = frozenset(
    {
        "content-type",
        "cache-control",
        "accept-ranges",
        "content-length",
        "content-range",
        "etag",
        "last-modified",
        "expires",
    }
)

DEFAULT_CACHE_CONTROL = "no-store"
AUDIO_CACHE_CONTROL = "public, max-age=3600"

CORS_PREFLIGHT_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET,HEAD,OPTIONS",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}


def _iter_items(
    headers: Mapping[str, str] | Iterable[tuple[str, str]],
) -> Iterable[tuple[str, str]]:
    if isinstance(headers, Mapping):
        # httpx.Headers and CIMultiDict expose repeated headers via multi_items/items
        multi_items = getattr(headers, "multi_items", None)
        if callable(multi_items):
            return multi_items()
        return headers.items()
    return headers


def sanitize_headers(
    upstream_headers: Mapping[str, str] | Iterable[tuple[str, str]] | None,
    default_cache_control: str = DEFAULT_CACHE_CONTROL,
) -> CIMultiDict[str]:
    """Build the outbound header set for a proxied response.

    Args:
        upstream_headers: Headers of the upstream response, or None.
        default_cache_control: Cache-Control used when the upstream sent none.

    Returns:
        A new case-insensitive mapping holding only safe-listed headers,
        a Cache-Control value and ``Access-Control-Allow-Origin: *``.
    """
    headers: CIMultiDict[str] = CIMultiDict()
    if upstream_headers is not None:
        for name, value in _iter_items(upstream_headers):
            if name.lower() in SAFE_RESPONSE_HEADERS:
                headers[name] = value

    if "Cache-Control" not in headers:
        headers["Cache-Control"] = default_cache_control
    headers["Access-Control-Allow-Origin"] = "*"
    return headers
