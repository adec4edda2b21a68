"""Upstream fetching and response header handling."""

from solara_proxy.proxy.fetch import (
    RetryingFetcher,
    RetryPolicy,
    UpstreamRequest,
    create_http_client,
)
from solara_proxy.proxy.headers import (
    AUDIO_CACHE_CONTROL,
    CORS_PREFLIGHT_HEADERS,
    DEFAULT_CACHE_CONTROL,
    SAFE_RESPONSE_HEADERS,
    sanitize_headers,
)

__all__ = [
    "RetryPolicy",
    "RetryingFetcher",
    "UpstreamRequest",
    "create_http_client",
    "SAFE_RESPONSE_HEADERS",
    "DEFAULT_CACHE_CONTROL",
    "AUDIO_CACHE_CONTROL",
    "CORS_PREFLIGHT_HEADERS",
    "sanitize_headers",
]
