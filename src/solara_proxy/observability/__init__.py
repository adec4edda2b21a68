from solara_proxy.observability.logging import configure_logging
from solara_proxy.observability.metrics import (
    PROXY_REQUESTS,
    REQUEST_DURATION,
    UPSTREAM_ATTEMPTS,
    UPSTREAM_RETRIES,
    generate_metrics,
    get_content_type,
)

__all__ = [
    # Logging
    "configure_logging",
    # Metrics
    "PROXY_REQUESTS",
    "UPSTREAM_ATTEMPTS",
    "UPSTREAM_RETRIES",
    "REQUEST_DURATION",
    "generate_metrics",
    "get_content_type",
]
