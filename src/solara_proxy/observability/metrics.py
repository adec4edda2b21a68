from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

PROXY_REQUESTS = Counter(
    "solara_proxy_requests_total",
    "Total inbound requests",
    ["route", "status"],  # route: api/audio/health/preflight/rejected
)

UPSTREAM_ATTEMPTS = Counter(
    "solara_upstream_attempts_total",
    "Upstream fetch attempts",
    ["route", "outcome"],  # outcome: ok/server_error/transport_error
)

UPSTREAM_RETRIES = Counter(
    "solara_upstream_retries_total",
    "Upstream retries after a failed attempt",
    ["route"],
)

REQUEST_DURATION = Histogram(
    "solara_request_duration_seconds",
    "Time to answer a proxied request, relay included",
    ["route"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


def generate_metrics() -> bytes:
    return generate_latest()


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST
