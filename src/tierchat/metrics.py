from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total errors returned by server",
    labelnames=["type"],
)

tier_attempts_total = Counter(
    "provider_tier_attempts_total",
    "Provider tier outcomes (success, failure, skipped)",
    labelnames=["family", "kind", "outcome"],
)

tier_latency_seconds = Histogram(
    "provider_tier_latency_seconds",
    "Latency of a single provider tier attempt",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["kind"],
)

fallback_exhausted_total = Counter(
    "fallback_exhausted_total",
    "Requests for which every provider tier failed",
    labelnames=["family"],
)

stream_outcomes_total = Counter(
    "stream_outcomes_total",
    "Streaming responses by final state",
    labelnames=["outcome"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
