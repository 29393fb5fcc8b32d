from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

requests_total = Counter(
    "ollama_client_requests_total",
    "Total backend operations issued by the client",
    labelnames=["operation", "status"],
)

request_latency_seconds = Histogram(
    "ollama_client_request_latency_seconds",
    "Backend operation latency including retries",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["operation"],
)

retries_total = Counter(
    "ollama_client_retries_total",
    "Retry attempts after a retryable failure",
    labelnames=["operation"],
)

stream_lines_skipped_total = Counter(
    "ollama_client_stream_lines_skipped_total",
    "Malformed stream lines skipped",
)

errors_classified_total = Counter(
    "llm_errors_classified_total",
    "Failures turned into error records",
    labelnames=["kind", "severity"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
