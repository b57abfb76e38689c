"""
Prometheus metrics for the message cache and its HTTP surface.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Poll cycle outcome counter (result) and duration histogram
- Counters for stored messages, emitted events and sends

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: success, failure
sync_polls_total = Counter(
    "sync_polls_total",
    "Total poll cycles by outcome",
    labelnames=["result"]
)

sync_poll_duration_seconds = Histogram(
    "sync_poll_duration_seconds",
    "Duration of poll cycles in seconds",
)

messages_stored_total = Counter(
    "messages_stored_total",
    "Messages stored in the cache for the first time",
    labelnames=["source"]
)

sync_events_total = Counter(
    "sync_events_total",
    "Change notifications emitted (one per thread per cycle)",
)

# result: sent, failed
messages_sent_total = Counter(
    "messages_sent_total",
    "Outgoing message attempts by outcome",
    labelnames=["result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    # Normalize path to avoid high-cardinality labels
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_poll_outcome(result: str, duration_seconds: float) -> None:
    """
    Record the outcome of one poll cycle.

    Args:
        result: "success" or "failure"
        duration_seconds: Time spent fetching and persisting
    """
    sync_polls_total.labels(result=result).inc()
    sync_poll_duration_seconds.observe(duration_seconds)


def record_messages_stored(count: int, source: str) -> None:
    """
    Args:
        count: Number of newly stored messages
        source: "sync" or "send"
    """
    if count:
        messages_stored_total.labels(source=source).inc(count)


def record_events_emitted(count: int) -> None:
    if count:
        sync_events_total.inc(count)


def record_send_outcome(result: str) -> None:
    messages_sent_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
