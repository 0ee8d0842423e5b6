"""
Prometheus metrics for the messaging API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message operation counter (operation, result)
- Realtime push counter (event, outcome) and live connection gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# operation: send, edit, delete, react, unreact, forward
# result: ok or the error class name
messages_total = Counter(
    "messages_total",
    "Message operations by outcome",
    labelnames=["operation", "result"]
)

# outcome: delivered, dropped (no live connection), failed
realtime_events_total = Counter(
    "realtime_events_total",
    "Realtime push attempts per connection",
    labelnames=["event", "outcome"]
)

realtime_connections = Gauge(
    "realtime_connections",
    "Currently registered realtime connections"
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path (route template when available)
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
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


def record_message_operation(operation: str, result: str) -> None:
    messages_total.labels(operation=operation, result=result).inc()


def record_realtime_event(event: str, outcome: str) -> None:
    realtime_events_total.labels(event=event, outcome=outcome).inc()


def set_realtime_connections(count: int) -> None:
    realtime_connections.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
