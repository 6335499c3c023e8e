"""
Prometheus metrics for the chat service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Chat operation outcome counter (operation, result)
- Realtime event counter (type, scope)
- Open realtime connection gauge

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
# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Chat operation outcome counter
# result: ok, validation_error, not_found, persistence_error
chat_operations_total = Counter(
    "chat_operations_total",
    "Total chat operation outcomes",
    labelnames=["operation", "result"]
)

# Realtime events broadcast to clients
# type: created, newMessage; scope: all, room
chat_events_total = Counter(
    "chat_events_total",
    "Total realtime chat events broadcast",
    labelnames=["type", "scope"]
)

realtime_connections = Gauge(
    "realtime_connections",
    "Currently open realtime connections"
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


def record_chat_operation(operation: str, result: str) -> None:
    """
    Record a chat operation outcome.

    Args:
        operation: create_chat, add_message, get_chat, get_chats_by_user, add_participant
        result: ok, validation_error, not_found or persistence_error
    """
    chat_operations_total.labels(operation=operation, result=result).inc()


def record_chat_event(event_type: str, scope: str) -> None:
    """Record a realtime chatUpdate broadcast."""
    chat_events_total.labels(type=event_type, scope=scope).inc()


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
