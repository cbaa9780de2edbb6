"""
Prometheus metrics for the Missiv API.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Miv operation outcome counter (operation, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# Path is the route template (e.g. /conversations/{conversation_id}),
# never the raw URL, to keep label cardinality bounded
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: ok, error, or a MissivError code such as conversation_archived
miv_operations_total = Counter(
    "miv_operations_total",
    "Total conversation and miv operations by outcome",
    labelnames=["operation", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template, or the request path when no route matched
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


def record_miv_operation(operation: str, result: str) -> None:
    """
    Record the outcome of a protocol operation.

    Args:
        operation: e.g. create_conversation, reply, ack, mark_read, forget, archive
        result: "ok", "error", or the MissivError code
    """
    miv_operations_total.labels(operation=operation, result=result).inc()


def get_metrics() -> bytes:
    """Generate Prometheus exposition format metrics."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
