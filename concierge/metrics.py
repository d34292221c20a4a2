"""
Prometheus metrics for the concierge webhook.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook item outcome counter (result)
- Outbound message counter (result)
- Reply generation latency histogram

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


# =============================================================================
# Metric Definitions
# =============================================================================

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

# result: dispatched, filtered, failed
webhook_items_total = Counter(
    "webhook_items_total",
    "Webhook message items by outcome",
    labelnames=["result"]
)

# result: sent, error, skipped
outbound_messages_total = Counter(
    "outbound_messages_total",
    "Outbound WhatsApp messages by outcome",
    labelnames=["result"]
)

reply_generation_seconds = Histogram(
    "reply_generation_seconds",
    "Time spent waiting for the reply generator",
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0)
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
    # Per-phone paths would explode label cardinality
    if normalized_path.startswith("/sessions/"):
        normalized_path = "/sessions/{phone_number}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_webhook_item(result: str, count: int = 1) -> None:
    """
    Record webhook item outcomes.

    Args:
        result: "dispatched", "filtered" or "failed"
        count: Number of items with that outcome
    """
    if count:
        webhook_items_total.labels(result=result).inc(count)


def record_outbound_message(result: str) -> None:
    outbound_messages_total.labels(result=result).inc()


def observe_reply_generation(seconds: float) -> None:
    reply_generation_seconds.observe(seconds)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
