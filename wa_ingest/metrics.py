"""
Prometheus metrics for the webhook service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook request outcome counter (result)
- Per-event outcome counter (kind, outcome)
- Background task outcome counter (name, outcome)

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

# result: ok, ignored, invalid_signature, malformed
webhook_requests_total = Counter(
    "webhook_requests_total",
    "Total webhook deliveries by outcome",
    labelnames=["result"]
)

# kind: inbound (created, duplicate, failed) or status (applied, orphan, stale, recorded_only, failed)
webhook_events_total = Counter(
    "webhook_events_total",
    "Webhook messages and statuses by processing outcome",
    labelnames=["kind", "outcome"]
)

background_tasks_total = Counter(
    "background_tasks_total",
    "Fire-and-forget tasks by outcome",
    labelnames=["name", "outcome"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Drop the query string to avoid high-cardinality labels
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


def record_webhook_outcome(result: str) -> None:
    webhook_requests_total.labels(result=result).inc()


def record_webhook_event(kind: str, outcome: str) -> None:
    webhook_events_total.labels(kind=kind, outcome=outcome).inc()


def record_background_task(name: str, outcome: str) -> None:
    background_tasks_total.labels(name=name, outcome=outcome).inc()


def get_metrics() -> bytes:
    """Metrics in Prometheus text exposition format."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
