"""
Prometheus metrics for the relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound SMS outcome counter (result)
- Outbound SMS send counter (result)
- Proposal action counter (action, result)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


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

# result: subscribed, unsubscribed, message, invalid_phone, error
inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound SMS processing outcomes",
    labelnames=["result"]
)

# result: sent, failed
sms_sends_total = Counter(
    "sms_sends_total",
    "Outbound SMS send attempts",
    labelnames=["result"]
)

# action: send, cancel; result: done, duplicate, failed
proposal_actions_total = Counter(
    "proposal_actions_total",
    "Broadcast proposal actions",
    labelnames=["action", "result"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Route template (e.g. /messages/{phone}) or raw path
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


def record_inbound_outcome(result: str) -> None:
    inbound_messages_total.labels(result=result).inc()


def record_sms_send(result: str) -> None:
    sms_sends_total.labels(result=result).inc()


def record_proposal_action(action: str, result: str) -> None:
    proposal_actions_total.labels(action=action, result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
