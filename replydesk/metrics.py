"""
Prometheus metrics for the reply service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Inbound message outcome counter (result)
- Reply source counter (source)
- Outbound dispatch counter (result)
- Session state gauge (state)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

from replydesk.schemas import SessionState


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

# result: processed, skipped, persist_error, dropped
inbound_messages_total = Counter(
    "inbound_messages_total",
    "Inbound messages by processing outcome",
    labelnames=["result"]
)

# source: order, hours, ai, ai_fallback, generic
replies_total = Counter(
    "replies_total",
    "Replies chosen by the reply policy, by source",
    labelnames=["source"]
)

# result: sent, failed, not_connected
dispatch_total = Counter(
    "dispatch_total",
    "Outbound dispatch attempts by result",
    labelnames=["result"]
)

session_state = Gauge(
    "session_state",
    "1 for the current transport session state, 0 otherwise",
    labelnames=["state"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    # Strip query strings to avoid high-cardinality labels
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


def record_inbound(result: str) -> None:
    inbound_messages_total.labels(result=result).inc()


def record_reply(source: str) -> None:
    replies_total.labels(source=source).inc()


def record_dispatch(result: str) -> None:
    dispatch_total.labels(result=result).inc()


def set_session_state(state: SessionState) -> None:
    for candidate in SessionState:
        session_state.labels(state=candidate.value).set(1 if candidate == state else 0)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
