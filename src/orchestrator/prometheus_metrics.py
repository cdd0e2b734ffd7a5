"""
Prometheus metrics endpoint for the MCP HTTP adapter.

Provides standard Prometheus metrics for monitoring:
- Request counts by JSON-RPC method and outcome
- Request latency histograms
- Pending (in-flight) subprocess calls
- Subprocess lifecycle state
- Lines dropped from the subprocess stream

Usage:
    from prometheus_metrics import metrics_router, metrics_collector
    app.include_router(metrics_router)
"""

from prometheus_client import (
    Counter, Gauge, Histogram, Info,
    generate_latest, CONTENT_TYPE_LATEST,
    CollectorRegistry
)
from fastapi import Response, APIRouter
import threading
import time

# Create a custom registry to avoid conflicts with default registry
REGISTRY = CollectorRegistry()

LIFECYCLE_STATES = ("stopped", "starting", "ready", "stopping")

# ============ Server Info ============
SERVER_INFO = Info(
    'mcp_adapter',
    'MCP HTTP adapter information',
    registry=REGISTRY
)

# ============ Request Metrics ============
REQUEST_COUNT = Counter(
    'mcp_adapter_requests_total',
    'Total JSON-RPC requests handled',
    ['method', 'outcome'],
    registry=REGISTRY
)

REQUEST_LATENCY = Histogram(
    'mcp_adapter_request_latency_seconds',
    'Time from HTTP arrival to response',
    ['method'],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
    registry=REGISTRY
)

REQUEST_IN_PROGRESS = Gauge(
    'mcp_adapter_requests_in_progress',
    'HTTP requests currently awaiting the subprocess',
    registry=REGISTRY
)

# ============ Subprocess Metrics ============
PENDING_REQUESTS = Gauge(
    'mcp_adapter_pending_requests',
    'Entries in the pending-request table',
    registry=REGISTRY
)

LIFECYCLE_STATE = Gauge(
    'mcp_adapter_lifecycle_state',
    'Current lifecycle state (1 for the active state)',
    ['state'],
    registry=REGISTRY
)

PARSE_ERRORS = Counter(
    'mcp_adapter_parse_errors_total',
    'Lines from the subprocess dropped as unparseable',
    registry=REGISTRY
)


class MetricsCollector:
    """
    Centralized metrics collection for the adapter.

    Thread-safe via atomic operations on prometheus_client metrics.
    Uses lock for _start_times dict to handle concurrent async requests.
    """

    def __init__(self):
        self._start_times: dict[str, float] = {}
        self._lock = threading.Lock()  # Protects _start_times dict

    def set_server_info(self, version: str, session: str):
        """Set server info metric."""
        SERVER_INFO.info({
            'version': version,
            'session': session
        })

    def record_request_start(self, request_key: str) -> None:
        """Record request start for timing.

        Args:
            request_key: Unique key for this HTTP request
        """
        with self._lock:
            self._start_times[request_key] = time.time()
        REQUEST_IN_PROGRESS.inc()

    def record_request_end(self, request_key: str, method: str, outcome: str):
        """Record request completion.

        Args:
            request_key: Key passed to record_request_start
            method: JSON-RPC method
            outcome: result, error, timeout, unavailable, internal_error
        """
        REQUEST_IN_PROGRESS.dec()
        REQUEST_COUNT.labels(method=method, outcome=outcome).inc()

        with self._lock:
            start_time = self._start_times.pop(request_key, None)
        if start_time:
            REQUEST_LATENCY.labels(method=method).observe(time.time() - start_time)

    def record_parse_error(self):
        PARSE_ERRORS.inc()

    def update_pending(self, count: int):
        PENDING_REQUESTS.set(count)

    def update_lifecycle_state(self, state: str):
        """Set the gauge for state to 1 and every other state to 0."""
        for name in LIFECYCLE_STATES:
            LIFECYCLE_STATE.labels(state=name).set(1 if name == state else 0)


# Global collector instance
metrics_collector = MetricsCollector()


# ============ FastAPI Router ============
metrics_router = APIRouter()


@metrics_router.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text exposition format.
    """
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST
    )
