"""
Prometheus metrics for AIPLabels.

This module provides:
- HTTP request metrics (count, latency, active connections)
- Label operation and token exchange outcomes
- Engine pool size
- A /metrics endpoint for Prometheus scraping

Usage:
    from aiplabels.server.metrics import metrics_router, record_label_operation

    app.include_router(metrics_router)
"""

import logging

from fastapi import APIRouter, Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Metric Definitions
# =============================================================================

HTTP_REQUESTS_TOTAL = Counter(
    "aiplabels_http_requests_total",
    "Total number of HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "aiplabels_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

HTTP_ACTIVE_CONNECTIONS = Gauge(
    "aiplabels_http_active_connections",
    "Number of HTTP requests currently being processed",
)

LABEL_OPERATIONS_TOTAL = Counter(
    "aiplabels_label_operations_total",
    "Label operations by operation and outcome",
    ["operation", "outcome"],
)

LABEL_OPERATION_DURATION_SECONDS = Histogram(
    "aiplabels_label_operation_duration_seconds",
    "Label operation duration in seconds (download, SDK, upload)",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

TOKEN_EXCHANGES_TOTAL = Counter(
    "aiplabels_token_exchanges_total",
    "On-behalf-of token exchanges by outcome",
    ["outcome"],
)

ENGINE_POOL_SIZE = Gauge(
    "aiplabels_engine_pool_size",
    "Number of protection engines currently cached",
)


# =============================================================================
# Recording helpers
# =============================================================================


def record_http_request(method: str, path: str, status: int, duration: float) -> None:
    """Record a completed HTTP request."""
    HTTP_REQUESTS_TOTAL.labels(method=method, endpoint=path, status_code=str(status)).inc()
    HTTP_REQUEST_DURATION_SECONDS.labels(method=method, endpoint=path).observe(duration)


def record_label_operation(operation: str, outcome: str, duration: float) -> None:
    """Record a label operation. *outcome* is ``success`` or an error kind."""
    LABEL_OPERATIONS_TOTAL.labels(operation=operation, outcome=outcome).inc()
    LABEL_OPERATION_DURATION_SECONDS.labels(operation=operation).observe(duration)


def record_token_exchange(outcome: str) -> None:
    TOKEN_EXCHANGES_TOTAL.labels(outcome=outcome).inc()


def set_engine_pool_size(size: int) -> None:
    ENGINE_POOL_SIZE.set(size)


# =============================================================================
# Endpoint
# =============================================================================

metrics_router = APIRouter()


@metrics_router.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
