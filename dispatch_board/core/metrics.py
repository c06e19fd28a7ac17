"""
Prometheus metrics for observability.

Exposes metrics for:
- HTTP request latency and counts
- Workflow transitions and blocked outcomes
- Board reconciliation (polling, push, post-mutation)
- Hosted backend requests
"""

import time
from functools import wraps
from typing import Callable

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from dispatch_board.core.config import settings

# ============================================================
# HTTP Metrics
# ============================================================

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint", "status_code"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

HTTP_REQUEST_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)


# ============================================================
# Workflow Metrics
# ============================================================

WORKFLOW_TRANSITIONS_TOTAL = Counter(
    "workflow_transitions_total",
    "Workflow actions by outcome code",
    ["action", "outcome"],
)

NIGHT_STARTS_TOTAL = Counter(
    "workflow_night_starts_total",
    "Production starts authorised through the night-window justification",
)


# ============================================================
# Board Metrics
# ============================================================

BOARD_RECONCILIATIONS_TOTAL = Counter(
    "board_reconciliations_total",
    "Board re-fetches",
    ["trigger", "status"],
)

BOARD_RECONCILIATION_DURATION = Histogram(
    "board_reconciliation_duration_seconds",
    "Time to load a board snapshot",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

BOARD_CONFLICTS = Gauge(
    "board_conflicts",
    "Scheduling conflicts on the active board",
    ["date"],
)

BOARD_STALE = Gauge(
    "board_stale",
    "1 while the board shows a stale snapshot",
    ["date"],
)


# ============================================================
# External Service Metrics
# ============================================================

EXTERNAL_REQUEST_DURATION = Histogram(
    "external_request_duration_seconds",
    "External service request duration",
    ["service", "operation"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0],
)

EXTERNAL_REQUEST_TOTAL = Counter(
    "external_requests_total",
    "Total external service requests",
    ["service", "operation", "status"],
)


# ============================================================
# Application Info
# ============================================================

APP_INFO = Info(
    "app",
    "Application information",
)
APP_INFO.info(
    {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }
)


# ============================================================
# Middleware
# ============================================================


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Middleware to collect HTTP request metrics."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == settings.METRICS_PATH:
            return await call_next(request)

        method = request.method
        endpoint = self._normalize_path(request.url.path)

        start_time = time.perf_counter()
        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
        finally:
            duration = time.perf_counter() - start_time

            HTTP_REQUEST_DURATION.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
            ).observe(duration)

            HTTP_REQUEST_TOTAL.labels(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
            ).inc()

        return response

    def _normalize_path(self, path: str) -> str:
        """
        Normalize path by replacing dynamic segments with placeholders.

        /api/v1/dispatch/deliveries/BL-2024-0042/confirm
            -> /api/v1/dispatch/deliveries/{id}/confirm
        """
        parts = [p for p in path.split("/") if p]
        normalized = []
        for index, part in enumerate(parts):
            previous = parts[index - 1] if index else ""
            if previous in ("deliveries", "approvals", "board", "suggestions"):
                normalized.append("{id}")
            else:
                normalized.append(part)

        return "/" + "/".join(normalized) if normalized else "/"


# ============================================================
# Helper Functions
# ============================================================


def record_outcome(action: str, outcome: str) -> None:
    """Count a workflow action by its outcome code."""
    WORKFLOW_TRANSITIONS_TOTAL.labels(action=action, outcome=outcome).inc()


def record_reconciliation(trigger: str, ok: bool, duration: float) -> None:
    """Count a board re-fetch and observe its duration."""
    BOARD_RECONCILIATIONS_TOTAL.labels(
        trigger=trigger,
        status="success" if ok else "error",
    ).inc()
    BOARD_RECONCILIATION_DURATION.observe(duration)


def update_board_gauges(board_date: str, conflicts: int, stale: bool) -> None:
    """Publish per-board gauges."""
    BOARD_CONFLICTS.labels(date=board_date).set(conflicts)
    BOARD_STALE.labels(date=board_date).set(1 if stale else 0)


def track_external_request(service: str, operation: str):
    """
    Decorator to track external service requests.

    Usage:
        @track_external_request("backend", "list_deliveries")
        async def list_by_date(...):
            ...
    """

    def decorator(func: Callable):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                EXTERNAL_REQUEST_TOTAL.labels(
                    service=service,
                    operation=operation,
                    status="success",
                ).inc()
                return result
            except Exception:
                EXTERNAL_REQUEST_TOTAL.labels(
                    service=service,
                    operation=operation,
                    status="error",
                ).inc()
                raise
            finally:
                duration = time.perf_counter() - start_time
                EXTERNAL_REQUEST_DURATION.labels(
                    service=service,
                    operation=operation,
                ).observe(duration)

        return wrapper

    return decorator


# ============================================================
# Metrics Endpoint
# ============================================================


async def metrics_endpoint(request: Request) -> Response:
    """
    Prometheus metrics endpoint.

    Returns metrics in Prometheus text format.
    """
    return Response(
        content=generate_latest(REGISTRY),
        media_type=CONTENT_TYPE_LATEST,
    )
