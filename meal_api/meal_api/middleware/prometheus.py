"""Prometheus metrics middleware and domain counters.

Exposes standard RED metrics (rate, errors, duration) for HTTP requests plus
counters for the engine events operators alert on: maintenance task
outcomes, customer skips and generated orders.

Path normalisation collapses identifiers (``/groups/3f2a...`` ->
``/groups/{id}``) to keep label cardinality bounded.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from meal_engine.models.results import MaintenanceReport

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "mealcycle_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "mealcycle_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

MAINTENANCE_TASKS_TOTAL = Counter(
    "mealcycle_maintenance_tasks_total",
    "Maintenance task executions by task and outcome",
    ["task", "outcome"],
)

SKIPS_TOTAL = Counter(
    "mealcycle_skips_total",
    "Customer skips by whether a credit was issued",
    ["credited"],
)

ORDERS_GENERATED_TOTAL = Counter(
    "mealcycle_orders_generated_total",
    "Orders inserted by the order generator",
)


def record_maintenance_report(report: MaintenanceReport) -> None:
    """Count each task outcome of a maintenance run."""
    for task, outcome in report.results.items():
        MAINTENANCE_TASKS_TOTAL.labels(task=task, outcome="success" if outcome.success else "failure").inc()
    backfill = report.results.get("order_backfill")
    if backfill is not None and backfill.result:
        ORDERS_GENERATED_TOTAL.inc(int(backfill.result.get("created", 0)))


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # uuid4().hex identifiers
    (re.compile(r"/[0-9a-f]{32}"), "/{id}"),
    # Prefixed ids (v-1, c-42)
    (re.compile(r"/[a-z]+-\d+"), "/{id}"),
    # Pure numeric segments
    (re.compile(r"/\d+"), "/{id}"),
]


def normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
