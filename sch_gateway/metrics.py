"""Prometheus metrics for the SCH gateway.

Metrics goals:
- low-cardinality labels (never digests, signatures or addresses)
- internal observability for executions, rejections and action failures
"""
import os
import time
from typing import Callable, Optional

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


# ---------------------------
# Core metric objects
# ---------------------------
HTTP_REQUESTS_TOTAL = Counter(
    "sch_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "sch_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
)
EXECUTIONS_TOTAL = Counter(
    "sch_executions_total",
    "Total execute() attempts by outcome",
    ["outcome"],
)
ACTION_FAILURES_TOTAL = Counter(
    "sch_action_failures_total",
    "Protected actions that raised after their authorization was committed",
)
NONCE = Gauge(
    "sch_nonce",
    "Current authorization nonce",
)


def record_execution(outcome: str) -> None:
    EXECUTIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_action_failure() -> None:
    ACTION_FAILURES_TOTAL.inc()


def set_nonce(nonce: int) -> None:
    # Gauges are floats; precision loss past 2**53 only affects the metric.
    NONCE.set(float(nonce))


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach /metrics endpoint and request middleware to a FastAPI app.

    authorize: callable(request) -> bool. If provided and returns False, /metrics returns 403.
    """
    if not _env_bool("SCH_METRICS_ENABLED", True):
        return

    # No `from __future__ import annotations` in this module: FastAPI must see the real Request type.
    from fastapi import Request
    from fastapi.responses import Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            # avoid leaking existence details
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
