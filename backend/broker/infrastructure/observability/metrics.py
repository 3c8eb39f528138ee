from __future__ import annotations

from contextlib import contextmanager
from time import perf_counter

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.responses import Response

REQUESTS_TOTAL = Counter(
    "total_requests",
    "Total HTTP requests",
    labelnames=("method", "path", "status"),
)
REQUEST_LATENCY_SECONDS = Histogram(
    "request_latency_seconds",
    "HTTP request latency in seconds",
    labelnames=("method", "path"),
)
DB_QUERY_DURATION_SECONDS = Histogram(
    "db_query_duration_seconds",
    "Database query duration in seconds",
    labelnames=("operation",),
)
REDIS_LATENCY_SECONDS = Histogram(
    "redis_latency_seconds",
    "Redis command latency in seconds",
    labelnames=("operation",),
)
OAUTH_INITIATIONS_TOTAL = Counter(
    "oauth_initiations_total",
    "OAuth connection initiations by platform and outcome",
    labelnames=("platform", "outcome"),
)
OAUTH_CALLBACKS_TOTAL = Counter(
    "oauth_callbacks_total",
    "OAuth callbacks by platform and outcome",
    labelnames=("platform", "outcome"),
)
CREDIT_DEBITS_TOTAL = Counter(
    "credit_debits_total",
    "Credit debits by action type and outcome",
    labelnames=("action_type", "outcome"),
)
CREDIT_REFUNDS_TOTAL = Counter(
    "credit_refunds_total",
    "Compensating refunds issued after failed metered actions",
    labelnames=("action_type",),
)
RATE_LIMIT_REJECTIONS_TOTAL = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the broker rate limiter",
    labelnames=("action",),
)


def record_request(method: str, path: str, status_code: int, duration_seconds: float) -> None:
    REQUESTS_TOTAL.labels(method=method, path=path, status=str(status_code)).inc()
    REQUEST_LATENCY_SECONDS.labels(method=method, path=path).observe(duration_seconds)


def observe_db_query(duration_seconds: float, operation: str = "sql") -> None:
    DB_QUERY_DURATION_SECONDS.labels(operation=operation).observe(duration_seconds)


def observe_redis_latency(duration_seconds: float, operation: str) -> None:
    REDIS_LATENCY_SECONDS.labels(operation=operation).observe(duration_seconds)


def record_oauth_initiation(platform: str, outcome: str) -> None:
    OAUTH_INITIATIONS_TOTAL.labels(platform=platform, outcome=outcome).inc()


def record_oauth_callback(platform: str, outcome: str) -> None:
    OAUTH_CALLBACKS_TOTAL.labels(platform=platform, outcome=outcome).inc()


def record_credit_debit(action_type: str, outcome: str) -> None:
    CREDIT_DEBITS_TOTAL.labels(action_type=action_type, outcome=outcome).inc()


def record_credit_refund(action_type: str) -> None:
    CREDIT_REFUNDS_TOTAL.labels(action_type=action_type).inc()


def record_rate_limit_rejection(action: str) -> None:
    RATE_LIMIT_REJECTIONS_TOTAL.labels(action=action).inc()


@contextmanager
def measure_redis(operation: str):
    started_at = perf_counter()
    try:
        yield
    finally:
        observe_redis_latency(perf_counter() - started_at, operation=operation)


def metrics_response() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
