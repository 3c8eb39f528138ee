from time import perf_counter

from fastapi import APIRouter, Response, status
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from broker.core.config import settings
from broker.infrastructure.cache.redis_client import get_redis_client
from broker.infrastructure.db.session import SessionLocal
from broker.infrastructure.observability.metrics import measure_redis, metrics_response

router = APIRouter()


def _redis_required() -> bool:
    return settings.rate_limit_backend.strip().lower() == "redis"


@router.get("/health", status_code=status.HTTP_200_OK)
def health_check() -> dict:
    db_status = "up"
    redis_status = "up"
    db_latency_ms: float | None = None
    redis_latency_ms: float | None = None

    try:
        db_started_at = perf_counter()
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        db_latency_ms = round((perf_counter() - db_started_at) * 1000, 2)
    except SQLAlchemyError:
        db_status = "down"

    try:
        redis_client = get_redis_client()
        redis_started_at = perf_counter()
        with measure_redis("health_ping"):
            redis_client.ping()
        redis_latency_ms = round((perf_counter() - redis_started_at) * 1000, 2)
    except RedisError:
        redis_status = "down"

    redis_ok = redis_status == "up" or not _redis_required()
    overall = "ok" if db_status == "up" and redis_ok else "degraded"

    return {
        "status": overall,
        "services": {
            "api": "up",
            "database": db_status,
            "redis": redis_status,
            "db_latency_ms": db_latency_ms,
            "redis_latency_ms": redis_latency_ms,
        },
    }


@router.get("/ready", status_code=status.HTTP_200_OK)
def readiness_check(response: Response) -> dict:
    payload = health_check()
    if payload["status"] != "ok":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not_ready", "services": payload["services"]}
    return {"status": "ready", "services": payload["services"]}


@router.get("/metrics", include_in_schema=False)
def metrics():
    return metrics_response()
