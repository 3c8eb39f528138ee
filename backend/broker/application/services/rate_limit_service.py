import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from broker.core.clock import ensure_utc, utcnow
from broker.core.config import settings
from broker.domain.models.rate_limit_record import RateLimitRecord
from broker.infrastructure.db.atomic import compare_and_set, insert_if_absent
from broker.infrastructure.observability.metrics import measure_redis, record_rate_limit_rejection

logger = logging.getLogger(__name__)

OAUTH_INITIATE_ACTION = "oauth_initiate"
OAUTH_CALLBACK_ACTION = "oauth_callback"


@dataclass(frozen=True)
class RateLimitDecision:
    key: str
    limit: int
    current: int
    allowed: bool
    retry_after_seconds: int


def build_rate_limit_key(subject: str, action: str) -> str:
    return f"{action}:{subject}"


def _retry_after(window_start: datetime, window_seconds: int, now: datetime) -> int:
    remaining = (ensure_utc(window_start) + timedelta(seconds=window_seconds) - now).total_seconds()
    return max(1, math.ceil(remaining))


def _hit_database(db: Session, key: str, *, limit: int, window_seconds: int, now: datetime) -> RateLimitDecision:
    window_closed_before = now - timedelta(seconds=window_seconds)

    # A record can be pruned between steps; two passes cover that.
    for _ in range(2):
        inserted = insert_if_absent(
            db,
            RateLimitRecord,
            values={"key": key, "window_start": now, "count": 1, "updated_at": now},
            conflict_columns=["key"],
        )
        if inserted is not None:
            return RateLimitDecision(key=key, limit=limit, current=1, allowed=True, retry_after_seconds=0)

        incremented = compare_and_set(
            db,
            RateLimitRecord,
            where=[
                RateLimitRecord.key == key,
                RateLimitRecord.window_start > window_closed_before,
                RateLimitRecord.count < limit,
            ],
            values={"count": RateLimitRecord.count + 1, "updated_at": now},
            returning=[RateLimitRecord.count],
        )
        if incremented is not None:
            return RateLimitDecision(
                key=key, limit=limit, current=int(incremented[0]), allowed=True, retry_after_seconds=0
            )

        reset = compare_and_set(
            db,
            RateLimitRecord,
            where=[RateLimitRecord.key == key, RateLimitRecord.window_start <= window_closed_before],
            values={"window_start": now, "count": 1, "updated_at": now},
        )
        if reset:
            return RateLimitDecision(key=key, limit=limit, current=1, allowed=True, retry_after_seconds=0)

        current = db.execute(
            select(RateLimitRecord.window_start, RateLimitRecord.count).where(RateLimitRecord.key == key)
        ).first()
        if current is not None:
            return RateLimitDecision(
                key=key,
                limit=limit,
                current=int(current[1]),
                allowed=False,
                retry_after_seconds=_retry_after(current.window_start, window_seconds, now),
            )

    return RateLimitDecision(key=key, limit=limit, current=limit, allowed=False, retry_after_seconds=window_seconds)


def _hit_redis(redis_client: Redis, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
    redis_key = f"rate_limit:{key}"
    try:
        with measure_redis("rate_limit_incr"):
            current = int(redis_client.incr(redis_key))
            if current == 1:
                redis_client.expire(redis_key, window_seconds)
            ttl = int(redis_client.ttl(redis_key))
            if ttl < 0:
                redis_client.expire(redis_key, window_seconds)
                ttl = window_seconds
    except RedisError as exc:
        # Fail-open to avoid hard outage on transient Redis issues.
        logger.warning("rate_limit_redis_unavailable key=%s reason=%s", key, exc)
        return RateLimitDecision(key=key, limit=limit, current=0, allowed=True, retry_after_seconds=0)

    return RateLimitDecision(
        key=key,
        limit=limit,
        current=current,
        allowed=current <= limit,
        retry_after_seconds=max(1, ttl),
    )


def hit(
    db: Session,
    *,
    subject: str,
    action: str,
    limit: int,
    window_seconds: int,
    now: datetime | None = None,
    redis_client: Redis | None = None,
) -> RateLimitDecision:
    """Record one attempt for ``subject`` and report whether it fits the window.

    The window is fixed and anchored at the first attempt; it does not slide. The
    caller owns the transaction for the database backend.
    """
    key = build_rate_limit_key(subject, action)
    backend = settings.rate_limit_backend.strip().lower()
    if redis_client is not None or backend == "redis":
        if redis_client is None:
            from broker.infrastructure.cache.redis_client import get_redis_client

            redis_client = get_redis_client()
        decision = _hit_redis(redis_client, key, limit=limit, window_seconds=window_seconds)
    else:
        decision = _hit_database(db, key, limit=limit, window_seconds=window_seconds, now=now or utcnow())

    if not decision.allowed:
        record_rate_limit_rejection(action)
        logger.info(
            "rate_limit_rejected key=%s current=%s limit=%s retry_after=%s",
            key,
            decision.current,
            limit,
            decision.retry_after_seconds,
        )
    return decision


def prune_rate_limit_records(db: Session, *, now: datetime | None = None) -> int:
    """Delete records whose window closed more than the retention period ago."""
    now = now or utcnow()
    longest_window = max(settings.oauth_initiate_window_seconds, settings.oauth_callback_window_seconds)
    cutoff = now - timedelta(seconds=longest_window + settings.rate_limit_record_retention_seconds)
    result = db.execute(delete(RateLimitRecord).where(RateLimitRecord.window_start < cutoff))
    return int(result.rowcount or 0)
