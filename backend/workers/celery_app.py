from celery import Celery
from celery.schedules import schedule
from kombu import Queue

from broker.core.config import settings

celery_app = Celery(
    "connection_broker",
    broker=settings.cache_redis_url,
    backend=settings.cache_redis_url,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_default_queue="maintenance",
    task_queues=(Queue("maintenance"),),
    task_routes={
        "workers.tasks.*": {"queue": "maintenance"},
    },
    beat_schedule={
        "prune-expired-oauth-states-every-15m": {
            "task": "workers.tasks.prune_expired_oauth_states",
            "schedule": schedule(900.0),
            "options": {"queue": "maintenance"},
        },
        "prune-rate-limit-records-every-15m": {
            "task": "workers.tasks.prune_rate_limit_records",
            "schedule": schedule(900.0),
            "options": {"queue": "maintenance"},
        },
    },
)

celery_app.autodiscover_tasks(["workers"])
