import logging
from uuid import UUID

from celery.exceptions import MaxRetriesExceededError

from broker.application.services.metered_action_service import apply_action_refund
from broker.application.services.oauth_state_service import prune_expired_states
from broker.application.services.rate_limit_service import prune_rate_limit_records as prune_rate_limit_records_service
from broker.core.config import settings
from broker.core.errors import BrokerError
from broker.infrastructure.db.session import SessionLocal
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(name="workers.tasks.prune_expired_oauth_states")
def prune_expired_oauth_states() -> dict:
    with SessionLocal() as db:
        deleted = prune_expired_states(db)
        db.commit()
    logger.info("oauth_states_pruned deleted=%s", deleted)
    return {"deleted": deleted}


@celery_app.task(name="workers.tasks.prune_rate_limit_records")
def prune_rate_limit_records() -> dict:
    with SessionLocal() as db:
        deleted = prune_rate_limit_records_service(db)
        db.commit()
    logger.info("rate_limit_records_pruned deleted=%s", deleted)
    return {"deleted": deleted}


@celery_app.task(
    bind=True,
    name="workers.tasks.retry_credit_refund",
    max_retries=settings.credit_refund_task_max_retries,
    acks_late=True,
)
def retry_credit_refund(self, user_id: str, action_type: str, transaction_id: str, reason: str = "") -> dict:
    attempt = self.request.retries + 1
    with SessionLocal() as db:
        try:
            refund = apply_action_refund(
                db,
                user_id=UUID(user_id),
                action_type=action_type,
                transaction_id=UUID(transaction_id),
                reason=reason,
            )
        except BrokerError as exc:
            db.rollback()
            logger.error(
                "credit_refund_rejected transaction_id=%s attempt=%s error=%s",
                transaction_id,
                attempt,
                exc.message,
            )
            return {"status": "rejected", "error": exc.message}
        except Exception as exc:
            db.rollback()
            countdown = min(600, 15 * (2 ** (attempt - 1)))
            logger.warning(
                "credit_refund_retry transaction_id=%s attempt=%s countdown=%s error=%s",
                transaction_id,
                attempt,
                countdown,
                str(exc),
            )
            try:
                raise self.retry(exc=exc, countdown=countdown)
            except MaxRetriesExceededError:
                logger.critical(
                    "credit_refund_abandoned user_id=%s transaction_id=%s attempts=%s",
                    user_id,
                    transaction_id,
                    attempt,
                )
                raise
    return {"status": "refunded", "refund_transaction_id": str(refund.transaction_id)}
