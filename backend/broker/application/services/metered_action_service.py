"""Credit-gated execution of paid actions.

The debit is committed before the action runs, so no ledger transaction is held open
across the awaited call. If the action raises, or the awaiting task is cancelled, the
spend is compensated with a refund before the error leaves this module. A refund that
keeps failing is handed to the `retry_credit_refund` worker task.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from broker.application.services import credit_ledger_service
from broker.application.services.audit_service import log_audit_event
from broker.application.services.connection_service import (
    AdapterResolver,
    get_connected_connection,
    parse_platform,
    require_implemented,
)
from broker.application.services.credit_ledger_service import LedgerEntry
from broker.core.config import settings
from broker.core.context import RequestContext
from broker.core.errors import ActionFailed, InsufficientCredits, InvalidInput, NotConnected, Unauthorized
from broker.core.security import decrypt_secret
from broker.domain.models.audit_log import AuditAction
from broker.domain.models.connection import PLATFORM_LABELS
from broker.infrastructure.observability.metrics import record_credit_debit, record_credit_refund
from broker.integrations.platform_adapters import AdapterPermanentError

logger = logging.getLogger(__name__)

T = TypeVar("T")

PUBLISH_ACTION = "post_publish"


@dataclass(frozen=True)
class MeteredActionResult:
    result: Any
    action_type: str
    credits_spent: int
    transaction_id: UUID
    new_balance: int


def apply_action_refund(
    db: Session,
    *,
    user_id: UUID,
    action_type: str,
    transaction_id: UUID,
    reason: str,
) -> LedgerEntry:
    """Refund a failed action's spend and commit. Safe to repeat for the same spend."""
    refund = credit_ledger_service.refund(
        db,
        transaction_id=transaction_id,
        reason=f"Refund: {action_type} failed",
    )
    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CREDIT_REFUNDED,
        metadata={
            "action_type": action_type,
            "credits": refund.credits,
            "failed_transaction_id": str(transaction_id),
            "refund_transaction_id": str(refund.transaction_id),
            "reason": reason[:500],
        },
    )
    db.commit()
    record_credit_refund(action_type)
    logger.info(
        "credit_refunded user_id=%s action_type=%s transaction_id=%s",
        user_id,
        action_type,
        transaction_id,
    )
    return refund


def enqueue_credit_refund(*, user_id: UUID, action_type: str, transaction_id: UUID, reason: str) -> None:
    from workers.tasks import retry_credit_refund  # local import to avoid import cycle

    retry_credit_refund.apply_async(
        kwargs={
            "user_id": str(user_id),
            "action_type": action_type,
            "transaction_id": str(transaction_id),
            "reason": reason[:500],
        }
    )
    logger.warning(
        "credit_refund_enqueued user_id=%s action_type=%s transaction_id=%s",
        user_id,
        action_type,
        transaction_id,
    )


def _refund_failed_action(
    db: Session,
    *,
    user_id: UUID,
    action_type: str,
    entry: LedgerEntry,
    reason: str,
) -> bool:
    attempts = max(1, settings.credit_refund_attempts)
    for attempt in range(1, attempts + 1):
        try:
            apply_action_refund(
                db,
                user_id=user_id,
                action_type=action_type,
                transaction_id=entry.transaction_id,
                reason=reason,
            )
        except Exception:
            db.rollback()
            logger.exception(
                "credit_refund_attempt_failed user_id=%s action_type=%s transaction_id=%s attempt=%s",
                user_id,
                action_type,
                entry.transaction_id,
                attempt,
            )
            continue
        return True

    # The spend stays committed until the worker lands the refund.
    try:
        enqueue_credit_refund(
            user_id=user_id,
            action_type=action_type,
            transaction_id=entry.transaction_id,
            reason=reason,
        )
    except Exception:
        logger.exception(
            "credit_refund_enqueue_failed user_id=%s action_type=%s transaction_id=%s",
            user_id,
            action_type,
            entry.transaction_id,
        )
    return False


async def perform_metered_action(
    db: Session,
    *,
    user_id: UUID,
    action_type: str,
    execute: Callable[[], Awaitable[T]],
    cost: int | None = None,
    reference: str | None = None,
    description: str | None = None,
) -> MeteredActionResult:
    amount = cost if cost is not None else credit_ledger_service.get_action_cost(action_type)
    try:
        entry = credit_ledger_service.debit(
            db,
            user_id=user_id,
            amount=amount,
            description=description or action_type,
            reference=reference,
            metadata={"action_type": action_type},
        )
    except InsufficientCredits:
        db.rollback()
        record_credit_debit(action_type, "insufficient")
        raise
    db.commit()
    record_credit_debit(action_type, "debited")

    try:
        result = await execute()
    except Exception as exc:
        db.rollback()
        logger.warning("metered_action_failed user_id=%s action_type=%s reason=%s", user_id, action_type, exc)
        refunded = _refund_failed_action(db, user_id=user_id, action_type=action_type, entry=entry, reason=str(exc))
        raise ActionFailed(str(exc) or None, action_type=action_type, refunded=refunded) from exc
    except BaseException:
        db.rollback()
        logger.warning("metered_action_cancelled user_id=%s action_type=%s", user_id, action_type)
        _refund_failed_action(db, user_id=user_id, action_type=action_type, entry=entry, reason="cancelled")
        raise

    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CREDIT_SPENT,
        metadata={
            "action_type": action_type,
            "credits": amount,
            "transaction_id": str(entry.transaction_id),
            "balance_after": entry.balance,
        },
    )
    db.commit()
    return MeteredActionResult(
        result=result,
        action_type=action_type,
        credits_spent=amount,
        transaction_id=entry.transaction_id,
        new_balance=entry.balance,
    )


def charge_operation(
    db: Session,
    *,
    user_id: UUID,
    operation: str,
    reference: str | None = None,
    description: str | None = None,
) -> LedgerEntry:
    """Debit the cost of ``operation`` for work carried out by another service."""
    amount = credit_ledger_service.get_action_cost(operation)
    try:
        entry = credit_ledger_service.debit(
            db,
            user_id=user_id,
            amount=amount,
            description=description or operation,
            reference=reference,
            metadata={"action_type": operation},
        )
    except InsufficientCredits:
        db.rollback()
        record_credit_debit(operation, "insufficient")
        raise
    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CREDIT_SPENT,
        metadata={
            "action_type": operation,
            "credits": amount,
            "transaction_id": str(entry.transaction_id),
            "balance_after": entry.balance,
        },
    )
    db.commit()
    record_credit_debit(operation, "debited")
    return entry


async def publish_with_credits(
    db: Session,
    *,
    context: RequestContext,
    platform: str,
    content: str,
    options: dict | None,
    resolve_adapter: AdapterResolver,
) -> MeteredActionResult:
    if not context.is_authenticated:
        raise Unauthorized()
    selected = require_implemented(parse_platform(platform))
    connection = get_connected_connection(db, user_id=context.user_id, platform=selected.value)
    if connection is None or not connection.access_token_encrypted:
        raise NotConnected(f"{PLATFORM_LABELS[selected]} is not connected")

    access_token = decrypt_secret(connection.access_token_encrypted)
    adapter = resolve_adapter(selected.value)
    try:
        adapter.validate_content(content, options)
    except AdapterPermanentError as exc:
        raise InvalidInput(str(exc)) from exc

    async def _publish() -> dict:
        return await adapter.publish_text(access_token=access_token, content=content, options=options)

    return await perform_metered_action(
        db,
        user_id=context.user_id,
        action_type=PUBLISH_ACTION,
        execute=_publish,
        reference=f"publish:{connection.id}",
        description=f"Publish to {PLATFORM_LABELS[selected]}",
    )
