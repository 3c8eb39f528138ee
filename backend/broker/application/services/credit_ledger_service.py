"""Credit wallet and append-only transaction ledger.

Every balance change is a single conditional UPDATE on ``credit_wallets`` followed by
exactly one ``credit_transactions`` row recording the signed delta and the resulting
balance. Nothing here commits; callers decide the unit of work.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from broker.application.services.audit_service import log_audit_event
from broker.core.clock import utcnow
from broker.core.config import settings
from broker.core.errors import InsufficientCredits, InvalidInput, NotFound
from broker.domain.models.audit_log import AuditAction
from broker.domain.models.credit_transaction import CreditTransaction, CreditTxType
from broker.domain.models.credit_wallet import CreditWallet
from broker.infrastructure.db.atomic import compare_and_set, insert_if_absent

logger = logging.getLogger(__name__)

CREDIT_COSTS: dict[str, int] = {
    "content_generation": 5,
    "campaign_creation": 10,
    "post_scheduling": 2,
    "post_publish": 1,
    "analytics_fetch": 1,
    "ai_chat_message": 1,
}


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: UUID
    credits: int
    balance: int


def get_action_cost(action_type: str) -> int:
    cost = CREDIT_COSTS.get((action_type or "").strip().lower())
    if cost is None:
        raise InvalidInput(f"Unknown operation: {action_type}")
    return cost


def _require_positive(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidInput("Amount must be a positive integer")
    return amount


def _append_transaction(
    db: Session,
    *,
    user_id: UUID,
    tx_type: CreditTxType,
    credits: int,
    balance_after: int,
    description: str | None,
    reference: str | None,
    metadata: dict | None,
    now: datetime,
) -> CreditTransaction:
    transaction = CreditTransaction(
        id=uuid.uuid4(),
        user_id=user_id,
        tx_type=tx_type.value,
        credits=credits,
        balance_after=balance_after,
        description=description,
        reference=reference,
        metadata_json=metadata or {},
        created_at=now,
    )
    db.add(transaction)
    db.flush()
    return transaction


def _load_wallet(db: Session, user_id: UUID) -> CreditWallet | None:
    return db.execute(
        select(CreditWallet).where(CreditWallet.user_id == user_id).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def ensure_wallet(db: Session, *, user_id: UUID, now: datetime | None = None) -> CreditWallet:
    now = now or utcnow()
    bonus = max(0, settings.signup_bonus_credits)
    inserted = insert_if_absent(
        db,
        CreditWallet,
        values={
            "id": uuid.uuid4(),
            "user_id": user_id,
            "balance": bonus,
            "total_earned": bonus,
            "total_spent": 0,
            "low_balance_threshold": settings.low_balance_threshold,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["user_id"],
    )
    if inserted is not None and bonus > 0:
        _append_transaction(
            db,
            user_id=user_id,
            tx_type=CreditTxType.EARN,
            credits=bonus,
            balance_after=bonus,
            description="Signup bonus",
            reference="signup_bonus",
            metadata=None,
            now=now,
        )
        logger.info("credit_wallet_created user_id=%s bonus=%s", user_id, bonus)
    wallet = _load_wallet(db, user_id)
    if wallet is None:
        raise NotFound("Credit wallet not found")
    return wallet


def get_balance(db: Session, *, user_id: UUID) -> int:
    return ensure_wallet(db, user_id=user_id).balance


def _withdraw(
    db: Session,
    *,
    user_id: UUID,
    amount: int,
    tx_type: CreditTxType,
    description: str | None,
    reference: str | None,
    metadata: dict | None,
    now: datetime,
) -> LedgerEntry:
    ensure_wallet(db, user_id=user_id, now=now)
    values = {"balance": CreditWallet.balance - amount, "updated_at": now}
    if tx_type is CreditTxType.SPEND:
        values["total_spent"] = CreditWallet.total_spent + amount
    row = compare_and_set(
        db,
        CreditWallet,
        where=[CreditWallet.user_id == user_id, CreditWallet.balance >= amount],
        values=values,
        returning=[CreditWallet.balance],
    )
    if row is None:
        balance = db.execute(select(CreditWallet.balance).where(CreditWallet.user_id == user_id)).scalar_one()
        logger.info("credit_debit_rejected user_id=%s required=%s balance=%s", user_id, amount, balance)
        raise InsufficientCredits(required=amount, balance=int(balance))

    transaction = _append_transaction(
        db,
        user_id=user_id,
        tx_type=tx_type,
        credits=-amount,
        balance_after=int(row.balance),
        description=description,
        reference=reference,
        metadata=metadata,
        now=now,
    )
    return LedgerEntry(transaction_id=transaction.id, credits=-amount, balance=int(row.balance))


def _deposit(
    db: Session,
    *,
    user_id: UUID,
    amount: int,
    tx_type: CreditTxType,
    description: str | None,
    reference: str | None,
    metadata: dict | None,
    now: datetime,
) -> LedgerEntry:
    ensure_wallet(db, user_id=user_id, now=now)
    values = {"balance": CreditWallet.balance + amount, "updated_at": now}
    if tx_type is CreditTxType.REFUND:
        values["total_spent"] = case(
            (CreditWallet.total_spent >= amount, CreditWallet.total_spent - amount), else_=0
        )
    else:
        values["total_earned"] = CreditWallet.total_earned + amount
    row = compare_and_set(
        db,
        CreditWallet,
        where=[CreditWallet.user_id == user_id],
        values=values,
        returning=[CreditWallet.balance],
    )
    if row is None:
        raise NotFound("Credit wallet not found")

    transaction = _append_transaction(
        db,
        user_id=user_id,
        tx_type=tx_type,
        credits=amount,
        balance_after=int(row.balance),
        description=description,
        reference=reference,
        metadata=metadata,
        now=now,
    )
    return LedgerEntry(transaction_id=transaction.id, credits=amount, balance=int(row.balance))


def debit(
    db: Session,
    *,
    user_id: UUID,
    amount: int,
    description: str | None = None,
    reference: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    """Spend ``amount`` credits or raise ``InsufficientCredits`` without side effects.

    The balance check and the decrement are the same statement, so two concurrent
    debits can never both pass against a balance that only covers one.
    """
    return _withdraw(
        db,
        user_id=user_id,
        amount=_require_positive(amount),
        tx_type=CreditTxType.SPEND,
        description=description,
        reference=reference,
        metadata=metadata,
        now=now or utcnow(),
    )


def credit(
    db: Session,
    *,
    user_id: UUID,
    amount: int,
    tx_type: CreditTxType = CreditTxType.EARN,
    description: str | None = None,
    reference: str | None = None,
    metadata: dict | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    return _deposit(
        db,
        user_id=user_id,
        amount=_require_positive(amount),
        tx_type=tx_type,
        description=description,
        reference=reference,
        metadata=metadata,
        now=now or utcnow(),
    )


def refund(
    db: Session,
    *,
    transaction_id: UUID,
    reason: str | None = None,
    now: datetime | None = None,
) -> LedgerEntry:
    """Compensate a spend transaction. A spend is refunded at most once.

    A second call returns the existing refund instead of crediting again; the partial
    unique index on refund references rejects a concurrent duplicate.
    """
    original = db.get(CreditTransaction, transaction_id)
    if original is None:
        raise NotFound("Transaction not found")
    if original.tx_type != CreditTxType.SPEND.value or original.credits >= 0:
        raise InvalidInput("Only spend transactions can be refunded")

    # Serialize refunds for this wallet before checking for an earlier one.
    db.execute(select(CreditWallet.id).where(CreditWallet.user_id == original.user_id).with_for_update())
    existing = db.execute(
        select(CreditTransaction).where(
            CreditTransaction.tx_type == CreditTxType.REFUND.value,
            CreditTransaction.reference == str(transaction_id),
        )
    ).scalar_one_or_none()
    if existing is not None:
        logger.info("credit_refund_already_applied transaction_id=%s refund_id=%s", transaction_id, existing.id)
        return LedgerEntry(transaction_id=existing.id, credits=existing.credits, balance=existing.balance_after)

    return _deposit(
        db,
        user_id=original.user_id,
        amount=-original.credits,
        tx_type=CreditTxType.REFUND,
        description=reason or f"Refund for {original.description or 'failed action'}",
        reference=str(transaction_id),
        metadata={"original_transaction_id": str(transaction_id)},
        now=now or utcnow(),
    )


def adjust(
    db: Session,
    *,
    admin_id: UUID,
    user_id: UUID,
    delta: int,
    reason: str,
    tx_type: CreditTxType = CreditTxType.ADJUST,
    now: datetime | None = None,
) -> LedgerEntry:
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise InvalidInput("Adjustment must be a non-zero integer")
    if tx_type not in (CreditTxType.ADJUST, CreditTxType.REFUND):
        raise InvalidInput("Adjustment type must be adjust or refund")
    if tx_type is CreditTxType.REFUND and delta < 0:
        raise InvalidInput("Refund adjustments must add credits")
    if not (reason or "").strip():
        raise InvalidInput("Reason is required")

    now = now or utcnow()
    metadata = {"admin_id": str(admin_id), "reason": reason}
    if delta > 0:
        entry = _deposit(
            db,
            user_id=user_id,
            amount=delta,
            tx_type=tx_type,
            description=reason,
            reference=None,
            metadata=metadata,
            now=now,
        )
    else:
        entry = _withdraw(
            db,
            user_id=user_id,
            amount=-delta,
            tx_type=tx_type,
            description=reason,
            reference=None,
            metadata=metadata,
            now=now,
        )
    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CREDIT_ADJUSTED,
        metadata={
            "admin_id": str(admin_id),
            "credits": delta,
            "tx_type": tx_type.value,
            "reason": reason,
            "transaction_id": str(entry.transaction_id),
            "balance_after": entry.balance,
        },
    )
    logger.info("credit_adjusted user_id=%s admin_id=%s delta=%s", user_id, admin_id, delta)
    return entry


def purchase(
    db: Session,
    *,
    user_id: UUID,
    credits: int,
    provider_reference: str,
    now: datetime | None = None,
) -> LedgerEntry:
    provider_reference = (provider_reference or "").strip()
    if not provider_reference:
        raise InvalidInput("Provider reference is required")
    existing = db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.tx_type == CreditTxType.PURCHASE.value,
            CreditTransaction.reference == provider_reference,
        )
    ).scalar_one_or_none()
    if existing is not None:
        return LedgerEntry(transaction_id=existing.id, credits=existing.credits, balance=existing.balance_after)

    entry = _deposit(
        db,
        user_id=user_id,
        amount=_require_positive(credits),
        tx_type=CreditTxType.PURCHASE,
        description=f"Purchased {credits} credits",
        reference=provider_reference,
        metadata={"provider_reference": provider_reference},
        now=now or utcnow(),
    )
    log_audit_event(
        db,
        user_id=user_id,
        action=AuditAction.CREDIT_PURCHASED,
        metadata={
            "credits": credits,
            "provider_reference": provider_reference,
            "transaction_id": str(entry.transaction_id),
        },
    )
    return entry


def list_transactions(
    db: Session,
    *,
    user_id: UUID,
    limit: int = 50,
    offset: int = 0,
    tx_type: str | None = None,
) -> list[CreditTransaction]:
    stmt = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if tx_type:
        try:
            stmt = stmt.where(CreditTransaction.tx_type == CreditTxType(tx_type.strip().lower()).value)
        except ValueError:
            raise InvalidInput("Invalid transaction type") from None
    stmt = (
        stmt.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
        .limit(max(1, min(limit, 200)))
        .offset(max(0, offset))
    )
    return list(db.execute(stmt).scalars().all())


def ledger_sum(db: Session, *, user_id: UUID) -> int:
    total = db.execute(
        select(func.coalesce(func.sum(CreditTransaction.credits), 0)).where(CreditTransaction.user_id == user_id)
    ).scalar_one()
    return int(total)


def get_credit_stats(db: Session, *, user_id: UUID) -> dict:
    wallet = ensure_wallet(db, user_id=user_id)
    rows = db.execute(
        select(
            CreditTransaction.tx_type,
            func.count(CreditTransaction.id),
            func.coalesce(func.sum(CreditTransaction.credits), 0),
        )
        .where(CreditTransaction.user_id == user_id)
        .group_by(CreditTransaction.tx_type)
    ).all()
    by_type = {tx_type.value: {"count": 0, "credits": 0} for tx_type in CreditTxType}
    for tx_type, count, credits in rows:
        by_type[tx_type] = {"count": int(count), "credits": int(credits)}
    return {
        "balance": wallet.balance,
        "totalEarned": wallet.total_earned,
        "totalSpent": wallet.total_spent,
        "lowBalance": wallet.balance <= wallet.low_balance_threshold,
        "lowBalanceThreshold": wallet.low_balance_threshold,
        "transactionCount": sum(item["count"] for item in by_type.values()),
        "byType": by_type,
    }


def reconcile(db: Session, *, user_id: UUID) -> dict:
    wallet = _load_wallet(db, user_id)
    if wallet is None:
        raise NotFound("Credit wallet not found")
    total = ledger_sum(db, user_id=user_id)
    consistent = total == wallet.balance
    if not consistent:
        logger.error("credit_ledger_mismatch user_id=%s balance=%s ledger_sum=%s", user_id, wallet.balance, total)
    return {"userId": str(user_id), "balance": wallet.balance, "ledgerSum": total, "consistent": consistent}
