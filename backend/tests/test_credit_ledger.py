import threading
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from broker.application.services import credit_ledger_service as ledger
from broker.core.config import settings
from broker.core.errors import InsufficientCredits, InvalidInput
from broker.domain.models.audit_log import AuditAction, AuditLog
from broker.domain.models.credit_transaction import CreditTransaction, CreditTxType
from broker.infrastructure.db.session import SessionLocal


def _fund(db, user_id, credits=20):
    entry = ledger.purchase(db, user_id=user_id, credits=credits, provider_reference=f"pi_{uuid4().hex}")
    db.commit()
    return entry


def test_wallet_starts_with_signup_bonus(db, user_id, monkeypatch):
    monkeypatch.setattr(settings, "signup_bonus_credits", 25)

    wallet = ledger.ensure_wallet(db, user_id=user_id)
    ledger.ensure_wallet(db, user_id=user_id)
    db.commit()

    assert wallet.balance == 25
    assert wallet.total_earned == 25
    transactions = ledger.list_transactions(db, user_id=user_id)
    assert [(item.tx_type, item.credits, item.reference) for item in transactions] == [
        ("earn", 25, "signup_bonus")
    ]


def test_debit_reduces_balance_and_records_spend(db, user_id):
    _fund(db, user_id, 20)

    entry = ledger.debit(db, user_id=user_id, amount=5, description="content_generation")
    db.commit()

    assert entry.credits == -5
    assert entry.balance == 15
    wallet = ledger.ensure_wallet(db, user_id=user_id)
    assert wallet.balance == 15
    assert wallet.total_spent == 5
    spend = db.get(CreditTransaction, entry.transaction_id)
    assert spend.tx_type == "spend"
    assert spend.balance_after == 15


def test_debit_without_enough_credits_changes_nothing(db, user_id):
    _fund(db, user_id, 3)

    with pytest.raises(InsufficientCredits) as exc_info:
        ledger.debit(db, user_id=user_id, amount=5)
    db.rollback()

    assert exc_info.value.required == 5
    assert exc_info.value.balance == 3
    assert ledger.get_balance(db, user_id=user_id) == 3
    assert ledger.list_transactions(db, user_id=user_id, tx_type="spend") == []


@pytest.mark.parametrize("amount", [0, -3, True])
def test_non_positive_amounts_are_rejected(db, user_id, amount):
    with pytest.raises(InvalidInput):
        ledger.debit(db, user_id=user_id, amount=amount)
    with pytest.raises(InvalidInput):
        ledger.credit(db, user_id=user_id, amount=amount)


def test_refund_restores_credits_once(db, user_id):
    _fund(db, user_id, 10)
    spend = ledger.debit(db, user_id=user_id, amount=4)
    db.commit()

    first = ledger.refund(db, transaction_id=spend.transaction_id, reason="publish failed")
    db.commit()
    second = ledger.refund(db, transaction_id=spend.transaction_id, reason="publish failed")
    db.commit()

    assert first.transaction_id == second.transaction_id
    assert first.credits == 4
    assert ledger.get_balance(db, user_id=user_id) == 10
    wallet = ledger.ensure_wallet(db, user_id=user_id)
    assert wallet.total_spent == 0
    refunds = ledger.list_transactions(db, user_id=user_id, tx_type="refund")
    assert len(refunds) == 1
    assert refunds[0].reference == str(spend.transaction_id)


def test_refund_rejects_non_spend_transactions(db, user_id):
    purchase = _fund(db, user_id, 10)
    with pytest.raises(InvalidInput):
        ledger.refund(db, transaction_id=purchase.transaction_id)


def test_adjust_cannot_overdraw_and_is_audited(db, user_id):
    admin_id = uuid4()
    _fund(db, user_id, 5)

    with pytest.raises(InsufficientCredits):
        ledger.adjust(db, admin_id=admin_id, user_id=user_id, delta=-6, reason="chargeback")
    db.rollback()

    entry = ledger.adjust(db, admin_id=admin_id, user_id=user_id, delta=-5, reason="chargeback")
    db.commit()
    assert entry.balance == 0

    with pytest.raises(InvalidInput):
        ledger.adjust(
            db, admin_id=admin_id, user_id=user_id, delta=-1, reason="bad", tx_type=CreditTxType.REFUND
        )

    audit = db.execute(
        select(AuditLog).where(AuditLog.user_id == user_id, AuditLog.action == AuditAction.CREDIT_ADJUSTED.value)
    ).scalars().all()
    assert len(audit) == 1
    assert audit[0].metadata_json["admin_id"] == str(admin_id)
    assert audit[0].metadata_json["credits"] == -5


def test_purchase_is_idempotent_per_provider_reference(db, user_id):
    first = ledger.purchase(db, user_id=user_id, credits=50, provider_reference="pi_123")
    db.commit()
    replay = ledger.purchase(db, user_id=user_id, credits=50, provider_reference="pi_123")
    db.commit()

    assert replay.transaction_id == first.transaction_id
    assert ledger.get_balance(db, user_id=user_id) == 50


def test_unknown_operation_has_no_cost():
    assert ledger.get_action_cost("content_generation") == 5
    with pytest.raises(InvalidInput):
        ledger.get_action_cost("teleport")


def test_balance_always_matches_ledger_sum(db, user_id):
    _fund(db, user_id, 30)
    spends = [ledger.debit(db, user_id=user_id, amount=amount) for amount in (5, 2, 1)]
    db.commit()
    ledger.refund(db, transaction_id=spends[1].transaction_id)
    ledger.adjust(db, admin_id=uuid4(), user_id=user_id, delta=7, reason="goodwill")
    db.commit()

    report = ledger.reconcile(db, user_id=user_id)
    assert report["consistent"] is True
    assert report["balance"] == report["ledgerSum"] == 30 - 5 - 2 - 1 + 2 + 7

    stats = ledger.get_credit_stats(db, user_id=user_id)
    assert stats["balance"] == 31
    assert stats["byType"]["spend"] == {"count": 3, "credits": -8}
    assert stats["byType"]["refund"] == {"count": 1, "credits": 2}
    assert stats["transactionCount"] == 6


def test_list_transactions_rejects_unknown_type(db, user_id):
    with pytest.raises(InvalidInput):
        ledger.list_transactions(db, user_id=user_id, tx_type="gift")


def test_concurrent_debits_never_overdraw(db, user_id):
    _fund(db, user_id, 10)
    barrier = threading.Barrier(4)
    outcomes: list[str] = []
    lock = threading.Lock()

    def _spend():
        with SessionLocal() as session:
            barrier.wait()
            try:
                ledger.debit(session, user_id=user_id, amount=10)
                session.commit()
                result = "debited"
            except InsufficientCredits:
                session.rollback()
                result = "insufficient"
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=_spend) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(outcomes) == ["debited", "insufficient", "insufficient", "insufficient"]
    assert ledger.get_balance(db, user_id=user_id) == 0
    spend_count = db.execute(
        select(func.count()).select_from(CreditTransaction).where(CreditTransaction.tx_type == "spend")
    ).scalar_one()
    assert spend_count == 1
