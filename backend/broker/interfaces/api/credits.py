from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from broker.application.services import credit_ledger_service, metered_action_service
from broker.core.clock import ensure_utc
from broker.core.context import RequestContext
from broker.domain.models.credit_transaction import CreditTransaction
from broker.infrastructure.db.session import get_db
from broker.interfaces.api.deps import get_request_context

router = APIRouter(prefix="/credits", tags=["credits"])


class SpendRequest(BaseModel):
    operation: str = Field(min_length=1, max_length=64)
    reference: str | None = Field(default=None, max_length=255)
    description: str | None = Field(default=None, max_length=512)


def serialize_transaction(transaction: CreditTransaction) -> dict:
    return {
        "id": str(transaction.id),
        "type": transaction.tx_type,
        "credits": transaction.credits,
        "balanceAfter": transaction.balance_after,
        "description": transaction.description,
        "reference": transaction.reference,
        "metadata": transaction.metadata_json or {},
        "createdAt": ensure_utc(transaction.created_at).isoformat(),
    }


@router.get("/balance")
def get_balance(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    wallet = credit_ledger_service.ensure_wallet(db, user_id=context.user_id)
    db.commit()
    return {
        "balance": wallet.balance,
        "lowBalance": wallet.balance <= wallet.low_balance_threshold,
        "lowBalanceThreshold": wallet.low_balance_threshold,
    }


@router.get("/transactions")
def list_transactions(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    tx_type: str | None = Query(default=None, alias="txType"),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    transactions = credit_ledger_service.list_transactions(
        db,
        user_id=context.user_id,
        limit=limit,
        offset=offset,
        tx_type=tx_type,
    )
    return {
        "transactions": [serialize_transaction(item) for item in transactions],
        "count": len(transactions),
    }


@router.get("/usage")
def get_usage(
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    stats = credit_ledger_service.get_credit_stats(db, user_id=context.user_id)
    db.commit()
    return stats


@router.get("/costs")
def get_costs() -> dict:
    return {"costs": dict(credit_ledger_service.CREDIT_COSTS)}


@router.post("/spend")
def spend_credits(
    payload: SpendRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    entry = metered_action_service.charge_operation(
        db,
        user_id=context.user_id,
        operation=payload.operation,
        reference=payload.reference,
        description=payload.description,
    )
    return {
        "success": True,
        "creditsSpent": -entry.credits,
        "newBalance": entry.balance,
        "transactionId": str(entry.transaction_id),
    }
