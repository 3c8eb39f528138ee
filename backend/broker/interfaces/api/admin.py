from uuid import UUID

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from broker.application.services import credit_ledger_service
from broker.core.context import RequestContext
from broker.domain.models.credit_transaction import CreditTxType
from broker.infrastructure.db.session import get_db
from broker.interfaces.api.deps import require_admin

router = APIRouter(prefix="/admin/credits", tags=["admin"])


class AdjustCreditsRequest(BaseModel):
    target_user_id: UUID = Field(alias="targetUserId")
    credits: int
    reason: str = Field(min_length=1, max_length=512)
    adjustment_type: CreditTxType = Field(default=CreditTxType.ADJUST, alias="adjustmentType")


class PurchaseCreditsRequest(BaseModel):
    target_user_id: UUID = Field(alias="targetUserId")
    credits: int = Field(gt=0)
    provider_reference: str = Field(alias="providerReference", min_length=1, max_length=255)


@router.post("/adjust")
def adjust_credits(
    payload: AdjustCreditsRequest,
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_admin),
) -> dict:
    entry = credit_ledger_service.adjust(
        db,
        admin_id=admin.user_id,
        user_id=payload.target_user_id,
        delta=payload.credits,
        reason=payload.reason,
        tx_type=payload.adjustment_type,
    )
    db.commit()
    return {
        "success": True,
        "targetUserId": str(payload.target_user_id),
        "credits": entry.credits,
        "newBalance": entry.balance,
        "transactionId": str(entry.transaction_id),
    }


@router.post("/purchase")
def purchase_credits(
    payload: PurchaseCreditsRequest,
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_admin),
) -> dict:
    entry = credit_ledger_service.purchase(
        db,
        user_id=payload.target_user_id,
        credits=payload.credits,
        provider_reference=payload.provider_reference,
    )
    db.commit()
    return {
        "success": True,
        "targetUserId": str(payload.target_user_id),
        "credits": entry.credits,
        "newBalance": entry.balance,
        "transactionId": str(entry.transaction_id),
    }


@router.get("/reconcile/{user_id}")
def reconcile_credits(
    user_id: UUID,
    db: Session = Depends(get_db),
    admin: RequestContext = Depends(require_admin),
) -> dict:
    return credit_ledger_service.reconcile(db, user_id=user_id)
