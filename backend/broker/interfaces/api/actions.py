from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from broker.application.services import metered_action_service
from broker.application.services.connection_service import AdapterResolver
from broker.core.context import RequestContext
from broker.infrastructure.db.session import get_db
from broker.interfaces.api.deps import get_adapter_resolver, get_request_context

router = APIRouter(prefix="/actions", tags=["actions"])


class PublishRequest(BaseModel):
    platform: str = Field(min_length=1, max_length=32)
    content: str = Field(min_length=1, max_length=40000)
    options: dict = Field(default_factory=dict)


@router.post("/publish")
async def publish(
    payload: PublishRequest,
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
    resolve_adapter: AdapterResolver = Depends(get_adapter_resolver),
) -> dict:
    outcome = await metered_action_service.publish_with_credits(
        db,
        context=context,
        platform=payload.platform,
        content=payload.content,
        options=payload.options,
        resolve_adapter=resolve_adapter,
    )
    return {
        "success": True,
        "platform": payload.platform.strip().lower(),
        "result": outcome.result,
        "creditsSpent": outcome.credits_spent,
        "newBalance": outcome.new_balance,
        "transactionId": str(outcome.transaction_id),
    }
