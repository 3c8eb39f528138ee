from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from broker.application.services.audit_service import list_audit_events
from broker.core.clock import ensure_utc
from broker.core.context import RequestContext
from broker.core.errors import Forbidden
from broker.infrastructure.db.session import get_db
from broker.interfaces.api.deps import get_request_context

router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("")
def list_audit_logs(
    action: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    user_id: UUID | None = Query(default=None, alias="userId"),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> dict:
    target_user_id = context.user_id
    if user_id is not None and user_id != context.user_id:
        if not context.is_admin:
            raise Forbidden("Admin access required")
        target_user_id = user_id

    logs = list_audit_events(db, user_id=target_user_id, action=action, limit=limit)
    return {
        "logs": [
            {
                "id": str(entry.id),
                "userId": str(entry.user_id),
                "action": entry.action,
                "metadata": entry.metadata_json or {},
                "createdAt": ensure_utc(entry.created_at).isoformat(),
            }
            for entry in logs
        ],
        "count": len(logs),
    }
