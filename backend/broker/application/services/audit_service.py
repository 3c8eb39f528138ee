from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from broker.domain.models.audit_log import AuditLog


def log_audit_event(db: Session, *, user_id: UUID, action: str, metadata: dict | None = None) -> AuditLog:
    entry = AuditLog(
        user_id=user_id,
        action=str(action),
        metadata_json=metadata or {},
    )
    db.add(entry)
    return entry


def list_audit_events(
    db: Session,
    *,
    user_id: UUID,
    action: str | None = None,
    limit: int = 50,
) -> list[AuditLog]:
    stmt = select(AuditLog).where(AuditLog.user_id == user_id)
    if action:
        stmt = stmt.where(AuditLog.action == action)
    stmt = stmt.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(max(1, min(limit, 200)))
    return list(db.execute(stmt).scalars().all())
