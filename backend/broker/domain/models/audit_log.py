import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, Index, String, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from broker.core.clock import utcnow
from broker.infrastructure.db.base import Base, JSONType


class AuditAction(StrEnum):
    CONNECTION_INITIATED = "connection_initiated"
    CONNECTION_COMPLETED = "connection_completed"
    CONNECTION_FAILED = "connection_failed"
    CONNECTION_REVOKED = "connection_revoked"
    CONNECTION_DUPLICATE_REJECTED = "connection_duplicate_rejected"
    CONNECTION_SUPERSEDED = "connection_superseded"
    CONNECTION_CALLBACK_DENIED = "connection_callback_denied"
    CONNECTION_RATE_LIMITED = "connection_rate_limited"
    CREDIT_SPENT = "credit_spent"
    CREDIT_REFUNDED = "credit_refunded"
    CREDIT_ADJUSTED = "credit_adjusted"
    CREDIT_PURCHASED = "credit_purchased"


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_user_created", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    metadata_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
