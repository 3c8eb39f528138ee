import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from broker.core.clock import utcnow
from broker.infrastructure.db.base import Base, JSONType


class CreditTxType(StrEnum):
    EARN = "earn"
    SPEND = "spend"
    PURCHASE = "purchase"
    REFUND = "refund"
    ADJUST = "adjust"


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        CheckConstraint(
            "tx_type IN ('earn', 'spend', 'purchase', 'refund', 'adjust')",
            name="ck_credit_transactions_tx_type",
        ),
        Index("ix_credit_transactions_user_created", "user_id", "created_at"),
        Index(
            "uq_credit_transactions_refund_reference",
            "reference",
            unique=True,
            postgresql_where=text("tx_type = 'refund' AND reference IS NOT NULL"),
            sqlite_where=text("tx_type = 'refund' AND reference IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    tx_type: Mapped[str] = mapped_column(String(16), nullable=False)
    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str | None] = mapped_column(String(512), nullable=True)
    reference: Mapped[str | None] = mapped_column(String(255), nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
