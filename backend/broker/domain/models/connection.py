import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import CheckConstraint, DateTime, Index, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from broker.core.clock import utcnow
from broker.infrastructure.db.base import Base, JSONType


class Platform(StrEnum):
    TWITTER = "twitter"
    REDDIT = "reddit"
    LINKEDIN = "linkedin"


IMPLEMENTED_PLATFORMS = frozenset({Platform.TWITTER, Platform.REDDIT})


class ConnectionStatus(StrEnum):
    PENDING = "pending"
    CONNECTED = "connected"
    REVOKED = "revoked"
    ERROR = "error"


class Connection(Base):
    __tablename__ = "connections"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'connected', 'revoked', 'error')",
            name="ck_connections_status",
        ),
        Index(
            "uq_connections_user_platform_connected",
            "user_id",
            "platform",
            unique=True,
            postgresql_where=text("status = 'connected'"),
            sqlite_where=text("status = 'connected'"),
        ),
        Index(
            "uq_connections_user_platform_pending",
            "user_id",
            "platform",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ConnectionStatus.PENDING.value)
    external_account_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    external_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    scopes: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


PLATFORM_LABELS = {
    Platform.TWITTER: "Twitter",
    Platform.REDDIT: "Reddit",
    Platform.LINKEDIN: "LinkedIn",
}
