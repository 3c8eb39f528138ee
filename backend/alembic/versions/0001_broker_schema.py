"""connection and credit broker schema

Revision ID: 0001_broker_schema
Revises:
Create Date: 2026-10-17 09:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_broker_schema"
down_revision = None
branch_labels = None
depends_on = None


def _jsonb_column(name: str) -> sa.Column:
    return sa.Column(
        name,
        postgresql.JSONB(astext_type=sa.Text()),
        nullable=False,
        server_default=sa.text("'{}'::jsonb"),
    )


def _timestamp_column(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    op.create_table(
        "connections",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("external_account_id", sa.String(length=255), nullable=True),
        sa.Column("external_username", sa.String(length=255), nullable=True),
        sa.Column("scopes", sa.String(length=1024), nullable=True),
        sa.Column("access_token_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_token_encrypted", sa.Text(), nullable=True),
        sa.Column("token_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _jsonb_column("metadata_json"),
        _timestamp_column("created_at"),
        sa.Column("connected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        _timestamp_column("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('pending', 'connected', 'revoked', 'error')",
            name="ck_connections_status",
        ),
    )
    op.create_index("ix_connections_user_id", "connections", ["user_id"], unique=False)
    op.create_index("ix_connections_platform", "connections", ["platform"], unique=False)
    op.create_index(
        "uq_connections_user_platform_connected",
        "connections",
        ["user_id", "platform"],
        unique=True,
        postgresql_where=sa.text("status = 'connected'"),
    )
    op.create_index(
        "uq_connections_user_platform_pending",
        "connections",
        ["user_id", "platform"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "oauth_states",
        sa.Column("state_token", sa.String(length=128), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("connection_id", postgresql.UUID(as_uuid=True), nullable=False),
        _timestamp_column("issued_at"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("consumed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
        _jsonb_column("extra"),
        sa.PrimaryKeyConstraint("state_token"),
    )
    op.create_index("ix_oauth_states_user_id", "oauth_states", ["user_id"], unique=False)
    op.create_index("ix_oauth_states_connection_id", "oauth_states", ["connection_id"], unique=False)
    op.create_index("ix_oauth_states_expires_at", "oauth_states", ["expires_at"], unique=False)

    op.create_table(
        "rate_limit_records",
        sa.Column("key", sa.String(length=255), nullable=False),
        sa.Column("window_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        _timestamp_column("updated_at"),
        sa.PrimaryKeyConstraint("key"),
    )
    op.create_index("ix_rate_limit_records_window_start", "rate_limit_records", ["window_start"], unique=False)

    op.create_table(
        "credit_wallets",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_earned", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("total_spent", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("low_balance_threshold", sa.Integer(), nullable=False, server_default=sa.text("5")),
        _timestamp_column("created_at"),
        _timestamp_column("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("balance >= 0", name="ck_credit_wallets_balance_non_negative"),
    )
    op.create_index("ix_credit_wallets_user_id", "credit_wallets", ["user_id"], unique=True)

    op.create_table(
        "credit_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tx_type", sa.String(length=16), nullable=False),
        sa.Column("credits", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(length=512), nullable=True),
        sa.Column("reference", sa.String(length=255), nullable=True),
        _jsonb_column("metadata_json"),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "tx_type IN ('earn', 'spend', 'purchase', 'refund', 'adjust')",
            name="ck_credit_transactions_tx_type",
        ),
    )
    op.create_index("ix_credit_transactions_user_id", "credit_transactions", ["user_id"], unique=False)
    op.create_index(
        "ix_credit_transactions_user_created",
        "credit_transactions",
        ["user_id", "created_at"],
        unique=False,
    )
    op.create_index(
        "uq_credit_transactions_refund_reference",
        "credit_transactions",
        ["reference"],
        unique=True,
        postgresql_where=sa.text("tx_type = 'refund' AND reference IS NOT NULL"),
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("action", sa.String(length=128), nullable=False),
        _jsonb_column("metadata_json"),
        _timestamp_column("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_audit_logs_user_id", "audit_logs", ["user_id"], unique=False)
    op.create_index("ix_audit_logs_action", "audit_logs", ["action"], unique=False)
    op.create_index("ix_audit_logs_user_created", "audit_logs", ["user_id", "created_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_audit_logs_user_created", table_name="audit_logs")
    op.drop_index("ix_audit_logs_action", table_name="audit_logs")
    op.drop_index("ix_audit_logs_user_id", table_name="audit_logs")
    op.drop_table("audit_logs")

    op.drop_index("uq_credit_transactions_refund_reference", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_created", table_name="credit_transactions")
    op.drop_index("ix_credit_transactions_user_id", table_name="credit_transactions")
    op.drop_table("credit_transactions")

    op.drop_index("ix_credit_wallets_user_id", table_name="credit_wallets")
    op.drop_table("credit_wallets")

    op.drop_index("ix_rate_limit_records_window_start", table_name="rate_limit_records")
    op.drop_table("rate_limit_records")

    op.drop_index("ix_oauth_states_expires_at", table_name="oauth_states")
    op.drop_index("ix_oauth_states_connection_id", table_name="oauth_states")
    op.drop_index("ix_oauth_states_user_id", table_name="oauth_states")
    op.drop_table("oauth_states")

    op.drop_index("uq_connections_user_platform_pending", table_name="connections")
    op.drop_index("uq_connections_user_platform_connected", table_name="connections")
    op.drop_index("ix_connections_platform", table_name="connections")
    op.drop_index("ix_connections_user_id", table_name="connections")
    op.drop_table("connections")
