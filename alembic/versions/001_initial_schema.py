"""Initial schema: users, agencies, plans, subscriptions, payment transactions, webhooks

Revision ID: 001
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

OPEN_TRANSACTION_CLAUSE = "status IN ('pending', 'processing')"


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("email", sa.String(255), unique=True, index=True, nullable=False),
        sa.Column("phone_number", sa.String(50), nullable=True),
        sa.Column("full_name", sa.String(255), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "agencies",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("collection_days", JSONB(), nullable=False, server_default='["Monday", "Thursday"]'),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_table(
        "subscription_plans",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("agency_id", sa.Integer(), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="KES"),
        sa.Column("duration_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column("plan_type", sa.String(20), nullable=False, server_default="standard"),
        sa.Column("features", JSONB(), nullable=True),
        sa.Column("is_active", sa.Boolean(), server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("idx_plans_agency_active", "subscription_plans", ["agency_id", "is_active"])

    op.create_table(
        "user_subscriptions",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("agency_id", sa.Integer(), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("plan_id", sa.Integer(), sa.ForeignKey("subscription_plans.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("payment_method", sa.String(30), nullable=False, server_default="mpesa"),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="KES"),
        sa.Column("custom_collection_dates", JSONB(), nullable=True),
        sa.Column("collection_days", JSONB(), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), server_default=sa.false()),
        sa.Column("start_date", sa.DateTime(), nullable=True),
        sa.Column("end_date", sa.DateTime(), nullable=True),
        sa.Column("metadata", JSONB(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("idx_sub_user_status", "user_subscriptions", ["user_id", "status"])
    op.create_index("idx_sub_status_end", "user_subscriptions", ["status", "end_date"])

    op.create_table(
        "payment_transactions",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("subscription_id", sa.Integer(), sa.ForeignKey("user_subscriptions.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default="KES"),
        sa.Column("payment_method", sa.String(30), nullable=False),
        sa.Column("payment_provider", sa.String(30), nullable=False),
        sa.Column("provider_reference", sa.String(255), nullable=True, unique=True),
        sa.Column("checkout_url", sa.String(1000), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("provider_response", JSONB(), nullable=True),
        sa.Column("error_message", sa.String(1000), nullable=True),
        sa.Column("verified_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index(
        "uq_payment_tx_open_subscription",
        "payment_transactions",
        ["subscription_id"],
        unique=True,
        postgresql_where=sa.text(OPEN_TRANSACTION_CLAUSE),
    )
    op.create_index("idx_payment_tx_sub_created", "payment_transactions", ["subscription_id", "created_at"])
    op.create_index("idx_payment_tx_status_updated", "payment_transactions", ["status", "updated_at"])

    op.create_table(
        "payment_webhooks",
        sa.Column("id", sa.Integer(), primary_key=True, index=True),
        sa.Column("provider", sa.String(30), nullable=False),
        sa.Column("event_type", sa.String(100), nullable=True),
        sa.Column("reference", sa.String(255), nullable=True),
        sa.Column("payload", JSONB(), nullable=True),
        sa.Column("signature_valid", sa.Boolean(), server_default=sa.false()),
        sa.Column("received_at", sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index("idx_webhooks_provider_ref", "payment_webhooks", ["provider", "reference"])


def downgrade() -> None:
    op.drop_index("idx_webhooks_provider_ref", table_name="payment_webhooks")
    op.drop_table("payment_webhooks")
    op.drop_index("idx_payment_tx_status_updated", table_name="payment_transactions")
    op.drop_index("idx_payment_tx_sub_created", table_name="payment_transactions")
    op.drop_index("uq_payment_tx_open_subscription", table_name="payment_transactions")
    op.drop_table("payment_transactions")
    op.drop_index("idx_sub_status_end", table_name="user_subscriptions")
    op.drop_index("idx_sub_user_status", table_name="user_subscriptions")
    op.drop_table("user_subscriptions")
    op.drop_index("idx_plans_agency_active", table_name="subscription_plans")
    op.drop_table("subscription_plans")
    op.drop_table("agencies")
    op.drop_table("users")
