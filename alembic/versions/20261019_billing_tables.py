"""Create users, tiers and transactions tables for billing.

Revision ID: 5c1e9a7b2d40
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = "5c1e9a7b2d40"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("username", sa.String(100), nullable=True),
        sa.Column("tier_plan", sa.String(20), nullable=False, server_default="basic"),
        sa.Column("tier_status", sa.String(20), nullable=False, server_default="inactive"),
        sa.Column("tier_transaction_id", sa.String(255), nullable=True),
        sa.Column("tier_subscription_code", sa.String(255), nullable=True),
        sa.Column("tier_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tier_updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("active_provider", sa.String(20), nullable=True),
        sa.Column("active_subscription_id", sa.String(255), nullable=True),
        sa.Column("active_expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paystack_customer_id", sa.String(255), nullable=True),
        sa.Column("stripe_customer_id", sa.String(255), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)
    op.create_index("ix_users_tier_status", "users", ["tier_status"])
    op.create_index("ix_users_tier_subscription_code", "users", ["tier_subscription_code"])
    op.create_index("ix_users_tier_expires_at", "users", ["tier_expires_at"])
    op.create_index("ix_users_active_subscription_id", "users", ["active_subscription_id"])

    op.create_table(
        "tiers",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(20), nullable=False, unique=True),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("features", sa.JSON, nullable=True),
        sa.Column("trial_period_days", sa.Integer, nullable=False, server_default="0"),
        sa.Column("auto_renew", sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column("monthly_price_local", sa.Integer, nullable=False),
        sa.Column("monthly_price_foreign", sa.Integer, nullable=False),
        sa.Column("monthly_duration_days", sa.Integer, nullable=False, server_default="30"),
        sa.Column("monthly_paystack_plan_code", sa.String(100), nullable=True),
        sa.Column("monthly_stripe_price_id", sa.String(100), nullable=True),
        sa.Column("yearly_price_local", sa.Integer, nullable=False),
        sa.Column("yearly_price_foreign", sa.Integer, nullable=False),
        sa.Column("yearly_duration_days", sa.Integer, nullable=False, server_default="365"),
        sa.Column("yearly_paystack_plan_code", sa.String(100), nullable=True),
        sa.Column("yearly_stripe_price_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("user_id", sa.String(36), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("customer_email", sa.String(320), nullable=True),
        sa.Column("transaction_id", sa.String(255), nullable=False, unique=True),
        sa.Column("reference_id", sa.String(64), nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False, server_default="subscription"),
        sa.Column("payment_provider", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="success"),
        sa.Column("plan", sa.String(20), nullable=True),
        sa.Column("billing_cycle", sa.String(20), nullable=True),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("subscription_code", sa.String(255), nullable=True),
        sa.Column("payment_method", sa.String(50), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_transactions_user_id", "transactions", ["user_id"])
    op.create_index("ix_transactions_reference_id", "transactions", ["reference_id"])
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])
    op.create_index("ix_transactions_provider_status", "transactions", ["payment_provider", "status"])


def downgrade() -> None:
    op.drop_table("transactions")
    op.drop_table("tiers")
    op.drop_table("users")
