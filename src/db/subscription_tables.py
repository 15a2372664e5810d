"""Subscription tables — tier catalog and the payment transaction ledger."""
from __future__ import annotations

import uuid

from sqlalchemy import (
    Boolean, Column, ForeignKey, Index, Integer, JSON, String, Text,
)

from src.db.tables import Base, UTCDateTime, utcnow
from src.db.user_tables import _enum
from src.models.billing import (
    BillingCycle, PaymentProvider, Plan, TransactionStatus, TransactionType,
)


class TierRow(Base):
    """Admin-managed subscription plan. Prices are integer minor units."""
    __tablename__ = "tiers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(_enum(Plan), nullable=False, unique=True)
    description = Column(Text, nullable=False, default="")
    features = Column(JSON, default=list)
    trial_period_days = Column(Integer, nullable=False, default=0)
    auto_renew = Column(Boolean, nullable=False, default=True)

    monthly_price_local = Column(Integer, nullable=False)    # NGN kobo
    monthly_price_foreign = Column(Integer, nullable=False)  # USD cents
    monthly_duration_days = Column(Integer, nullable=False, default=30)
    monthly_paystack_plan_code = Column(String(100), nullable=True)
    monthly_stripe_price_id = Column(String(100), nullable=True)

    yearly_price_local = Column(Integer, nullable=False)
    yearly_price_foreign = Column(Integer, nullable=False)
    yearly_duration_days = Column(Integer, nullable=False, default=365)
    yearly_paystack_plan_code = Column(String(100), nullable=True)
    yearly_stripe_price_id = Column(String(100), nullable=True)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)


class TransactionRow(Base):
    """Ledger entry for a confirmed (or attempted) payment.

    `transaction_id` is the provider-issued id and the idempotency key; the
    unique constraint on it is what makes redelivered webhooks harmless.
    """
    __tablename__ = "transactions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    customer_email = Column(String(320), nullable=True)

    transaction_id = Column(String(255), nullable=False, unique=True)
    reference_id = Column(String(64), nullable=False, index=True)
    transaction_type = Column(_enum(TransactionType), nullable=False, default=TransactionType.SUBSCRIPTION)
    payment_provider = Column(_enum(PaymentProvider), nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False, default=TransactionStatus.SUCCESS)

    # Absent for card orders
    plan = Column(_enum(Plan), nullable=True)
    billing_cycle = Column(_enum(BillingCycle), nullable=True)

    amount = Column(Integer, nullable=False)  # minor units
    currency = Column(String(3), nullable=False)
    subscription_code = Column(String(255), nullable=True)
    payment_method = Column(String(50), nullable=True)

    paid_at = Column(UTCDateTime, nullable=False, default=utcnow)
    expires_at = Column(UTCDateTime, nullable=True)

    # Card-order details and any provider extras worth keeping
    extra = Column("metadata", JSON, nullable=True)

    created_at = Column(UTCDateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_transactions_provider_status", "payment_provider", "status"),
    )
