"""User table — the tier-state record embedded on each user."""
from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Column, Enum as SAEnum, Integer, String

from src.db.tables import Base, UTCDateTime, utcnow
from src.models.billing import PaymentProvider, Plan, TierStatus


def _enum(enum_cls, length: int = 20) -> SAEnum:
    # Store the lowercase values, not the member names
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
    )


class UserRow(Base):
    """A platform user.

    Identity lives elsewhere; this service owns only the `tier_*` and
    `active_*` columns, and only through `SubscriptionStateManager`.
    """
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=False, unique=True, index=True)
    username = Column(String(100), nullable=True)

    # TierState
    tier_plan = Column(_enum(Plan), nullable=False, default=Plan.BASIC)
    tier_status = Column(_enum(TierStatus), nullable=False, default=TierStatus.INACTIVE, index=True)
    tier_transaction_id = Column(String(255), nullable=True)
    tier_subscription_code = Column(String(255), nullable=True, index=True)
    tier_expires_at = Column(UTCDateTime, nullable=True, index=True)
    tier_updated_at = Column(UTCDateTime, nullable=True)

    # ActiveSubscriptionRef (recurring gateway subscriptions only)
    active_provider = Column(_enum(PaymentProvider), nullable=True)
    active_subscription_id = Column(String(255), nullable=True, index=True)
    active_expiry_date = Column(UTCDateTime, nullable=True)

    # Stored payment methods live at the provider, keyed by these
    paystack_customer_id = Column(String(255), nullable=True)
    stripe_customer_id = Column(String(255), nullable=True)

    # Optimistic concurrency for tier-state writes
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(UTCDateTime, default=utcnow)

    __mapper_args__ = {"version_id_col": version}

    def activate_tier(
        self,
        plan: Plan,
        transaction_id: str,
        expires_at: datetime | None,
        subscription_code: str | None = None,
        provider: PaymentProvider | None = None,
    ) -> None:
        self.tier_plan = plan
        self.tier_status = TierStatus.ACTIVE
        self.tier_transaction_id = transaction_id
        self.tier_subscription_code = subscription_code
        self.tier_expires_at = expires_at
        if subscription_code and provider in (PaymentProvider.PAYSTACK, PaymentProvider.STRIPE):
            self.active_provider = provider
            self.active_subscription_id = subscription_code
            self.active_expiry_date = expires_at
        else:
            self.active_provider = None
            self.active_subscription_id = None
            self.active_expiry_date = None
        self.tier_updated_at = utcnow()

    def clear_tier_state(self) -> None:
        """Inactive clears every identifier together; never clear them one by one."""
        self.tier_status = TierStatus.INACTIVE
        self.tier_transaction_id = None
        self.tier_subscription_code = None
        self.tier_expires_at = None
        self.active_provider = None
        self.active_subscription_id = None
        self.active_expiry_date = None
        self.tier_updated_at = utcnow()

    def is_entitled(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            self.tier_status == TierStatus.ACTIVE
            and self.tier_transaction_id is not None
            and (self.tier_expires_at is None or self.tier_expires_at > now)
        )

    @property
    def live_subscription_id(self) -> str | None:
        return self.active_subscription_id or self.tier_subscription_code
