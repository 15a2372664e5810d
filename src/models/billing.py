"""Billing enums shared by the catalog, ledger, adapters and state manager."""
from __future__ import annotations

from enum import Enum


class Plan(str, Enum):
    BASIC = "basic"
    PREMIUM = "premium"
    BUSINESS = "business"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class TierStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentProvider(str, Enum):
    PAYSTACK = "paystack"
    STRIPE = "stripe"
    MANUAL = "manual"


class TransactionType(str, Enum):
    SUBSCRIPTION = "subscription"
    CARD_ORDER = "card_order"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


class Currency(str, Enum):
    NGN = "NGN"  # local
    USD = "USD"  # foreign


# Each gateway settles in exactly one currency
PROVIDER_CURRENCY: dict[PaymentProvider, Currency] = {
    PaymentProvider.PAYSTACK: Currency.NGN,
    PaymentProvider.STRIPE: Currency.USD,
}

DEFAULT_DURATION_DAYS: dict[BillingCycle, int] = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.YEARLY: 365,
}
