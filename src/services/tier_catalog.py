"""
CardPay Tier Catalog
---
Read model over the admin-managed `tiers` table: plan name → price by
currency and billing cycle, duration, provider plan codes and features.

Also owns currency selection for the public tier listing (explicit
`currency` query param, else best-effort geo headers, else USD).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.subscription_tables import TierRow
from src.models.billing import BillingCycle, Currency, PaymentProvider, Plan
from src.services.errors import InvalidPlan

logger = logging.getLogger(__name__)

# Checked in order; Cloudflare first (most reliable)
COUNTRY_HEADERS = (
    "cf-ipcountry",
    "x-country-code",
    "x-verified-country",
    "cloudfront-viewer-country",
    "x-appengine-country",
)

CURRENCY_SYMBOLS = {Currency.NGN: "₦", Currency.USD: "$"}


@dataclass(frozen=True)
class PriceInfo:
    currency: Currency
    amount: int  # minor units
    plan: Optional[Plan] = None  # None for card orders
    billing_cycle: Optional[BillingCycle] = None
    duration_days: int = 0
    provider_plan_code: Optional[str] = None

    @property
    def label(self) -> str:
        if self.plan is None or self.billing_cycle is None:
            return "Physical card order"
        return f"{self.plan.value.title()} ({self.billing_cycle.value})"


def parse_plan(value: str | Plan) -> Plan:
    try:
        return Plan(str(getattr(value, "value", value)).lower())
    except ValueError:
        raise InvalidPlan(f"Unknown plan: {value}")


def parse_billing_cycle(value: str | BillingCycle) -> BillingCycle:
    try:
        return BillingCycle(str(getattr(value, "value", value)).lower())
    except ValueError:
        raise InvalidPlan("Billing cycle must be either 'monthly' or 'yearly'")


def price_for(tier: TierRow, cycle: BillingCycle, currency: Currency) -> int:
    prefix = cycle.value
    column = "price_local" if currency == Currency.NGN else "price_foreign"
    return getattr(tier, f"{prefix}_{column}")


def plan_code_for(tier: TierRow, cycle: BillingCycle, provider: PaymentProvider) -> str | None:
    if provider == PaymentProvider.PAYSTACK:
        return getattr(tier, f"{cycle.value}_paystack_plan_code")
    if provider == PaymentProvider.STRIPE:
        return getattr(tier, f"{cycle.value}_stripe_price_id")
    return None


def detect_country(headers: Mapping[str, str]) -> str | None:
    for name in COUNTRY_HEADERS:
        country = headers.get(name)
        if country and len(country) == 2:
            return country.upper()
    return None


def currency_for_country(country: str | None) -> Currency:
    # Nigeria pays in NGN, everyone else (and anyone undetected) in USD
    return Currency.NGN if country == "NG" else Currency.USD


def parse_currency(value: str) -> Currency:
    try:
        return Currency(value.upper())
    except ValueError:
        raise InvalidPlan("Invalid currency. Supported currencies: USD, NGN")


class TierCatalog:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_tier(self, plan: Plan | str) -> TierRow:
        plan = parse_plan(plan)
        result = await self.session.execute(select(TierRow).where(TierRow.name == plan))
        tier = result.scalar_one_or_none()
        if tier is None:
            raise InvalidPlan(f"Subscription tier not found: {plan.value}")
        return tier

    async def get_price(
        self,
        plan: Plan | str,
        billing_cycle: BillingCycle | str,
        currency: Currency,
        provider: PaymentProvider | None = None,
    ) -> PriceInfo:
        """Exact catalog price for (plan, cycle, currency). Never falls back to another currency."""
        cycle = parse_billing_cycle(billing_cycle)
        tier = await self.get_tier(plan)
        amount = price_for(tier, cycle, currency)
        if amount is None or amount <= 0:
            raise InvalidPlan(f"No {currency.value} price configured for {tier.name.value}/{cycle.value}")
        return PriceInfo(
            plan=tier.name,
            billing_cycle=cycle,
            currency=currency,
            amount=amount,
            duration_days=getattr(tier, f"{cycle.value}_duration_days"),
            provider_plan_code=plan_code_for(tier, cycle, provider) if provider else None,
        )

    async def list_tiers(self) -> list[TierRow]:
        result = await self.session.execute(select(TierRow).order_by(TierRow.monthly_price_foreign))
        return list(result.scalars().all())

    async def upsert_tier(self, plan: Plan | str, fields: dict[str, Any]) -> TierRow:
        plan = parse_plan(plan)
        result = await self.session.execute(select(TierRow).where(TierRow.name == plan))
        tier = result.scalar_one_or_none()
        if tier is None:
            tier = TierRow(name=plan)
            self.session.add(tier)
        for key, value in fields.items():
            setattr(tier, key, value)
        await self.session.flush()
        logger.info("Tier upserted: %s", plan.value)
        return tier


def serialize_tier(tier: TierRow, currency: Currency) -> dict[str, Any]:
    """Public view of a tier priced in a single currency."""
    def cycle_view(cycle: BillingCycle) -> dict[str, Any]:
        amount = price_for(tier, cycle, currency)
        return {
            "price": amount / 100,
            "amount": amount,
            "currency": currency.value,
            "symbol": CURRENCY_SYMBOLS[currency],
            "durationInDays": getattr(tier, f"{cycle.value}_duration_days"),
        }

    return {
        "id": tier.id,
        "name": tier.name.value,
        "description": tier.description,
        "features": tier.features or [],
        "trialPeriod": tier.trial_period_days,
        "autoRenew": tier.auto_renew,
        "monthly": cycle_view(BillingCycle.MONTHLY),
        "yearly": cycle_view(BillingCycle.YEARLY),
    }
