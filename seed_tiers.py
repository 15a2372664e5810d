"""Default subscription tiers — basic, premium, business.

Prices are integer minor units (NGN kobo, USD cents). Provider plan codes
come from the environment so the same script seeds test and live accounts.
Safe to rerun: existing tiers are updated in place.
"""
import asyncio
import os

DEFAULT_TIERS = {
    "basic": {
        "description": "A digital business card and the essentials to share it.",
        "features": ["1 digital card", "QR code sharing", "Basic contact capture"],
        "trial_period_days": 0,
        "auto_renew": True,
        "monthly_price_local": 150_000,
        "monthly_price_foreign": 499,
        "yearly_price_local": 1_500_000,
        "yearly_price_foreign": 4_990,
    },
    "premium": {
        "description": "More cards, analytics and CRM for professionals.",
        "features": ["5 digital cards", "Card analytics", "Contact CRM", "Custom branding"],
        "trial_period_days": 7,
        "auto_renew": True,
        "monthly_price_local": 500_000,
        "monthly_price_foreign": 999,
        "yearly_price_local": 5_000_000,
        "yearly_price_foreign": 9_990,
    },
    "business": {
        "description": "Team cards, organization management and integrations.",
        "features": ["Unlimited cards", "Team management", "CRM integrations", "Priority support"],
        "trial_period_days": 14,
        "auto_renew": True,
        "monthly_price_local": 1_500_000,
        "monthly_price_foreign": 2_999,
        "yearly_price_local": 15_000_000,
        "yearly_price_foreign": 29_990,
    },
}


def _plan_codes(name: str) -> dict:
    codes = {}
    for cycle in ("monthly", "yearly"):
        key = f"{name}_{cycle}".upper()
        codes[f"{cycle}_paystack_plan_code"] = os.getenv(f"PAYSTACK_PLAN_{key}") or None
        codes[f"{cycle}_stripe_price_id"] = os.getenv(f"STRIPE_PRICE_{key}") or None
    return codes


async def seed_tiers():
    """Upsert the default tiers."""
    from src.db.engine import engine, async_session
    from src.db.tables import Base
    import src.db.user_tables  # noqa: F401
    from src.services.tier_catalog import TierCatalog

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        catalog = TierCatalog(session)
        for name, fields in DEFAULT_TIERS.items():
            await catalog.upsert_tier(name, {**fields, **_plan_codes(name)})
            print(f"✅ {name}")
        await session.commit()

    await engine.dispose()
    print(f"🎉 Seeded {len(DEFAULT_TIERS)} tiers")


if __name__ == "__main__":
    asyncio.run(seed_tiers())
