"""Operator endpoints — catalog management and on-demand reconciliation.

All routes require the X-Admin-Key header.
"""
from __future__ import annotations

import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import get_session
from src.models.billing import Currency
from src.services.reconciliation import Reconciler
from src.services.tier_catalog import TierCatalog, serialize_tier

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])


def verify_admin_key(x_admin_key: str = Header(None, alias="X-Admin-Key")) -> None:
    """Verify admin API key from request header (timing-safe)."""
    expected_key = settings.ADMIN_API_KEY
    if not expected_key:
        raise HTTPException(503, "Admin endpoints disabled (ADMIN_API_KEY not set)")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected_key):
        raise HTTPException(403, "Invalid admin key")


class CyclePricing(BaseModel):
    price_local: int = Field(..., gt=0, alias="priceLocal", description="NGN, minor units")
    price_foreign: int = Field(..., gt=0, alias="priceForeign", description="USD, minor units")
    duration_days: Optional[int] = Field(None, gt=0, alias="durationInDays")
    paystack_plan_code: Optional[str] = Field(None, max_length=100, alias="paystackPlanCode")
    stripe_price_id: Optional[str] = Field(None, max_length=100, alias="stripePriceId")


class TierUpsertRequest(BaseModel):
    description: str = Field("", max_length=2000)
    features: list[str] = Field(default_factory=list, max_length=50)
    trial_period_days: int = Field(0, ge=0, le=365, alias="trialPeriod")
    auto_renew: bool = Field(True, alias="autoRenew")
    monthly: CyclePricing
    yearly: CyclePricing


@router.put("/tiers/{name}")
async def upsert_tier(
    name: str,
    req: TierUpsertRequest,
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    """Create or replace a subscription tier."""
    fields = {
        "description": req.description,
        "features": req.features,
        "trial_period_days": req.trial_period_days,
        "auto_renew": req.auto_renew,
    }
    for cycle, pricing in (("monthly", req.monthly), ("yearly", req.yearly)):
        fields[f"{cycle}_price_local"] = pricing.price_local
        fields[f"{cycle}_price_foreign"] = pricing.price_foreign
        fields[f"{cycle}_paystack_plan_code"] = pricing.paystack_plan_code
        fields[f"{cycle}_stripe_price_id"] = pricing.stripe_price_id
        if pricing.duration_days:
            fields[f"{cycle}_duration_days"] = pricing.duration_days

    tier = await TierCatalog(session).upsert_tier(name, fields)
    await session.commit()
    return {
        "message": "Subscription tier saved",
        "data": {
            "local": serialize_tier(tier, Currency.NGN),
            "foreign": serialize_tier(tier, Currency.USD),
        },
    }


@router.post("/reconcile")
async def reconcile_now(
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    """Run the reconciliation sweep immediately."""
    summary = await Reconciler(session, grace_hours=settings.RENEWAL_GRACE_HOURS).run()
    return {"message": "Reconciliation complete", **summary}
