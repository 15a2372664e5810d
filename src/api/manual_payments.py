"""
Manual payments API (operators only)
---
Bank transfers and cash payments confirmed by an operator. The
confirmation is synchronous: the request itself is the payment event.

Endpoints:
- POST /api/v1/manual-payment/initialize-payment   — record a payment and activate the plan
- POST /api/v1/manual-payment/cancel-subscription  — revoke a manually granted plan
- POST /api/v1/manual-payment/change-subscription  — replace the plan with a new manual payment
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from src.api.admin import verify_admin_key
from src.api.deps import get_providers, get_state_manager
from src.models.billing import PaymentProvider
from src.services.errors import InvalidPlan, NoActiveSubscription
from src.services.ledger import serialize_transaction
from src.services.providers.base import ProviderAdapter
from src.services.providers.manual import ManualAdapter
from src.services.subscriptions import SubscriptionStateManager
from src.services.tier_catalog import parse_billing_cycle, parse_currency, parse_plan

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/v1/manual-payment",
    tags=["manual-payments"],
    dependencies=[Depends(verify_admin_key)],
)


class ManualPaymentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")
    amount: int = Field(..., gt=0, description="Minor units")
    plan: str = Field(..., min_length=1, max_length=20)
    billing_cycle: str = Field(..., min_length=1, max_length=20, alias="billingCycle")
    payment_method: str = Field(..., min_length=1, max_length=50, alias="paymentMethod")
    currency: str = Field("NGN", min_length=3, max_length=3)
    duration_days: Optional[int] = Field(None, gt=0, le=3650, alias="durationInDays")


class ManualCancelRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")


class ManualChangeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")
    new_plan: str = Field(..., min_length=1, max_length=20, alias="newPlan")
    billing_cycle: str = Field(..., min_length=1, max_length=20, alias="billingCycle")
    amount: Optional[int] = Field(None, gt=0)
    payment_method: str = Field("manual", min_length=1, max_length=50, alias="paymentMethod")
    currency: str = Field("NGN", min_length=3, max_length=3)
    duration_days: Optional[int] = Field(None, gt=0, le=3650, alias="durationInDays")


def _manual_adapter(providers: dict[PaymentProvider, ProviderAdapter]) -> ManualAdapter:
    return providers[PaymentProvider.MANUAL]  # type: ignore[return-value]


@router.post("/initialize-payment", status_code=201)
async def record_manual_payment(
    req: ManualPaymentRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
    providers: dict[PaymentProvider, ProviderAdapter] = Depends(get_providers),
):
    """Record a manual payment and activate the plan immediately."""
    event = _manual_adapter(providers).build_event(
        user_id=req.user_id,
        amount=req.amount,
        plan=parse_plan(req.plan),
        billing_cycle=parse_billing_cycle(req.billing_cycle),
        payment_method=req.payment_method,
        currency=parse_currency(req.currency),
        duration_days=req.duration_days,
    )
    # Fail before writing anything if the plan is not in the catalog
    await manager.catalog.get_tier(event.plan)
    result = await manager.confirm_payment(event)
    logger.info("Manual payment recorded: user=%s txn=%s", req.user_id, event.transaction_id)
    return {
        "message": "Manual payment recorded and subscription activated",
        "data": serialize_transaction(result.transaction),
    }


@router.post("/cancel-subscription")
async def cancel_manual_subscription(
    req: ManualCancelRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    return await manager.revoke_manual_subscription(req.user_id)


@router.post("/change-subscription")
async def change_manual_subscription(
    req: ManualChangeRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
    providers: dict[PaymentProvider, ProviderAdapter] = Depends(get_providers),
):
    """Replace the user's plan with a new manually paid one.

    A live gateway subscription is cancelled at the provider first; a
    manual one is revoked locally.
    """
    plan = parse_plan(req.new_plan)
    cycle = parse_billing_cycle(req.billing_cycle)
    currency = parse_currency(req.currency)

    amount = req.amount
    if amount is None:
        price = await manager.catalog.get_price(plan, cycle, currency)
        amount = price.amount
    if amount <= 0:
        raise InvalidPlan("Amount must be greater than zero")

    status = await manager.get_status(req.user_id)
    if status["activeSubscription"]:
        await manager.cancel_subscription(req.user_id)
    elif status["transactionId"]:
        try:
            await manager.revoke_manual_subscription(req.user_id)
        except NoActiveSubscription:
            # One-off gateway payment with no remote subscription; the new plan replaces it
            logger.info("Replacing non-recurring plan for user %s", req.user_id)

    event = _manual_adapter(providers).build_event(
        user_id=req.user_id,
        amount=amount,
        plan=plan,
        billing_cycle=cycle,
        payment_method=req.payment_method,
        currency=currency,
        duration_days=req.duration_days,
    )
    result = await manager.confirm_payment(event)
    return {
        "message": "Subscription changed successfully",
        "data": serialize_transaction(result.transaction),
    }
