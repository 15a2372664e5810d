"""
CardPay Payments API
---
Gateway payment routes and webhook ingestion.

Endpoints:
- POST /api/v1/payments/{provider}/initialize-payment   — start a subscription payment
- POST /api/v1/payments/{provider}/webhook              — provider callbacks (signature-verified)
- POST /api/v1/payments/{provider}/cancel-subscription  — cancel remotely, then locally
- POST /api/v1/payments/{provider}/change-subscription  — switch plan, payment required
- POST /api/v1/payments/paystack/initialize-card-order  — one-off physical card order
- GET  /api/v1/payments/status/{user_id}                — tier state
- GET  /api/v1/payments/paystack/verify/{reference}     — look up a payment, apply it if it succeeded
- GET  /api/v1/payments/transactions                    — ledger listing (admin)
- GET  /api/v1/payments/analytics                       — revenue summary (admin)
"""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from src.api.admin import verify_admin_key
from src.api.deps import get_providers, get_state_manager
from src.db.engine import get_session
from src.middleware.metrics import metrics
from src.models.billing import PaymentProvider
from src.services.errors import BillingError, UserNotFound
from src.services.ledger import TransactionLedger, serialize_transaction
from src.services.providers.base import ProviderAdapter, WebhookKind
from src.services.subscriptions import SubscriptionStateManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])

GATEWAYS = (PaymentProvider.PAYSTACK, PaymentProvider.STRIPE)

# Paystack references: alphanumerics plus - . =
REFERENCE_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9.=-]{0,99}$"


def _gateway(provider: str) -> PaymentProvider:
    try:
        gateway = PaymentProvider(provider.lower())
    except ValueError:
        gateway = None
    if gateway not in GATEWAYS:
        raise HTTPException(404, f"Unknown payment provider: {provider}")
    return gateway


# ── Schemas ──────────────────────────────────────────────────────────────

class InitializePaymentRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")
    plan: str = Field(..., min_length=1, max_length=20)
    billing_cycle: str = Field(..., min_length=1, max_length=20, alias="billingCycle")


class CancelSubscriptionRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")
    subscription_id: Optional[str] = Field(None, max_length=255, alias="subscriptionId")


class ChangeSubscriptionRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")
    new_plan: str = Field(..., min_length=1, max_length=20, alias="newPlan")
    billing_cycle: str = Field(..., min_length=1, max_length=20, alias="billingCycle")


class CardOrderRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=36, alias="userId")
    amount: int = Field(..., gt=0, description="NGN, minor units")
    card_id: str = Field(..., min_length=1, max_length=64, alias="cardId")
    quantity: int = Field(1, ge=1, le=1000)
    region: Optional[str] = Field(None, max_length=64)


# ── Subscription lifecycle ───────────────────────────────────────────────

@router.post("/{provider}/initialize-payment")
async def initialize_payment(
    provider: str,
    req: InitializePaymentRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    """Start a checkout, or subscribe directly on a stored card."""
    result = await manager.initialize_payment(req.user_id, req.plan, req.billing_cycle, _gateway(provider))
    return {"message": "Payment initialized", **result.as_payload()}


@router.post("/{provider}/cancel-subscription")
async def cancel_subscription(
    provider: str,
    req: CancelSubscriptionRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    return await manager.cancel_subscription(req.user_id, req.subscription_id, provider=_gateway(provider))


@router.post("/{provider}/change-subscription")
async def change_subscription(
    provider: str,
    req: ChangeSubscriptionRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    return await manager.change_subscription(req.user_id, req.new_plan, req.billing_cycle, _gateway(provider))


@router.post("/paystack/initialize-card-order")
async def initialize_card_order(
    req: CardOrderRequest,
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    result = await manager.initialize_card_order(
        req.user_id,
        req.amount,
        {"cardId": req.card_id, "quantity": req.quantity, "region": req.region},
        provider=PaymentProvider.PAYSTACK,
    )
    return {"message": "Card order payment initialized", **result.as_payload()}


@router.get("/status/{user_id}")
async def subscription_status(
    user_id: str,
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    return await manager.get_status(user_id)


@router.get("/paystack/verify/{reference}")
async def verify_paystack_transaction(
    reference: str = Path(..., pattern=REFERENCE_PATTERN),
    providers: dict[PaymentProvider, ProviderAdapter] = Depends(get_providers),
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    """Look a Paystack payment up by reference and apply it if it succeeded.

    Recovers payments whose webhook never arrived. Confirmation is
    idempotent, so verifying after the webhook landed reports a duplicate.
    """
    verified = await providers[PaymentProvider.PAYSTACK].verify_transaction(reference)
    response = {**verified.as_payload(), "applied": False, "duplicate": False}
    if verified.payment is not None:
        result = await manager.confirm_payment(verified.payment)
        response["applied"] = not result.duplicate
        response["duplicate"] = result.duplicate
    return response


# ── Webhooks ─────────────────────────────────────────────────────────────

@router.post("/{provider}/webhook")
async def provider_webhook(
    provider: str,
    request: Request,
    providers: dict[PaymentProvider, ProviderAdapter] = Depends(get_providers),
    manager: SubscriptionStateManager = Depends(get_state_manager),
):
    """Handle a provider callback.

    Providers retry on non-2xx, so everything after the ledger + state
    commit (emails) runs as a background task after the response.
    """
    gateway = _gateway(provider)
    body = await request.body()

    try:
        event = providers[gateway].parse_webhook(body, request.headers)
    except BillingError as e:
        outcome = "rejected" if e.http_status == 401 else "invalid"
        metrics.record_webhook(gateway.value, outcome)
        logger.warning("%s webhook %s: %s", gateway.value, outcome, e.message)
        raise

    if event is None:
        metrics.record_webhook(gateway.value, "ignored")
        return {"received": True, "ignored": True}

    if event.kind == WebhookKind.SUBSCRIPTION_CANCELED:
        await manager.handle_remote_cancellation(gateway, event.subscription_code)
        metrics.record_webhook(gateway.value, "cancelled")
        return {"received": True}

    try:
        result = await manager.confirm_payment(event.payment)
    except UserNotFound:
        metrics.record_webhook(gateway.value, "unknown_user")
        raise
    metrics.record_webhook(gateway.value, "duplicate" if result.duplicate else "confirmed")
    return {"received": True}


# ── Ledger (admin) ───────────────────────────────────────────────────────

@router.get("/transactions")
async def list_transactions(
    provider: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    provider_filter = None
    if provider:
        try:
            provider_filter = PaymentProvider(provider.lower())
        except ValueError:
            raise HTTPException(400, f"Unknown payment provider: {provider}")
    rows = await TransactionLedger(session).list_transactions(provider_filter, limit=limit, offset=offset)
    return {
        "count": len(rows),
        "limit": limit,
        "offset": offset,
        "data": [serialize_transaction(t) for t in rows],
    }


@router.get("/analytics")
async def payment_analytics(
    session: AsyncSession = Depends(get_session),
    _auth: None = Depends(verify_admin_key),
):
    return await TransactionLedger(session).aggregate()
