"""
Stripe adapter (USD)
---
- Hosted checkout via /checkout/sessions (subscription mode when a price id is configured)
- Direct subscription via /subscriptions on the customer's default payment method
- Webhooks signed with Stripe's v1 scheme (t=...,v1=... HMAC-SHA256, 5 min tolerance)
- Cancellation via DELETE /subscriptions/{id}

Subscription checkouts are confirmed by `invoice.paid`, not by
`checkout.session.completed`, so every billed period lands exactly once in
the ledger and renewals extend entitlement.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Mapping

import httpx

from src.db.user_tables import UserRow
from src.models.billing import Currency, PaymentProvider, TransactionType
from src.services.errors import InvalidWebhookPayload, ProviderError, SignatureInvalid
from src.services.providers.base import (
    InitMode, PaymentInitResult, ProviderAdapter, ProviderHTTP, WebhookEvent, WebhookKind,
    event_from_metadata, payload_amount, payload_object,
)
from src.services.tier_catalog import PriceInfo

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"
SIGNATURE_TOLERANCE_SECONDS = 300


def compute_signature(payload: bytes, timestamp: str, secret: str) -> str:
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
    return hmac.new(secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    sig_header: str | None,
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """Verify a Stripe webhook signature header.

    1. Extract timestamp and v1 signatures from the header
    2. Reject timestamps outside the tolerance window
    3. Compare HMAC-SHA256 of "{t}.{body}" (timing-safe)
    """
    if not secret:
        raise SignatureInvalid("Stripe webhook secret not configured")
    if not sig_header:
        raise SignatureInvalid("Missing Stripe signature")

    timestamp = ""
    signatures: list[str] = []
    for item in sig_header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            raise SignatureInvalid("Invalid Stripe signature header")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not signatures:
        raise SignatureInvalid("Missing timestamp or signature")
    try:
        ts = int(timestamp)
    except ValueError:
        raise SignatureInvalid("Invalid Stripe signature timestamp")

    current = time.time() if now is None else now
    if abs(current - ts) > tolerance:
        raise SignatureInvalid("Webhook timestamp too old")

    try:
        expected = compute_signature(payload, timestamp, secret)
    except UnicodeDecodeError:
        raise SignatureInvalid("Webhook body is not UTF-8")
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise SignatureInvalid("Invalid Stripe signature")


def _from_timestamp(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc)


def _currency(value: Any) -> Currency:
    try:
        return Currency(str(value or "usd").upper())
    except ValueError:
        raise InvalidWebhookPayload(f"Unsupported currency: {value}")


def _metadata_form(prefix: str, metadata: Mapping[str, str]) -> dict[str, str]:
    return {f"{prefix}[{key}]": str(value) for key, value in metadata.items()}


class StripeAdapter(ProviderAdapter):
    provider = PaymentProvider.STRIPE

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str,
        success_url: str,
        cancel_url: str,
        base_url: str = "https://api.stripe.com/v1",
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.success_url = success_url
        self.cancel_url = cancel_url
        self.http = ProviderHTTP(
            self.provider,
            base_url,
            headers={"Authorization": f"Bearer {secret_key}"},
            timeout=timeout,
            transport=transport,
        )

    def _require_key(self) -> None:
        if not self.secret_key:
            raise ProviderError("Stripe not configured", provider=self.provider.value)

    async def find_stored_payment_method(self, user: UserRow) -> str | None:
        if not user.stripe_customer_id:
            return None
        self._require_key()
        customer = await self.http.request("GET", f"customers/{user.stripe_customer_id}")
        settings = customer.get("invoice_settings") or {}
        method = settings.get("default_payment_method")
        if isinstance(method, dict):
            method = method.get("id")
        return method or None

    async def initialize_checkout(
        self, user: UserRow, price: PriceInfo, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        self._require_key()
        form: dict[str, str] = {
            "client_reference_id": reference,
            "success_url": self.success_url + "?session_id={CHECKOUT_SESSION_ID}",
            "cancel_url": self.cancel_url,
            "line_items[0][quantity]": "1",
            **_metadata_form("metadata", metadata),
        }
        if user.stripe_customer_id:
            form["customer"] = user.stripe_customer_id
        else:
            form["customer_email"] = user.email

        if price.provider_plan_code:
            form["mode"] = "subscription"
            form["line_items[0][price]"] = price.provider_plan_code
            form.update(_metadata_form("subscription_data[metadata]", metadata))
        else:
            form["mode"] = "payment"
            form["line_items[0][price_data][currency]"] = price.currency.value.lower()
            form["line_items[0][price_data][unit_amount]"] = str(price.amount)
            form["line_items[0][price_data][product_data][name]"] = price.label

        session = await self.http.request("POST", "checkout/sessions", form=form)
        checkout_url = session.get("url")
        if not checkout_url:
            raise ProviderError("Stripe did not return a checkout URL", provider=self.provider.value)

        logger.info("Stripe checkout created: user=%s session=%s", user.id, session.get("id"))
        return PaymentInitResult(mode=InitMode.PAYMENT, reference=reference, checkout_url=checkout_url)

    async def create_subscription(
        self, user: UserRow, price: PriceInfo, payment_method: str, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        self._require_key()
        if not price.provider_plan_code:
            raise ProviderError(
                f"Stripe price id not configured for {price.label}",
                provider=self.provider.value,
            )
        form = {
            "customer": user.stripe_customer_id,
            "items[0][price]": price.provider_plan_code,
            "default_payment_method": payment_method,
            **_metadata_form("metadata", metadata),
        }
        sub = await self.http.request("POST", "subscriptions", form=form)
        sub_id = sub.get("id")
        if not sub_id:
            raise ProviderError("Stripe did not return a subscription id", provider=self.provider.value)

        logger.info("Stripe subscription created: user=%s sub=%s", user.id, sub_id)
        return PaymentInitResult(
            mode=InitMode.SUBSCRIPTION,
            reference=reference,
            subscription_handle=sub_id,
            subscription_data={
                "status": sub.get("status"),
                "currentPeriodEnd": sub.get("current_period_end"),
            },
        )

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        verify_signature(raw_body, headers.get(SIGNATURE_HEADER), self.webhook_secret)
        try:
            event = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidWebhookPayload("Stripe webhook body is not JSON")
        if not isinstance(event, dict):
            raise InvalidWebhookPayload("Stripe webhook body is not an object")

        event_type = event.get("type", "")
        envelope = payload_object(event.get("data"), "Stripe event data")
        data = payload_object(envelope.get("object"), "Stripe event object")

        if event_type == "checkout.session.completed":
            return self._checkout_completed(data)
        if event_type == "invoice.paid":
            return self._invoice_paid(data)
        if event_type == "customer.subscription.deleted":
            if not data.get("id"):
                raise InvalidWebhookPayload("subscription.deleted without id")
            return WebhookEvent(
                kind=WebhookKind.SUBSCRIPTION_CANCELED,
                provider=self.provider,
                subscription_code=data["id"],
            )

        logger.debug("Unhandled Stripe event: %s", event_type)
        return None

    def _checkout_completed(self, data: dict[str, Any]) -> WebhookEvent | None:
        if data.get("mode") == "subscription":
            # The subscription's first invoice.paid carries the confirmation
            return None
        if data.get("payment_status") not in (None, "paid", "no_payment_required"):
            logger.info("Stripe checkout %s completed unpaid (%s)", data.get("id"), data.get("payment_status"))
            return None
        transaction_id = data.get("payment_intent") or data.get("id")
        if not transaction_id:
            raise InvalidWebhookPayload("checkout.session.completed without id")

        payment = event_from_metadata(
            data.get("metadata") or {},
            provider=self.provider,
            transaction_id=str(transaction_id),
            amount=payload_amount(data.get("amount_total"), "amount_total"),
            currency=_currency(data.get("currency")),
            paid_at=_from_timestamp(data.get("created")),
            reference_id=data.get("client_reference_id"),
            payment_method="card",
            customer_id=data.get("customer"),
        )
        return WebhookEvent(kind=WebhookKind.PAYMENT_CONFIRMED, provider=self.provider, payment=payment)

    def _invoice_paid(self, data: dict[str, Any]) -> WebhookEvent | None:
        if not data.get("id"):
            raise InvalidWebhookPayload("invoice.paid without id")
        metadata = self._invoice_metadata(data)
        if not metadata:
            logger.warning("Stripe invoice %s has no checkout metadata, ignoring", data["id"])
            return None

        transitions = payload_object(data.get("status_transitions"), "invoice status_transitions")
        paid_at = transitions.get("paid_at") or data.get("created")
        subscription = data.get("subscription")
        if isinstance(subscription, dict):
            subscription = subscription.get("id")

        payment = event_from_metadata(
            metadata,
            provider=self.provider,
            transaction_id=str(data["id"]),
            amount=payload_amount(data.get("amount_paid"), "amount_paid"),
            currency=_currency(data.get("currency")),
            paid_at=_from_timestamp(paid_at),
            subscription_code=subscription,
            reference_id=data.get("number"),
            payment_method="card",
            customer_id=data.get("customer"),
        )
        if payment.transaction_type != TransactionType.SUBSCRIPTION:
            raise InvalidWebhookPayload("invoice.paid for a non-subscription transaction")
        return WebhookEvent(kind=WebhookKind.PAYMENT_CONFIRMED, provider=self.provider, payment=payment)

    @staticmethod
    def _invoice_metadata(data: dict[str, Any]) -> dict[str, Any]:
        details = payload_object(data.get("subscription_details"), "invoice subscription_details")
        if details.get("metadata"):
            return details["metadata"]
        lines = payload_object(data.get("lines"), "invoice lines").get("data") or []
        if not isinstance(lines, list):
            raise InvalidWebhookPayload("invoice lines data is not a list")
        for line in lines:
            line = payload_object(line, "invoice line")
            if line.get("metadata"):
                return line["metadata"]
        return {}

    async def disable(self, subscription_id: str) -> None:
        self._require_key()
        sub = await self.http.request("DELETE", f"subscriptions/{subscription_id}")
        if sub.get("status") not in (None, "canceled", "incomplete_expired"):
            raise ProviderError(
                f"Stripe subscription {subscription_id} still {sub.get('status')}",
                provider=self.provider.value,
            )
        logger.info("Stripe subscription canceled: %s", subscription_id)
