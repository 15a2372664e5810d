"""
Paystack adapter (NGN)
---
- Hosted checkout via /transaction/initialize
- Direct subscription via /subscription when the customer has a reusable card authorization
- Webhooks signed with HMAC-SHA512 of the raw body (x-paystack-signature)
- Cancellation via /subscription/disable (needs the subscription's email token)
- Transaction lookup via /transaction/verify/{reference}, for payments whose webhook never arrived

See: https://paystack.com/docs/api/
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

import httpx

from src.db.user_tables import UserRow
from src.models.billing import Currency, PaymentProvider
from src.services.errors import InvalidWebhookPayload, ProviderError, SignatureInvalid
from src.services.providers.base import (
    InitMode, PaymentEvent, PaymentInitResult, ProviderAdapter, ProviderHTTP, WebhookEvent, WebhookKind,
    event_from_metadata, payload_amount, payload_object,
)
from src.services.tier_catalog import PriceInfo

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"

# Events that end a recurring subscription at Paystack's side
CANCEL_EVENTS = {"subscription.disable", "subscription.not_renew"}


def compute_signature(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha512).hexdigest()


def verify_signature(payload: bytes, signature: str | None, secret: str) -> None:
    """Full HMAC check; a present-but-unverified header is not enough."""
    if not secret:
        raise SignatureInvalid("Paystack secret key not configured")
    if not signature:
        raise SignatureInvalid("Missing Paystack signature")
    if not hmac.compare_digest(compute_signature(payload, secret), signature):
        raise SignatureInvalid("Invalid Paystack signature")


def _parse_paid_at(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable Paystack paid_at: %s", value)
    return datetime.now(timezone.utc)


def _parse_currency(value: Any) -> Currency:
    try:
        return Currency(str(value).upper())
    except ValueError:
        raise InvalidWebhookPayload(f"Unsupported currency: {value}")


@dataclass
class VerifiedTransaction:
    reference: str
    status: str
    amount: int
    currency: str
    paid_at: Optional[str] = None
    payment: Optional[PaymentEvent] = None

    def as_payload(self) -> dict[str, Any]:
        return {
            "reference": self.reference,
            "status": self.status,
            "amount": self.amount,
            "currency": self.currency,
            "paidAt": self.paid_at,
        }


class PaystackAdapter(ProviderAdapter):
    provider = PaymentProvider.PAYSTACK

    def __init__(
        self,
        secret_key: str,
        callback_url: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 8.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.secret_key = secret_key
        self.callback_url = callback_url
        self.http = ProviderHTTP(
            self.provider,
            base_url,
            headers={"Authorization": f"Bearer {secret_key}", "Content-Type": "application/json"},
            timeout=timeout,
            transport=transport,
        )

    def _require_key(self) -> None:
        if not self.secret_key:
            raise ProviderError("Paystack not configured", provider=self.provider.value)

    @staticmethod
    def _data(body: dict[str, Any]) -> dict[str, Any]:
        # Paystack wraps every response as {"status": bool, "message": str, "data": {...}}
        if not body.get("status"):
            raise ProviderError(
                f"Paystack rejected the request: {body.get('message', 'unknown error')}",
                provider=PaymentProvider.PAYSTACK.value,
            )
        data = body.get("data")
        if not isinstance(data, dict):
            raise ProviderError("Paystack response has no data", provider=PaymentProvider.PAYSTACK.value)
        return data

    async def find_stored_payment_method(self, user: UserRow) -> str | None:
        if not user.paystack_customer_id:
            return None
        self._require_key()
        data = self._data(await self.http.request("GET", f"customer/{user.paystack_customer_id}"))
        for auth in data.get("authorizations") or []:
            if auth.get("reusable", True) and auth.get("authorization_code"):
                return auth["authorization_code"]
        return None

    async def initialize_checkout(
        self, user: UserRow, price: PriceInfo, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        self._require_key()
        payload: dict[str, Any] = {
            "email": user.email,
            "amount": price.amount,
            "currency": price.currency.value,
            "reference": reference,
            "callback_url": self.callback_url,
            "metadata": metadata,
        }
        if price.provider_plan_code:
            payload["plan"] = price.provider_plan_code

        data = self._data(await self.http.request("POST", "transaction/initialize", json_body=payload))
        checkout_url = data.get("authorization_url")
        if not checkout_url:
            raise ProviderError("Paystack did not return a checkout URL", provider=self.provider.value)

        logger.info("Paystack checkout initialized: user=%s ref=%s", user.id, reference)
        return PaymentInitResult(
            mode=InitMode.PAYMENT,
            reference=data.get("reference", reference),
            checkout_url=checkout_url,
        )

    async def create_subscription(
        self, user: UserRow, price: PriceInfo, payment_method: str, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        self._require_key()
        if not price.provider_plan_code:
            raise ProviderError(
                f"Paystack plan code not configured for {price.label}",
                provider=self.provider.value,
            )
        payload = {
            "customer": user.paystack_customer_id,
            "plan": price.provider_plan_code,
            "authorization": payment_method,
            "metadata": metadata,
        }
        data = self._data(await self.http.request("POST", "subscription", json_body=payload))
        code = data.get("subscription_code")
        if not code:
            raise ProviderError("Paystack did not return a subscription code", provider=self.provider.value)

        logger.info("Paystack subscription created: user=%s code=%s", user.id, code)
        return PaymentInitResult(
            mode=InitMode.SUBSCRIPTION,
            reference=reference,
            subscription_handle=code,
            subscription_data={
                "status": data.get("status"),
                "nextPaymentDate": data.get("next_payment_date"),
            },
        )

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        verify_signature(raw_body, headers.get(SIGNATURE_HEADER), self.secret_key)
        try:
            envelope = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise InvalidWebhookPayload("Paystack webhook body is not JSON")
        if not isinstance(envelope, dict):
            raise InvalidWebhookPayload("Paystack webhook body is not an object")

        event_type = envelope.get("event", "")
        data = payload_object(envelope.get("data"), "Paystack event data")

        if event_type == "charge.success":
            return self._charge_success(data)

        if event_type in CANCEL_EVENTS:
            code = data.get("subscription_code")
            if not code:
                raise InvalidWebhookPayload(f"{event_type} without subscription_code")
            return WebhookEvent(
                kind=WebhookKind.SUBSCRIPTION_CANCELED,
                provider=self.provider,
                subscription_code=code,
            )

        logger.debug("Unhandled Paystack event: %s", event_type)
        return None

    def _charge_success(self, data: dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(
            kind=WebhookKind.PAYMENT_CONFIRMED, provider=self.provider, payment=self._payment_from(data),
        )

    def _payment_from(self, data: dict[str, Any]) -> PaymentEvent:
        """Normalize a Paystack transaction object, from a webhook or a verify lookup."""
        if data.get("id") is None:
            raise InvalidWebhookPayload("charge.success without transaction id")
        metadata = data.get("metadata") or {}
        if isinstance(metadata, str):
            # Paystack echoes metadata as a JSON string when it was sent as one
            try:
                metadata = json.loads(metadata)
            except json.JSONDecodeError:
                raise InvalidWebhookPayload("charge.success metadata is not JSON")

        subscription = data.get("subscription") or {}
        customer = payload_object(data.get("customer"), "Paystack customer")
        return event_from_metadata(
            metadata,
            provider=self.provider,
            transaction_id=str(data["id"]),
            amount=payload_amount(data.get("amount")),
            currency=_parse_currency(data.get("currency") or "NGN"),
            paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
            subscription_code=subscription.get("subscription_code") if isinstance(subscription, dict) else None,
            reference_id=data.get("reference"),
            payment_method=data.get("channel"),
            customer_id=customer.get("customer_code"),
        )

    async def verify_transaction(self, reference: str) -> VerifiedTransaction:
        """Look a transaction up by reference.

        A successful transaction comes back with its normalized payment so
        the caller can confirm it; any other status is only reported.
        """
        self._require_key()
        data = self._data(await self.http.request("GET", f"transaction/verify/{reference}"))
        status = str(data.get("status") or "unknown")
        try:
            amount = payload_amount(data.get("amount"))
            payment = self._payment_from(data) if status == "success" else None
        except InvalidWebhookPayload as e:
            raise ProviderError(
                f"Paystack transaction {reference} cannot be applied: {e.message}",
                provider=self.provider.value,
            )
        logger.info("Paystack transaction verified: ref=%s status=%s", reference, status)
        return VerifiedTransaction(
            reference=data.get("reference") or reference,
            status=status,
            amount=amount,
            currency=str(data.get("currency") or "NGN").upper(),
            paid_at=data.get("paid_at") or data.get("paidAt"),
            payment=payment,
        )

    async def disable(self, subscription_id: str) -> None:
        self._require_key()
        sub = self._data(await self.http.request("GET", f"subscription/{subscription_id}"))
        token = sub.get("email_token")
        if not token:
            raise ProviderError(
                f"Paystack subscription {subscription_id} has no email token",
                provider=self.provider.value,
            )
        body = await self.http.request(
            "POST", "subscription/disable", json_body={"code": subscription_id, "token": token},
        )
        if not body.get("status"):
            raise ProviderError(
                f"Paystack refused to disable {subscription_id}: {body.get('message', 'unknown error')}",
                provider=self.provider.value,
            )
        logger.info("Paystack subscription disabled: %s", subscription_id)
