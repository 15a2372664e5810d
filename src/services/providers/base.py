"""Provider adapter interface and the common event shapes.

Every gateway is reached through `ProviderAdapter`; the state manager is
written once against it.
"""
from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional

import httpx

from src.db.user_tables import UserRow
from src.models.billing import (
    BillingCycle, Currency, PaymentProvider, Plan, TransactionType,
)
from src.services.errors import InvalidWebhookPayload, ProviderError
from src.services.tier_catalog import PriceInfo

logger = logging.getLogger(__name__)


class InitMode(str, Enum):
    PAYMENT = "payment"            # hosted checkout, user completes it
    SUBSCRIPTION = "subscription"  # created server-side on a stored payment method


@dataclass
class PaymentInitResult:
    mode: InitMode
    reference: str
    checkout_url: Optional[str] = None
    subscription_handle: Optional[str] = None
    subscription_data: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        if self.mode == InitMode.PAYMENT:
            return {"mode": self.mode.value, "checkoutUrl": self.checkout_url, "reference": self.reference}
        return {
            "mode": self.mode.value,
            "reference": self.reference,
            "subscriptionData": {"subscriptionCode": self.subscription_handle, **self.subscription_data},
        }


@dataclass
class PaymentEvent:
    """A confirmed payment, normalized across providers."""
    provider: PaymentProvider
    transaction_id: str
    user_id: str
    amount: int
    currency: Currency
    paid_at: datetime
    transaction_type: TransactionType = TransactionType.SUBSCRIPTION
    plan: Optional[Plan] = None
    billing_cycle: Optional[BillingCycle] = None
    duration_days: Optional[int] = None
    subscription_code: Optional[str] = None
    reference_id: Optional[str] = None
    payment_method: Optional[str] = None
    customer_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict)


class WebhookKind(str, Enum):
    PAYMENT_CONFIRMED = "payment_confirmed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"


@dataclass
class WebhookEvent:
    kind: WebhookKind
    provider: PaymentProvider
    payment: Optional[PaymentEvent] = None
    subscription_code: Optional[str] = None


def checkout_metadata(user: UserRow, price: PriceInfo, transaction_type: TransactionType) -> dict[str, str]:
    """Fields that must come back on the webhook so confirmation needs no lookup."""
    return {
        "userId": user.id,
        "plan": price.plan.value,
        "billingCycle": price.billing_cycle.value,
        "durationInDays": str(price.duration_days),
        "transactionType": transaction_type.value,
    }


def payload_object(value: Any, what: str) -> dict[str, Any]:
    """A nested object of a signed payload; absent reads as empty."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidWebhookPayload(f"{what} is not an object")
    return value


def payload_amount(value: Any, what: str = "amount") -> int:
    if value is None or value == "":
        return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        raise InvalidWebhookPayload(f"{what} is not a number: {value!r}")


def event_from_metadata(
    metadata: Mapping[str, Any],
    *,
    provider: PaymentProvider,
    transaction_id: str,
    amount: int,
    currency: Currency,
    paid_at: datetime,
    **extra_fields: Any,
) -> PaymentEvent:
    """Build a PaymentEvent from round-tripped checkout metadata."""
    if not isinstance(metadata, Mapping):
        raise InvalidWebhookPayload("Webhook metadata is not an object")
    user_id = metadata.get("userId")
    if not user_id:
        raise InvalidWebhookPayload("Webhook metadata is missing userId")
    try:
        transaction_type = TransactionType(metadata.get("transactionType") or TransactionType.SUBSCRIPTION.value)
        plan = billing_cycle = duration = None
        if transaction_type == TransactionType.SUBSCRIPTION:
            plan = Plan(str(metadata["plan"]).lower())
            billing_cycle = BillingCycle(str(metadata["billingCycle"]).lower())
            duration = int(metadata["durationInDays"])
    except (KeyError, ValueError, TypeError) as e:
        raise InvalidWebhookPayload(f"Webhook metadata is incomplete: {e}")

    order_fields = {
        k: v for k, v in metadata.items()
        if k not in ("userId", "plan", "billingCycle", "durationInDays", "transactionType")
    }
    return PaymentEvent(
        provider=provider,
        transaction_id=transaction_id,
        user_id=str(user_id),
        amount=amount,
        currency=currency,
        paid_at=paid_at,
        transaction_type=transaction_type,
        plan=plan,
        billing_cycle=billing_cycle,
        duration_days=duration,
        extra=order_fields,
        **extra_fields,
    )


class ProviderHTTP:
    """Thin httpx wrapper that classifies provider failures.

    No retries here: cancellation calls are not always idempotent at the
    provider, so retrying is the caller's explicit decision.
    """

    def __init__(
        self,
        provider: PaymentProvider,
        base_url: str,
        headers: dict[str, str],
        timeout: float,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.headers = headers
        self.timeout = timeout
        self._transport = transport

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        form: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=self.headers, json=json_body, data=form)
        except httpx.TransportError as e:
            logger.warning("%s %s %s transport failure: %s", self.provider.value, method, path, e)
            raise ProviderError(
                f"{self.provider.value} unreachable: {e.__class__.__name__}",
                provider=self.provider.value,
                retryable=True,
            )

        if resp.status_code >= 500:
            logger.error("%s %s %s -> %s", self.provider.value, method, path, resp.status_code)
            raise ProviderError(
                f"{self.provider.value} server error ({resp.status_code})",
                provider=self.provider.value,
                retryable=True,
                status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            logger.warning("%s %s %s rejected %s: %s", self.provider.value, method, path, resp.status_code, resp.text[:500])
            raise ProviderError(
                f"{self.provider.value} rejected the request: {_error_message(resp)}",
                provider=self.provider.value,
                retryable=False,
                status_code=resp.status_code,
            )

        try:
            body = resp.json()
        except (json.JSONDecodeError, ValueError):
            raise ProviderError(
                f"{self.provider.value} returned a non-JSON body",
                provider=self.provider.value,
                status_code=resp.status_code,
            )
        if not isinstance(body, dict):
            raise ProviderError(
                f"{self.provider.value} returned an unexpected body",
                provider=self.provider.value,
                status_code=resp.status_code,
            )
        return body


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, dict):
            return str(err.get("message", err))
        return str(body.get("message") or err or body)
    return str(body)


class ProviderAdapter(ABC):
    provider: PaymentProvider

    async def find_stored_payment_method(self, user: UserRow) -> str | None:
        return None

    @abstractmethod
    async def initialize_checkout(
        self, user: UserRow, price: PriceInfo, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        ...

    async def create_subscription(
        self, user: UserRow, price: PriceInfo, payment_method: str, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        raise ProviderError(
            f"{self.provider.value} cannot create subscriptions directly",
            provider=self.provider.value,
        )

    @abstractmethod
    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        """Verify authenticity, then normalize. None = acknowledged but ignored."""

    @abstractmethod
    async def disable(self, subscription_id: str) -> None:
        ...
