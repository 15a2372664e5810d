"""Manual payments: bank transfers and cash recorded by an operator.

No remote provider exists, so there is no checkout, no webhook and nothing
to disable. The confirmation event is built synchronously from the
operator's request.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping

from src.db.user_tables import UserRow
from src.models.billing import (
    DEFAULT_DURATION_DAYS, BillingCycle, Currency, PaymentProvider, Plan, TransactionType,
)
from src.services.errors import InvalidPlan, ProviderError, SignatureInvalid
from src.services.ledger import generate_reference_id
from src.services.providers.base import PaymentEvent, PaymentInitResult, ProviderAdapter, WebhookEvent
from src.services.tier_catalog import PriceInfo

logger = logging.getLogger(__name__)


class ManualAdapter(ProviderAdapter):
    provider = PaymentProvider.MANUAL

    def build_event(
        self,
        user_id: str,
        amount: int,
        plan: Plan,
        billing_cycle: BillingCycle,
        payment_method: str,
        currency: Currency = Currency.NGN,
        duration_days: int | None = None,
        paid_at: datetime | None = None,
    ) -> PaymentEvent:
        if amount <= 0:
            raise InvalidPlan("Amount must be greater than zero")
        if duration_days is not None and duration_days <= 0:
            raise InvalidPlan("durationInDays must be greater than zero")

        transaction_id = generate_reference_id(TransactionType.SUBSCRIPTION, self.provider)
        return PaymentEvent(
            provider=self.provider,
            transaction_id=transaction_id,
            user_id=user_id,
            amount=amount,
            currency=currency,
            paid_at=paid_at or datetime.now(timezone.utc),
            transaction_type=TransactionType.SUBSCRIPTION,
            plan=plan,
            billing_cycle=billing_cycle,
            duration_days=duration_days or DEFAULT_DURATION_DAYS[billing_cycle],
            reference_id=transaction_id,
            payment_method=payment_method,
        )

    async def initialize_checkout(
        self, user: UserRow, price: PriceInfo, metadata: dict[str, str], reference: str,
    ) -> PaymentInitResult:
        raise ProviderError(
            "Manual payments are recorded by an operator, not checked out",
            provider=self.provider.value,
        )

    def parse_webhook(self, raw_body: bytes, headers: Mapping[str, str]) -> WebhookEvent | None:
        raise SignatureInvalid("Manual payments have no webhook")

    async def disable(self, subscription_id: str) -> None:
        logger.debug("Manual subscription %s has nothing to disable remotely", subscription_id)
