"""
CardPay Subscription State Manager
---
The only writer of a user's tier state (`tier_*` columns) and active
subscription reference (`active_*` columns). Everything that turns a
provider outcome into entitlement goes through here:

- initialize_payment / initialize_card_order: start a checkout, never grant
- confirm_payment: ledger write + activation, exactly once per transaction id
- cancel_subscription: remote disable first, then local clear
- change_subscription: cancel old, leave user inactive on the new plan, start payment
- handle_remote_cancellation: provider-side cancellations from webhooks
- revoke_manual_subscription: operator revocation of a manually granted plan

State writes are serialized per user with a row lock plus the user row's
version counter; a lost race is retried a bounded number of times.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional, Protocol

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.db.subscription_tables import TransactionRow
from src.db.user_tables import UserRow
from src.models.billing import (
    BillingCycle, Currency, PROVIDER_CURRENCY, PaymentProvider, Plan, TransactionStatus, TransactionType,
)
from src.services.errors import (
    ConcurrentUpdate, DuplicateTransaction, InvalidPlan, NoActiveSubscription, ProviderError, UserNotFound,
)
from src.services.ledger import TransactionLedger, generate_reference_id
from src.services.notifications import MailNotifier
from src.services.providers.base import (
    PaymentEvent, PaymentInitResult, ProviderAdapter, checkout_metadata,
)
from src.services.tier_catalog import PriceInfo, TierCatalog, parse_billing_cycle, parse_plan

logger = logging.getLogger(__name__)

MAX_STATE_ATTEMPTS = 3


class TaskSink(Protocol):
    """Anything with FastAPI BackgroundTasks' add_task signature."""

    def add_task(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        ...


@dataclass
class ConfirmResult:
    transaction: Optional[TransactionRow]
    duplicate: bool = False


class SubscriptionStateManager:
    def __init__(
        self,
        session: AsyncSession,
        providers: dict[PaymentProvider, ProviderAdapter],
        notifier: MailNotifier | None = None,
        background: TaskSink | None = None,
    ):
        self.session = session
        self.providers = providers
        self.notifier = notifier
        self.background = background
        self.ledger = TransactionLedger(session)
        self.catalog = TierCatalog(session)

    # ── Helpers ───────────────────────────────────────────────────────────

    def _adapter(self, provider: PaymentProvider) -> ProviderAdapter:
        adapter = self.providers.get(provider)
        if adapter is None:
            raise ProviderError(f"Payment provider not configured: {provider.value}", provider=provider.value)
        return adapter

    async def _load_user(self, user_id: str, lock: bool = False) -> UserRow:
        stmt = select(UserRow).where(UserRow.id == user_id)
        if lock:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt.execution_options(populate_existing=True))
        user = result.scalar_one_or_none()
        if user is None:
            raise UserNotFound(f"User not found: {user_id}")
        return user

    async def _with_retry(self, label: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """Run a local state write, retrying when another writer bumped the row version."""
        for attempt in range(1, MAX_STATE_ATTEMPTS + 1):
            try:
                return await operation()
            except StaleDataError:
                await self.session.rollback()
                logger.warning("%s lost a concurrent update (attempt %d/%d)", label, attempt, MAX_STATE_ATTEMPTS)
        raise ConcurrentUpdate(f"{label} kept conflicting with concurrent updates; retry the request")

    async def _notify(self, kind: str, *args: Any) -> None:
        if self.notifier is None:
            return
        send = getattr(self.notifier, kind)
        if self.background is not None:
            self.background.add_task(send, *args)
            return
        try:
            await send(*args)
        except Exception:
            logger.exception("Notification %s failed", kind)

    # ── Payment initialization ────────────────────────────────────────────

    async def initialize_payment(
        self,
        user_id: str,
        plan: Plan | str,
        billing_cycle: BillingCycle | str,
        provider: PaymentProvider,
    ) -> PaymentInitResult:
        """Start paying for a plan. Entitlement is granted only by confirm_payment."""
        plan = parse_plan(plan)
        cycle = parse_billing_cycle(billing_cycle)
        adapter = self._adapter(provider)
        currency = PROVIDER_CURRENCY.get(provider, Currency.NGN)
        price = await self.catalog.get_price(plan, cycle, currency, provider=provider)
        user = await self._load_user(user_id)

        reference = generate_reference_id(TransactionType.SUBSCRIPTION, provider)
        metadata = checkout_metadata(user, price, TransactionType.SUBSCRIPTION)

        payment_method = await adapter.find_stored_payment_method(user)
        if payment_method:
            result = await adapter.create_subscription(user, price, payment_method, metadata, reference)
        else:
            result = await adapter.initialize_checkout(user, price, metadata, reference)

        logger.info(
            "Payment initialized: user=%s plan=%s/%s provider=%s mode=%s ref=%s",
            user.id, plan.value, cycle.value, provider.value, result.mode.value, result.reference,
        )
        return result

    async def initialize_card_order(
        self,
        user_id: str,
        amount: int,
        order_metadata: dict[str, Any],
        provider: PaymentProvider = PaymentProvider.PAYSTACK,
    ) -> PaymentInitResult:
        """Hosted checkout for a one-off physical card order."""
        if amount <= 0:
            raise InvalidPlan("Amount must be greater than zero")
        adapter = self._adapter(provider)
        user = await self._load_user(user_id)

        price = PriceInfo(currency=PROVIDER_CURRENCY.get(provider, Currency.NGN), amount=amount)
        reference = generate_reference_id(TransactionType.CARD_ORDER, provider)
        metadata = {
            "userId": user.id,
            "transactionType": TransactionType.CARD_ORDER.value,
            **{key: str(value) for key, value in order_metadata.items() if value is not None},
        }
        result = await adapter.initialize_checkout(user, price, metadata, reference)
        logger.info("Card order checkout initialized: user=%s amount=%d ref=%s", user.id, amount, result.reference)
        return result

    # ── Confirmation ──────────────────────────────────────────────────────

    async def confirm_payment(self, event: PaymentEvent) -> ConfirmResult:
        """Apply a confirmed payment exactly once.

        Redeliveries of the same transaction id (sequential or concurrent)
        return duplicate=True without touching tier state.
        """
        result = await self._with_retry(
            f"confirm_payment({event.transaction_id})", lambda: self._apply_payment(event),
        )
        if not result.duplicate:
            await self._schedule_confirmation_email(result.transaction)
        return result

    async def _apply_payment(self, event: PaymentEvent) -> ConfirmResult:
        existing = await self.ledger.find_by_transaction_id(event.transaction_id)
        if existing is not None:
            logger.info("Transaction %s already processed, skipping", event.transaction_id)
            return ConfirmResult(transaction=existing, duplicate=True)

        try:
            user = await self._load_user(event.user_id, lock=True)
        except UserNotFound:
            # Money has moved; operators must follow up
            logger.error(
                "Confirmed payment for unknown user: user=%s txn=%s provider=%s amount=%d %s",
                event.user_id, event.transaction_id, event.provider.value, event.amount, event.currency.value,
            )
            raise

        is_subscription = event.transaction_type == TransactionType.SUBSCRIPTION
        expires_at: datetime | None = None
        if is_subscription and event.duration_days:
            expires_at = event.paid_at + timedelta(days=event.duration_days)

        txn = TransactionRow(
            user_id=user.id,
            customer_email=user.email,
            transaction_id=event.transaction_id,
            reference_id=event.reference_id or generate_reference_id(event.transaction_type, event.provider),
            transaction_type=event.transaction_type,
            payment_provider=event.provider,
            status=TransactionStatus.SUCCESS,
            plan=event.plan if is_subscription else None,
            billing_cycle=event.billing_cycle if is_subscription else None,
            amount=event.amount,
            currency=event.currency.value,
            subscription_code=event.subscription_code,
            payment_method=event.payment_method,
            paid_at=event.paid_at,
            expires_at=expires_at,
            extra=event.extra or None,
        )
        try:
            await self.ledger.record(txn)
        except DuplicateTransaction:
            # Lost the insert race to a concurrent delivery
            existing = await self.ledger.find_by_transaction_id(event.transaction_id)
            return ConfirmResult(transaction=existing, duplicate=True)

        if is_subscription:
            user.activate_tier(
                plan=event.plan,
                transaction_id=event.transaction_id,
                expires_at=expires_at,
                subscription_code=event.subscription_code,
                provider=event.provider,
            )
        self._remember_customer(user, event)
        await self.session.commit()

        logger.info(
            "Payment confirmed: user=%s txn=%s type=%s plan=%s provider=%s expires=%s",
            user.id, event.transaction_id, event.transaction_type.value,
            event.plan.value if event.plan else "-", event.provider.value,
            expires_at.isoformat() if expires_at else "-",
        )
        return ConfirmResult(transaction=txn)

    @staticmethod
    def _remember_customer(user: UserRow, event: PaymentEvent) -> None:
        if not event.customer_id:
            return
        if event.provider == PaymentProvider.PAYSTACK and user.paystack_customer_id != event.customer_id:
            user.paystack_customer_id = event.customer_id
        elif event.provider == PaymentProvider.STRIPE and user.stripe_customer_id != event.customer_id:
            user.stripe_customer_id = event.customer_id

    async def _schedule_confirmation_email(self, txn: TransactionRow | None) -> None:
        if txn is None:
            return
        details = {
            "transactionId": txn.transaction_id,
            "referenceId": txn.reference_id,
            "amount": txn.amount,
            "currency": txn.currency,
            "provider": txn.payment_provider.value,
        }
        if txn.transaction_type == TransactionType.CARD_ORDER:
            details.update(txn.extra or {})
            await self._notify("card_order_confirmed", txn.customer_email, details)
            return
        details.update({
            "plan": txn.plan.value if txn.plan else None,
            "billingCycle": txn.billing_cycle.value if txn.billing_cycle else None,
            "expiresAt": txn.expires_at.isoformat() if txn.expires_at else None,
        })
        await self._notify("payment_confirmed", txn.customer_email, details)

    # ── Cancellation ──────────────────────────────────────────────────────

    async def cancel_subscription(
        self,
        user_id: str,
        subscription_id: str | None = None,
        provider: PaymentProvider | None = None,
    ) -> dict[str, Any]:
        """Disable the remote subscription, then clear local state.

        The remote call comes first: if it fails nothing local changes, so
        the user is never shown as cancelled while still being billed.
        """
        user = await self._load_user(user_id)
        if subscription_id:
            target, target_provider = subscription_id, provider or user.active_provider
        else:
            target, target_provider = user.live_subscription_id, user.active_provider or provider
        if not target or target_provider is None:
            raise NoActiveSubscription("No active subscription found for user")

        await self._adapter(target_provider).disable(target)

        email = await self._with_retry(f"cancel_subscription({user_id})", lambda: self._clear_state(user_id))
        logger.info("Subscription cancelled: user=%s sub=%s provider=%s", user_id, target, target_provider.value)
        await self._notify(
            "subscription_cancelled",
            email,
            {"subscriptionId": target, "provider": target_provider.value},
        )
        return {"message": "Subscription cancelled successfully", "subscriptionId": target}

    async def _clear_state(self, user_id: str, plan: Plan | None = None) -> str:
        user = await self._load_user(user_id, lock=True)
        if plan is not None:
            user.tier_plan = plan
        user.clear_tier_state()
        await self.session.commit()
        return user.email

    async def change_subscription(
        self,
        user_id: str,
        new_plan: Plan | str,
        billing_cycle: BillingCycle | str,
        provider: PaymentProvider,
    ) -> dict[str, Any]:
        """Cancel the current plan and start payment for a new one.

        Between the two steps the user sits on the new plan, inactive, with
        every identifier cleared. Payment completion re-activates them.
        """
        plan = parse_plan(new_plan)
        cycle = parse_billing_cycle(billing_cycle)
        # Fail on an unpriced plan before anything is cancelled
        await self.catalog.get_price(plan, cycle, PROVIDER_CURRENCY.get(provider, Currency.NGN))
        user = await self._load_user(user_id)

        old_subscription = user.live_subscription_id
        if old_subscription and user.active_provider is not None:
            await self._adapter(user.active_provider).disable(old_subscription)
            logger.info("Old subscription disabled for plan change: user=%s sub=%s", user_id, old_subscription)

        await self._with_retry(
            f"change_subscription({user_id})", lambda: self._clear_state(user_id, plan=plan),
        )
        result = await self.initialize_payment(user_id, plan, cycle, provider)
        return {
            "message": "Subscription change initiated. Complete payment to activate the new plan.",
            "nextAction": "complete_payment",
            "data": result.as_payload(),
        }

    async def handle_remote_cancellation(self, provider: PaymentProvider, subscription_code: str) -> bool:
        """A provider reports a subscription ended on its side."""
        result = await self.session.execute(
            select(UserRow.id).where(
                or_(
                    UserRow.active_subscription_id == subscription_code,
                    UserRow.tier_subscription_code == subscription_code,
                )
            )
        )
        user_id = result.scalars().first()
        if user_id is None:
            logger.info("Remote cancellation for unknown or already-cleared subscription %s (%s)",
                        subscription_code, provider.value)
            return False

        email = await self._with_retry(
            f"handle_remote_cancellation({subscription_code})", lambda: self._clear_state(user_id),
        )
        logger.info("Subscription cancelled remotely: user=%s sub=%s provider=%s",
                    user_id, subscription_code, provider.value)
        await self._notify(
            "subscription_cancelled",
            email,
            {"subscriptionId": subscription_code, "provider": provider.value},
        )
        return True

    async def revoke_manual_subscription(self, user_id: str) -> dict[str, Any]:
        user = await self._load_user(user_id)
        if not user.tier_transaction_id:
            raise NoActiveSubscription("No active subscription found for user")
        txn = await self.ledger.find_by_transaction_id(user.tier_transaction_id)
        if txn is None or txn.payment_provider != PaymentProvider.MANUAL:
            raise NoActiveSubscription("User has no manually granted subscription")

        transaction_id = user.tier_transaction_id
        await self._with_retry(f"revoke_manual_subscription({user_id})", lambda: self._clear_state(user_id))
        logger.info("Manual subscription revoked: user=%s txn=%s", user_id, transaction_id)
        return {"message": "Manual subscription cancelled successfully", "transactionId": transaction_id}

    # ── Read model ────────────────────────────────────────────────────────

    async def get_status(self, user_id: str) -> dict[str, Any]:
        user = await self._load_user(user_id)
        active_ref = None
        if user.active_subscription_id:
            active_ref = {
                "provider": user.active_provider.value if user.active_provider else None,
                "subscriptionId": user.active_subscription_id,
                "expiryDate": user.active_expiry_date.isoformat() if user.active_expiry_date else None,
            }
        return {
            "userId": user.id,
            "plan": user.tier_plan.value,
            "status": user.tier_status.value,
            "entitled": user.is_entitled(),
            "transactionId": user.tier_transaction_id,
            "subscriptionCode": user.tier_subscription_code,
            "expiresAt": user.tier_expires_at.isoformat() if user.tier_expires_at else None,
            "activeSubscription": active_ref,
        }
