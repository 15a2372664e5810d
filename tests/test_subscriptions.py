"""Tests for the subscription state manager — initialize, confirm, cancel, change."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs

import pytest
import pytest_asyncio
from sqlalchemy import func, select, update
from sqlalchemy.orm.exc import StaleDataError

from src.db.subscription_tables import TierRow, TransactionRow
from src.db.user_tables import UserRow
from src.models.billing import (
    BillingCycle, Currency, PaymentProvider, Plan, TierStatus, TransactionType,
)
from src.services.errors import (
    ConcurrentUpdate, InvalidPlan, NoActiveSubscription, ProviderError, UserNotFound,
)
from src.services.providers.base import InitMode, PaymentEvent
from src.services.subscriptions import SubscriptionStateManager

from tests.conftest import TIER_PRICES, get_test_session

PAID_AT = datetime.now(timezone.utc).replace(microsecond=0) - timedelta(days=1)

PAYSTACK_INIT_OK = {
    "status": True,
    "message": "Authorization URL created",
    "data": {"authorization_url": "https://checkout.paystack.com/REF_1", "reference": "REF_1"},
}


def _event(
    transaction_id: str = "TX_1",
    user_id: str = "U1",
    plan: Plan = Plan.PREMIUM,
    cycle: BillingCycle = BillingCycle.MONTHLY,
    duration: int = 30,
    amount: int = 5000,
    provider: PaymentProvider = PaymentProvider.PAYSTACK,
    subscription_code: str | None = None,
    **kwargs,
) -> PaymentEvent:
    return PaymentEvent(
        provider=provider,
        transaction_id=transaction_id,
        user_id=user_id,
        amount=amount,
        currency=Currency.NGN if provider != PaymentProvider.STRIPE else Currency.USD,
        paid_at=PAID_AT,
        plan=plan,
        billing_cycle=cycle,
        duration_days=duration,
        subscription_code=subscription_code,
        **kwargs,
    )


async def _user(user_id: str = "U1") -> UserRow:
    async with get_test_session() as s:
        return await s.get(UserRow, user_id)


async def _ledger_count(transaction_id: str | None = None) -> int:
    async with get_test_session() as s:
        stmt = select(func.count(TransactionRow.id))
        if transaction_id:
            stmt = stmt.where(TransactionRow.transaction_id == transaction_id)
        return (await s.execute(stmt)).scalar()


@pytest_asyncio.fixture
async def manager(session, providers, notifier):
    return SubscriptionStateManager(session, providers, notifier=notifier)


def _mock_paystack_disable(gateway, code: str = "SUB_1", disable_status: int = 200):
    gateway.on("GET", f"/subscription/{code}", json={"status": True, "data": {"email_token": "tok_1"}})
    gateway.on(
        "POST", "/subscription/disable", status=disable_status,
        json={"status": disable_status == 200, "message": "Subscription disabled successfully"},
    )


# ── InitializePayment ─────────────────────────────────────────────────────────

class TestInitializePayment:
    @pytest.mark.asyncio
    async def test_hosted_checkout_without_stored_card(self, manager, gateway):
        gateway.on("POST", "/transaction/initialize", json=PAYSTACK_INIT_OK)

        result = await manager.initialize_payment("U1", "premium", "monthly", PaymentProvider.PAYSTACK)

        assert result.mode == InitMode.PAYMENT
        assert result.checkout_url == "https://checkout.paystack.com/REF_1"
        assert result.reference == "REF_1"
        body = json.loads(gateway.called("POST", "/transaction/initialize")[0].content)
        assert body["amount"] == 5000
        assert body["currency"] == "NGN"
        assert body["email"] == "u1@example.com"
        assert body["metadata"] == {
            "userId": "U1",
            "plan": "premium",
            "billingCycle": "monthly",
            "durationInDays": "30",
            "transactionType": "subscription",
        }

    @pytest.mark.asyncio
    async def test_does_not_grant_entitlement(self, manager, gateway):
        gateway.on("POST", "/transaction/initialize", json=PAYSTACK_INIT_OK)
        await manager.initialize_payment("U1", "premium", "monthly", PaymentProvider.PAYSTACK)

        user = await _user()
        assert user.tier_status == TierStatus.INACTIVE
        assert user.tier_transaction_id is None
        assert await _ledger_count() == 0

    @pytest.mark.asyncio
    async def test_direct_subscription_with_stored_card(self, manager, gateway):
        async with get_test_session() as s:
            await s.execute(update(UserRow).where(UserRow.id == "U1").values(paystack_customer_id="CUS_1"))
            await s.execute(
                update(TierRow).where(TierRow.name == Plan.PREMIUM).values(monthly_paystack_plan_code="PLN_1")
            )
            await s.commit()
        gateway.on("GET", "/customer/CUS_1", json={
            "status": True,
            "data": {"authorizations": [{"authorization_code": "AUTH_1", "reusable": True}]},
        })
        gateway.on("POST", "/subscription", json={
            "status": True,
            "data": {"subscription_code": "SUB_1", "status": "active", "next_payment_date": None},
        })

        result = await manager.initialize_payment("U1", Plan.PREMIUM, BillingCycle.MONTHLY, PaymentProvider.PAYSTACK)

        assert result.mode == InitMode.SUBSCRIPTION
        assert result.subscription_handle == "SUB_1"
        assert result.as_payload()["subscriptionData"]["subscriptionCode"] == "SUB_1"
        body = json.loads(gateway.called("POST", "/subscription")[0].content)
        assert body["plan"] == "PLN_1"
        assert body["authorization"] == "AUTH_1"
        assert not gateway.called("POST", "/transaction/initialize")

    @pytest.mark.asyncio
    async def test_unknown_plan_rejected_before_provider_call(self, manager, gateway):
        with pytest.raises(InvalidPlan):
            await manager.initialize_payment("U1", "gold", "monthly", PaymentProvider.PAYSTACK)
        with pytest.raises(InvalidPlan):
            await manager.initialize_payment("U1", "premium", "weekly", PaymentProvider.PAYSTACK)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_unknown_user(self, manager, gateway):
        with pytest.raises(UserNotFound):
            await manager.initialize_payment("nobody", "premium", "monthly", PaymentProvider.PAYSTACK)
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_provider_server_error_is_retryable(self, manager, gateway):
        gateway.on("POST", "/transaction/initialize", status=502, json={"message": "upstream down"})
        with pytest.raises(ProviderError) as exc:
            await manager.initialize_payment("U1", "premium", "monthly", PaymentProvider.PAYSTACK)
        assert exc.value.retryable is True
        assert exc.value.http_status == 503

    @pytest.mark.asyncio
    async def test_provider_rejection_is_permanent(self, manager, gateway):
        gateway.on("POST", "/transaction/initialize", status=400, json={"status": False, "message": "Invalid key"})
        with pytest.raises(ProviderError) as exc:
            await manager.initialize_payment("U1", "premium", "monthly", PaymentProvider.PAYSTACK)
        assert exc.value.retryable is False
        assert "Invalid key" in exc.value.message

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan", ["basic", "premium", "business"])
    @pytest.mark.parametrize("cycle", ["monthly", "yearly"])
    async def test_paystack_charges_exact_local_price(self, manager, gateway, plan, cycle):
        gateway.on("POST", "/transaction/initialize", json=PAYSTACK_INIT_OK)
        await manager.initialize_payment("U1", plan, cycle, PaymentProvider.PAYSTACK)
        body = json.loads(gateway.called("POST", "/transaction/initialize")[0].content)
        assert body["amount"] == TIER_PRICES[plan][cycle][0]
        assert body["currency"] == "NGN"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("plan", ["basic", "premium", "business"])
    @pytest.mark.parametrize("cycle", ["monthly", "yearly"])
    async def test_stripe_charges_exact_foreign_price(self, manager, gateway, plan, cycle):
        gateway.on("POST", "/v1/checkout/sessions", json={"id": "cs_1", "url": "https://checkout.stripe.com/c/cs_1"})
        await manager.initialize_payment("U1", plan, cycle, PaymentProvider.STRIPE)
        form = parse_qs(gateway.called("POST", "/v1/checkout/sessions")[0].content.decode())
        assert form["mode"] == ["payment"]
        assert form["line_items[0][price_data][unit_amount]"] == [str(TIER_PRICES[plan][cycle][1])]
        assert form["line_items[0][price_data][currency]"] == ["usd"]
        assert form["metadata[userId]"] == ["U1"]

    @pytest.mark.asyncio
    async def test_missing_price_is_not_substituted(self, manager, gateway):
        async with get_test_session() as s:
            await s.execute(update(TierRow).where(TierRow.name == Plan.BASIC).values(monthly_price_foreign=0))
            await s.commit()
        with pytest.raises(InvalidPlan):
            await manager.initialize_payment("U1", "basic", "monthly", PaymentProvider.STRIPE)
        assert gateway.calls == []


# ── ConfirmPayment ────────────────────────────────────────────────────────────

class TestConfirmPayment:
    @pytest.mark.asyncio
    async def test_premium_monthly_scenario(self, manager, gateway):
        gateway.on("POST", "/transaction/initialize", json=PAYSTACK_INIT_OK)
        init = await manager.initialize_payment("U1", "premium", "monthly", PaymentProvider.PAYSTACK)
        assert init.mode == InitMode.PAYMENT
        assert init.reference == "REF_1"

        result = await manager.confirm_payment(_event())
        assert result.duplicate is False

        user = await _user()
        assert user.tier_plan == Plan.PREMIUM
        assert user.tier_status == TierStatus.ACTIVE
        assert user.tier_transaction_id == "TX_1"
        assert user.tier_expires_at == PAID_AT + timedelta(days=30)

        async with get_test_session() as s:
            txn = (await s.execute(
                select(TransactionRow).where(TransactionRow.transaction_id == "TX_1")
            )).scalar_one()
        assert txn.status.value == "success"
        assert txn.amount == 5000
        assert txn.expires_at == PAID_AT + timedelta(days=30)

        again = await manager.confirm_payment(_event())
        assert again.duplicate is True
        after = await _user()
        assert after.tier_transaction_id == "TX_1"
        assert after.tier_expires_at == user.tier_expires_at
        assert after.tier_updated_at == user.tier_updated_at
        assert await _ledger_count("TX_1") == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("deliveries", [1, 2, 5])
    async def test_repeated_delivery_applies_once(self, manager, notifier, deliveries):
        results = [await manager.confirm_payment(_event()) for _ in range(deliveries)]

        assert [r.duplicate for r in results] == [False] + [True] * (deliveries - 1)
        assert await _ledger_count() == 1
        user = await _user()
        assert user.tier_expires_at == PAID_AT + timedelta(days=30)
        assert notifier.payment_confirmed.await_count == 1

    @pytest.mark.asyncio
    async def test_unknown_user_records_nothing(self, manager):
        with pytest.raises(UserNotFound):
            await manager.confirm_payment(_event(user_id="ghost"))
        assert await _ledger_count() == 0

    @pytest.mark.asyncio
    async def test_lost_insert_race_is_duplicate(self, manager):
        async with get_test_session() as s:
            s.add(TransactionRow(
                user_id="U1", transaction_id="TX_1", reference_id="SUB-PS-RACE0001",
                payment_provider=PaymentProvider.PAYSTACK, plan=Plan.PREMIUM,
                billing_cycle=BillingCycle.MONTHLY, amount=5000, currency="NGN", paid_at=PAID_AT,
            ))
            await s.commit()

        # Make the pre-check miss, as if the other delivery committed in between
        real_find = manager.ledger.find_by_transaction_id
        lookups = []

        async def miss_first(transaction_id):
            lookups.append(transaction_id)
            return None if len(lookups) == 1 else await real_find(transaction_id)

        manager.ledger.find_by_transaction_id = miss_first

        result = await manager.confirm_payment(_event())
        assert result.duplicate is True
        assert result.transaction.reference_id == "SUB-PS-RACE0001"
        assert await _ledger_count() == 1
        # The losing delivery rolled back before touching tier state
        assert (await _user()).tier_status == TierStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_recurring_subscription_sets_active_ref(self, manager):
        await manager.confirm_payment(
            _event(provider=PaymentProvider.STRIPE, subscription_code="sub_1", customer_id="cus_1")
        )
        user = await _user()
        assert user.active_provider == PaymentProvider.STRIPE
        assert user.active_subscription_id == "sub_1"
        assert user.active_expiry_date == user.tier_expires_at
        assert user.tier_subscription_code == "sub_1"
        assert user.stripe_customer_id == "cus_1"

    @pytest.mark.asyncio
    async def test_one_off_payment_has_no_active_ref(self, manager):
        await manager.confirm_payment(_event())
        user = await _user()
        assert user.tier_status == TierStatus.ACTIVE
        assert user.active_provider is None
        assert user.active_subscription_id is None

    @pytest.mark.asyncio
    async def test_card_order_leaves_tier_state_alone(self, manager, notifier):
        await manager.confirm_payment(PaymentEvent(
            provider=PaymentProvider.PAYSTACK,
            transaction_id="ORD_1",
            user_id="U1",
            amount=250000,
            currency=Currency.NGN,
            paid_at=PAID_AT,
            transaction_type=TransactionType.CARD_ORDER,
            extra={"cardId": "card-9", "quantity": "2"},
        ))
        user = await _user()
        assert user.tier_status == TierStatus.INACTIVE
        async with get_test_session() as s:
            txn = (await s.execute(select(TransactionRow))).scalar_one()
        assert txn.transaction_type == TransactionType.CARD_ORDER
        assert txn.plan is None
        assert txn.expires_at is None
        assert txn.extra == {"cardId": "card-9", "quantity": "2"}
        notifier.card_order_confirmed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_undo_payment(self, manager, notifier):
        notifier.payment_confirmed.side_effect = RuntimeError("mail down")
        result = await manager.confirm_payment(_event())
        assert result.duplicate is False
        assert (await _user()).tier_status == TierStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_notification_goes_to_background_when_available(self, session, providers, notifier):
        background = MagicMock()
        manager = SubscriptionStateManager(session, providers, notifier=notifier, background=background)

        await manager.confirm_payment(_event())

        background.add_task.assert_called_once()
        fn, *args = background.add_task.call_args.args
        assert fn is notifier.payment_confirmed
        assert args[0] == "u1@example.com"
        notifier.payment_confirmed.assert_not_awaited()


# ── CancelSubscription ────────────────────────────────────────────────────────

class TestCancelSubscription:
    @pytest.mark.asyncio
    async def test_disables_remote_then_clears(self, manager, gateway, notifier):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        _mock_paystack_disable(gateway)

        result = await manager.cancel_subscription("U1")

        assert result == {"message": "Subscription cancelled successfully", "subscriptionId": "SUB_1"}
        assert json.loads(gateway.called("POST", "/subscription/disable")[0].content) == {
            "code": "SUB_1", "token": "tok_1",
        }
        user = await _user()
        assert user.tier_status == TierStatus.INACTIVE
        assert user.tier_transaction_id is None
        assert user.tier_subscription_code is None
        assert user.tier_expires_at is None
        assert user.active_provider is None
        assert user.active_subscription_id is None
        assert user.active_expiry_date is None
        notifier.subscription_cancelled.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failed_disable_leaves_state_active(self, manager, gateway):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        _mock_paystack_disable(gateway, disable_status=400)

        with pytest.raises(ProviderError):
            await manager.cancel_subscription("U1")

        user = await _user()
        assert user.tier_status == TierStatus.ACTIVE
        assert user.tier_transaction_id == "TX_1"
        assert user.active_subscription_id == "SUB_1"

    @pytest.mark.asyncio
    async def test_timeout_is_reported_not_retried(self, manager, gateway):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        gateway.fail("GET", "/subscription/SUB_1")

        with pytest.raises(ProviderError) as exc:
            await manager.cancel_subscription("U1")

        assert exc.value.retryable is True
        assert len(gateway.called("GET", "/subscription/SUB_1")) == 1
        assert (await _user()).tier_status == TierStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_without_subscription(self, manager, gateway):
        with pytest.raises(NoActiveSubscription):
            await manager.cancel_subscription("U2")
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_explicit_subscription_id_wins(self, manager, gateway):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        _mock_paystack_disable(gateway, code="SUB_OTHER")

        result = await manager.cancel_subscription("U1", "SUB_OTHER", provider=PaymentProvider.PAYSTACK)

        assert result["subscriptionId"] == "SUB_OTHER"
        assert gateway.called("GET", "/subscription/SUB_OTHER")
        assert not gateway.called("GET", "/subscription/SUB_1")

    @pytest.mark.asyncio
    async def test_stripe_cancel(self, manager, gateway):
        await manager.confirm_payment(_event(provider=PaymentProvider.STRIPE, subscription_code="sub_9"))
        gateway.on("DELETE", "/v1/subscriptions/sub_9", json={"id": "sub_9", "status": "canceled"})

        await manager.cancel_subscription("U1")

        assert (await _user()).tier_status == TierStatus.INACTIVE


# ── ChangeSubscription ────────────────────────────────────────────────────────

class TestChangeSubscription:
    @pytest.mark.asyncio
    async def test_cancels_old_and_leaves_user_inactive_on_new_plan(self, manager, gateway):
        await manager.confirm_payment(_event(plan=Plan.BASIC, amount=2000, subscription_code="SUB_OLD"))
        _mock_paystack_disable(gateway, code="SUB_OLD")
        gateway.on("POST", "/transaction/initialize", json=PAYSTACK_INIT_OK)

        result = await manager.change_subscription("U1", "premium", "monthly", PaymentProvider.PAYSTACK)

        assert gateway.called("POST", "/subscription/disable")
        user = await _user()
        assert user.tier_plan == Plan.PREMIUM
        assert user.tier_status == TierStatus.INACTIVE
        assert user.tier_transaction_id is None
        assert user.tier_subscription_code is None
        assert user.tier_expires_at is None
        assert user.active_subscription_id is None

        body = json.loads(gateway.called("POST", "/transaction/initialize")[0].content)
        assert body["metadata"]["plan"] == "premium"
        assert body["metadata"]["billingCycle"] == "monthly"
        assert body["amount"] == 5000
        assert result["nextAction"] == "complete_payment"
        assert result["data"]["checkoutUrl"] == "https://checkout.paystack.com/REF_1"

    @pytest.mark.asyncio
    async def test_failed_disable_aborts_change(self, manager, gateway):
        await manager.confirm_payment(_event(plan=Plan.BASIC, amount=2000, subscription_code="SUB_OLD"))
        _mock_paystack_disable(gateway, code="SUB_OLD", disable_status=500)

        with pytest.raises(ProviderError):
            await manager.change_subscription("U1", "premium", "monthly", PaymentProvider.PAYSTACK)

        user = await _user()
        assert user.tier_plan == Plan.BASIC
        assert user.tier_status == TierStatus.ACTIVE
        assert not gateway.called("POST", "/transaction/initialize")

    @pytest.mark.asyncio
    async def test_invalid_plan_cancels_nothing(self, manager, gateway):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        with pytest.raises(InvalidPlan):
            await manager.change_subscription("U1", "platinum", "monthly", PaymentProvider.PAYSTACK)
        assert gateway.calls == []
        assert (await _user()).tier_status == TierStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_from_inactive_user_just_initializes(self, manager, gateway):
        gateway.on("POST", "/transaction/initialize", json=PAYSTACK_INIT_OK)
        result = await manager.change_subscription("U2", "business", "yearly", PaymentProvider.PAYSTACK)
        assert result["data"]["mode"] == "payment"
        assert not gateway.called("POST", "/subscription/disable")
        assert (await _user("U2")).tier_plan == Plan.BUSINESS


# ── Remote cancellation, manual revocation, status ───────────────────────────

class TestRemoteCancellation:
    @pytest.mark.asyncio
    async def test_clears_matching_user(self, manager, notifier):
        await manager.confirm_payment(_event(provider=PaymentProvider.STRIPE, subscription_code="sub_1"))
        assert await manager.handle_remote_cancellation(PaymentProvider.STRIPE, "sub_1") is True
        assert (await _user()).tier_status == TierStatus.INACTIVE
        notifier.subscription_cancelled.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unknown_code_ignored(self, manager):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        assert await manager.handle_remote_cancellation(PaymentProvider.PAYSTACK, "SUB_X") is False
        assert (await _user()).tier_status == TierStatus.ACTIVE


class TestRevokeManual:
    @pytest.mark.asyncio
    async def test_revokes_manual_grant(self, manager, providers):
        event = providers[PaymentProvider.MANUAL].build_event(
            "U1", 5000, Plan.PREMIUM, BillingCycle.MONTHLY, "bank_transfer",
        )
        await manager.confirm_payment(event)

        result = await manager.revoke_manual_subscription("U1")

        assert result["transactionId"] == event.transaction_id
        assert (await _user()).tier_status == TierStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_refuses_gateway_grant(self, manager):
        await manager.confirm_payment(_event())
        with pytest.raises(NoActiveSubscription):
            await manager.revoke_manual_subscription("U1")
        assert (await _user()).tier_status == TierStatus.ACTIVE


class TestStatus:
    @pytest.mark.asyncio
    async def test_initial_state(self, manager):
        status = await manager.get_status("U1")
        assert status["plan"] == "basic"
        assert status["status"] == "inactive"
        assert status["entitled"] is False
        assert status["activeSubscription"] is None

    @pytest.mark.asyncio
    async def test_active_state(self, manager):
        await manager.confirm_payment(_event(subscription_code="SUB_1"))
        status = await manager.get_status("U1")
        assert status["entitled"] is True
        assert status["transactionId"] == "TX_1"
        assert status["activeSubscription"]["provider"] == "paystack"


class TestConcurrentUpdates:
    @pytest.mark.asyncio
    async def test_retries_lost_version_race(self, manager):
        operation = AsyncMock(side_effect=[StaleDataError("stale"), "ok"])
        assert await manager._with_retry("test", operation) == "ok"
        assert operation.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self, manager):
        operation = AsyncMock(side_effect=StaleDataError("stale"))
        with pytest.raises(ConcurrentUpdate):
            await manager._with_retry("test", operation)
        assert operation.await_count == 3
