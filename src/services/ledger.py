"""
CardPay Transaction Ledger
---
Append-mostly record of payments across Paystack, Stripe and manual entry.

The unique index on `transaction_id` is the correctness backstop for
at-least-once webhook delivery: a second insert of the same id fails at the
database, never silently overwrites.
"""
from __future__ import annotations

import logging
import secrets
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.subscription_tables import TransactionRow
from src.models.billing import PaymentProvider, TransactionStatus, TransactionType
from src.services.errors import DuplicateTransaction

logger = logging.getLogger(__name__)

_TYPE_CODES = {
    TransactionType.SUBSCRIPTION: "SUB",
    TransactionType.CARD_ORDER: "ORD",
}
_PROVIDER_CODES = {
    PaymentProvider.PAYSTACK: "PS",
    PaymentProvider.STRIPE: "ST",
    PaymentProvider.MANUAL: "MN",
}


def generate_reference_id(transaction_type: TransactionType, provider: PaymentProvider) -> str:
    """Human-traceable secondary id, e.g. SUB-PS-8F3A21C4."""
    type_code = _TYPE_CODES.get(transaction_type, "TXN")
    provider_code = _PROVIDER_CODES.get(provider, "OTH")
    return f"{type_code}-{provider_code}-{secrets.token_hex(4).upper()}"


class TransactionLedger:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def record(self, transaction: TransactionRow) -> TransactionRow:
        """Insert a ledger row.

        Must be the first write of its unit of work: on a duplicate
        `transaction_id` the whole session transaction is rolled back.
        """
        transaction_id = transaction.transaction_id
        self.session.add(transaction)
        try:
            await self.session.flush()
        except IntegrityError:
            await self.session.rollback()
            logger.info("Duplicate transaction id rejected: %s", transaction_id)
            raise DuplicateTransaction(f"Transaction {transaction_id} already recorded")
        return transaction

    async def find_by_transaction_id(self, transaction_id: str) -> Optional[TransactionRow]:
        result = await self.session.execute(
            select(TransactionRow).where(TransactionRow.transaction_id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def list_transactions(
        self,
        provider: PaymentProvider | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TransactionRow]:
        stmt = select(TransactionRow).order_by(TransactionRow.created_at.desc())
        if provider is not None:
            stmt = stmt.where(TransactionRow.payment_provider == provider)
        result = await self.session.execute(stmt.limit(limit).offset(offset))
        return list(result.scalars().all())

    async def aggregate(self) -> dict[str, Any]:
        """Revenue and health summary. Reporting only, off the consistency path."""
        success = TransactionRow.status == TransactionStatus.SUCCESS

        counts_rows = await self.session.execute(
            select(TransactionRow.status, func.count()).group_by(TransactionRow.status)
        )
        counts = {status: 0 for status in TransactionStatus}
        for status, count in counts_rows.all():
            counts[status] = count

        revenue_rows = await self.session.execute(
            select(TransactionRow.currency, func.sum(TransactionRow.amount))
            .where(success)
            .group_by(TransactionRow.currency)
        )
        total_revenue = {currency: int(total or 0) for currency, total in revenue_rows.all()}

        provider_rows = await self.session.execute(
            select(
                TransactionRow.payment_provider,
                TransactionRow.currency,
                func.sum(TransactionRow.amount),
                func.count(),
            )
            .where(success)
            .group_by(TransactionRow.payment_provider, TransactionRow.currency)
        )
        revenue_by_provider = [
            {"provider": provider.value, "currency": currency, "total": int(total or 0), "count": count}
            for provider, currency, total, count in provider_rows.all()
        ]

        month = func.strftime("%Y-%m", TransactionRow.paid_at)
        if self.session.get_bind().dialect.name == "postgresql":
            month = func.to_char(TransactionRow.paid_at, "YYYY-MM")
        month_rows = await self.session.execute(
            select(month.label("month"), TransactionRow.currency, func.sum(TransactionRow.amount))
            .where(success)
            .group_by("month", TransactionRow.currency)
            .order_by("month")
        )
        revenue_by_month = [
            {"month": m, "currency": currency, "total": int(total or 0)}
            for m, currency, total in month_rows.all()
        ]

        plan_rows = await self.session.execute(
            select(TransactionRow.plan, func.count())
            .where(success, TransactionRow.transaction_type == TransactionType.SUBSCRIPTION)
            .group_by(TransactionRow.plan)
        )
        subscriptions_by_plan = {
            plan.value: count for plan, count in plan_rows.all() if plan is not None
        }

        method_row = await self.session.execute(
            select(TransactionRow.payment_method, func.count().label("n"))
            .where(TransactionRow.payment_method.is_not(None))
            .group_by(TransactionRow.payment_method)
            .order_by(func.count().desc())
            .limit(1)
        )
        top_method = method_row.first()

        total = sum(counts.values())
        failed = counts[TransactionStatus.FAILED]
        return {
            "total_revenue": total_revenue,
            "successful_transactions": counts[TransactionStatus.SUCCESS],
            "failed_transactions": failed,
            "pending_transactions": counts[TransactionStatus.PENDING],
            "failure_rate": f"{(failed / total * 100) if total else 0:.2f}%",
            "revenue_by_provider": revenue_by_provider,
            "revenue_by_month": revenue_by_month,
            "subscriptions_by_plan": subscriptions_by_plan,
            "most_common_payment_method": top_method[0] if top_method else "N/A",
        }


def serialize_transaction(txn: TransactionRow) -> dict[str, Any]:
    return {
        "id": txn.id,
        "userId": txn.user_id,
        "transactionId": txn.transaction_id,
        "referenceId": txn.reference_id,
        "transactionType": txn.transaction_type.value,
        "paymentProvider": txn.payment_provider.value,
        "status": txn.status.value,
        "plan": txn.plan.value if txn.plan else None,
        "billingCycle": txn.billing_cycle.value if txn.billing_cycle else None,
        "amount": txn.amount,
        "currency": txn.currency,
        "subscriptionCode": txn.subscription_code,
        "paymentMethod": txn.payment_method,
        "paidAt": txn.paid_at.isoformat() if txn.paid_at else None,
        "expiresAt": txn.expires_at.isoformat() if txn.expires_at else None,
    }
