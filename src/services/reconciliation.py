"""
CardPay Reconciliation Sweep
---
Periodic pass over tier state that no webhook will fix on its own:

- Expiry: active users past `tier_expires_at` become inactive. Recurring
  gateway subscriptions get a grace window for a late renewal webhook.
- Repair: a successful, unexpired subscription payment that is newer than
  the user's last tier-state write but is not the one justifying their
  state gets replayed onto the user.

Each user is committed separately; a user that loses a concurrent-update
race is skipped and picked up by the next sweep.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from src.db.subscription_tables import TransactionRow
from src.db.tables import utcnow
from src.db.user_tables import UserRow
from src.models.billing import TierStatus, TransactionStatus, TransactionType
from src.services.errors import InconsistentState

logger = logging.getLogger(__name__)


class Reconciler:
    def __init__(self, session: AsyncSession, grace_hours: int = 24):
        self.session = session
        self.grace = timedelta(hours=grace_hours)

    async def _lock_user(self, user_id: str) -> Optional[UserRow]:
        result = await self.session.execute(
            select(UserRow)
            .where(UserRow.id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _commit_user(self, user_id: str, action: str) -> bool:
        # Rollback expires every loaded row; log only plain values from here on
        try:
            await self.session.commit()
        except StaleDataError:
            await self.session.rollback()
            logger.warning("Skipped %s for user %s: concurrent update", action, user_id)
            return False
        return True

    async def expire_lapsed_subscriptions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        result = await self.session.execute(
            select(UserRow.id)
            .where(
                UserRow.tier_status == TierStatus.ACTIVE,
                UserRow.tier_expires_at.is_not(None),
                UserRow.tier_expires_at <= now,
            )
            .order_by(UserRow.id)
        )
        expired = 0
        for user_id in result.scalars().all():
            user = await self._lock_user(user_id)
            if user is None or user.tier_status != TierStatus.ACTIVE or user.tier_expires_at is None:
                continue
            grace = self.grace if user.active_subscription_id else timedelta(0)
            if user.tier_expires_at + grace > now:
                continue
            plan, lapsed_at = user.tier_plan.value, user.tier_expires_at
            user.clear_tier_state()
            if await self._commit_user(user_id, "expiry"):
                expired += 1
                logger.info("Subscription expired: user=%s plan=%s expired_at=%s", user_id, plan, lapsed_at.isoformat())
        return expired

    async def repair_orphaned_transactions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        result = await self.session.execute(
            select(
                TransactionRow.user_id,
                TransactionRow.transaction_id,
                TransactionRow.plan,
                TransactionRow.expires_at,
                TransactionRow.subscription_code,
                TransactionRow.payment_provider,
                TransactionRow.created_at,
            )
            .where(
                TransactionRow.status == TransactionStatus.SUCCESS,
                TransactionRow.transaction_type == TransactionType.SUBSCRIPTION,
                TransactionRow.user_id.is_not(None),
                or_(TransactionRow.expires_at.is_(None), TransactionRow.expires_at > now),
            )
            .order_by(TransactionRow.paid_at.desc())
        )
        latest: dict[str, Any] = {}
        for row in result.all():
            latest.setdefault(row.user_id, row)

        repaired = 0
        for user_id, txn in latest.items():
            user = await self._lock_user(user_id)
            if user is None or user.tier_transaction_id == txn.transaction_id:
                continue
            if user.tier_updated_at is not None and txn.created_at <= user.tier_updated_at:
                continue

            err = InconsistentState(
                f"Ledger transaction {txn.transaction_id} is not reflected in tier state of user {user_id}"
            )
            logger.warning("%s: %s, replaying", err.code, err.message)
            user.activate_tier(
                plan=txn.plan,
                transaction_id=txn.transaction_id,
                expires_at=txn.expires_at,
                subscription_code=txn.subscription_code,
                provider=txn.payment_provider,
            )
            if await self._commit_user(user_id, "repair"):
                repaired += 1
        return repaired

    async def run(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or utcnow()
        repaired = await self.repair_orphaned_transactions(now)
        expired = await self.expire_lapsed_subscriptions(now)
        logger.info("Reconciliation sweep complete: %d repaired, %d expired", repaired, expired)
        return {"repaired": repaired, "expired": expired}
