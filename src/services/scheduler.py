"""Scheduled reconciliation sweep using APScheduler."""
from __future__ import annotations

import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.db.engine import async_session
from src.services.reconciliation import Reconciler
from config.settings import settings

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()


async def scheduled_reconcile():
    """Expire lapsed subscriptions and repair orphaned ledger rows."""
    logger.info("Scheduled reconciliation starting...")
    try:
        async with async_session() as session:
            summary = await Reconciler(session, grace_hours=settings.RENEWAL_GRACE_HOURS).run()
        logger.info(f"Scheduled reconciliation complete: {summary}")
    except Exception:
        logger.exception("Scheduled reconciliation failed")


def start_scheduler(interval_minutes: int = 60):
    """Start the background scheduler for periodic reconciliation."""
    scheduler.add_job(
        scheduled_reconcile,
        trigger=IntervalTrigger(minutes=interval_minutes),
        id="periodic_reconcile",
        name="Periodic tier-state reconciliation",
        replace_existing=True,
    )
    scheduler.start()
    logger.info(f"Scheduler started — reconciling every {interval_minutes}m")


def stop_scheduler():
    """Gracefully shut down the scheduler."""
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
