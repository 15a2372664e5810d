"""Startup validation — catch misconfigurations before the app serves traffic."""
from __future__ import annotations

import logging
import sys

from config.settings import settings

logger = logging.getLogger(__name__)


def validate_settings() -> list[str]:
    """Validate configuration. Returns list of warnings (empty = all good).

    Raises SystemExit for critical misconfigurations in production.
    """
    warnings: list[str] = []
    is_prod = settings.DATABASE_URL and "sqlite" not in settings.DATABASE_URL

    # Critical: operator endpoints grant entitlement without payment
    if is_prod and len(settings.ADMIN_API_KEY) < 16:
        logger.critical("ADMIN_API_KEY is missing or too short for production.")
        sys.exit(1)

    # Critical: CORS should not be * in production
    if is_prod and "*" in settings.CORS_ORIGINS:
        warnings.append("CORS_ORIGINS is set to * — restrict in production")

    if not settings.PAYSTACK_SECRET_KEY:
        warnings.append("PAYSTACK_SECRET_KEY not set — NGN payments and Paystack webhooks disabled")

    if not settings.STRIPE_SECRET_KEY:
        warnings.append("STRIPE_SECRET_KEY not set — USD payments disabled")
    if settings.STRIPE_SECRET_KEY and not settings.STRIPE_WEBHOOK_SECRET:
        warnings.append("STRIPE_WEBHOOK_SECRET not set — every Stripe webhook will be rejected")

    if not settings.MAIL_SERVICE_URL:
        warnings.append("MAIL_SERVICE_URL not set — billing emails are logged, not sent")

    if settings.PROVIDER_TIMEOUT_SECONDS <= 0 or settings.PROVIDER_TIMEOUT_SECONDS > 30:
        warnings.append(
            f"PROVIDER_TIMEOUT_SECONDS={settings.PROVIDER_TIMEOUT_SECONDS} — keep provider calls bounded (1-30s)"
        )

    for w in warnings:
        logger.warning("⚠️  %s", w)

    if not warnings:
        logger.info("✅ All startup checks passed")

    return warnings
