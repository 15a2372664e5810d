"""Shared FastAPI dependencies for the billing routes."""
from __future__ import annotations

from functools import lru_cache

from fastapi import BackgroundTasks, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from src.db.engine import get_session
from src.models.billing import PaymentProvider
from src.services.notifications import MailNotifier
from src.services.providers.base import ProviderAdapter
from src.services.providers.registry import build_provider_registry
from src.services.subscriptions import SubscriptionStateManager


@lru_cache(maxsize=1)
def get_providers() -> dict[PaymentProvider, ProviderAdapter]:
    return build_provider_registry(settings)


@lru_cache(maxsize=1)
def get_notifier() -> MailNotifier:
    return MailNotifier(
        service_url=settings.MAIL_SERVICE_URL,
        token=settings.MAIL_SERVICE_TOKEN,
        timeout=settings.PROVIDER_TIMEOUT_SECONDS,
    )


def get_state_manager(
    background: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    providers: dict[PaymentProvider, ProviderAdapter] = Depends(get_providers),
    notifier: MailNotifier = Depends(get_notifier),
) -> SubscriptionStateManager:
    return SubscriptionStateManager(session, providers, notifier=notifier, background=background)
