"""Provider registry, keyed by PaymentProvider."""
from __future__ import annotations

from config.settings import Settings
from src.models.billing import PaymentProvider
from src.services.providers.base import ProviderAdapter
from src.services.providers.manual import ManualAdapter
from src.services.providers.paystack import PaystackAdapter
from src.services.providers.stripe import StripeAdapter


def build_provider_registry(settings: Settings) -> dict[PaymentProvider, ProviderAdapter]:
    frontend = settings.FRONTEND_BASE_URL.rstrip("/")
    return {
        PaymentProvider.PAYSTACK: PaystackAdapter(
            secret_key=settings.PAYSTACK_SECRET_KEY,
            callback_url=f"{frontend}/payment/callback",
            base_url=settings.PAYSTACK_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        ),
        PaymentProvider.STRIPE: StripeAdapter(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            success_url=f"{frontend}/payment/success",
            cancel_url=f"{frontend}/pricing",
            base_url=settings.STRIPE_BASE_URL,
            timeout=settings.PROVIDER_TIMEOUT_SECONDS,
        ),
        PaymentProvider.MANUAL: ManualAdapter(),
    }
