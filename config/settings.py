"""App settings — loaded from environment."""
from __future__ import annotations

import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # API
    API_HOST = os.getenv("API_HOST", "0.0.0.0")
    API_PORT = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///cardpay.db")

    # Admin API key (operator endpoints: manual payments, ledger, catalog)
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY", "")

    # CORS origins (comma-separated, or * for dev)
    CORS_ORIGINS = [
        o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",")
    ]

    # Frontend (checkout success / cancel redirects)
    FRONTEND_BASE_URL = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000")

    # Paystack (NGN, local currency)
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY", "")
    PAYSTACK_BASE_URL = os.getenv("PAYSTACK_BASE_URL", "https://api.paystack.co")

    # Stripe (USD, foreign currency)
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    STRIPE_BASE_URL = os.getenv("STRIPE_BASE_URL", "https://api.stripe.com/v1")

    # Outbound provider calls never block a worker longer than this
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "8"))

    # Mail service (transactional email collaborator)
    MAIL_SERVICE_URL = os.getenv("MAIL_SERVICE_URL", "")
    MAIL_SERVICE_TOKEN = os.getenv("MAIL_SERVICE_TOKEN", "")

    # Reconciliation sweep
    RECONCILE_INTERVAL_MINUTES = int(os.getenv("RECONCILE_INTERVAL_MINUTES", "60"))
    RENEWAL_GRACE_HOURS = int(os.getenv("RENEWAL_GRACE_HOURS", "24"))

    # Observability
    SENTRY_DSN = os.getenv("SENTRY_DSN", "")
    SENTRY_ENVIRONMENT = os.getenv("SENTRY_ENVIRONMENT", "development")
    SENTRY_TRACES_SAMPLE_RATE = float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Logging
    LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
