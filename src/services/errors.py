"""Billing error taxonomy.

Services raise these; the API layer maps `http_status` and `code` onto the
response envelope. Nothing here knows about HTTP frameworks.
"""
from __future__ import annotations


class BillingError(Exception):
    code = "billing_error"
    http_status = 400

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidPlan(BillingError):
    code = "invalid_plan"
    http_status = 400


class UserNotFound(BillingError):
    code = "user_not_found"
    http_status = 404


class NoActiveSubscription(BillingError):
    code = "no_active_subscription"
    http_status = 400


class DuplicateTransaction(BillingError):
    """Ledger already holds this transaction id. Absorbed as idempotent success."""
    code = "duplicate_transaction"
    http_status = 200


class SignatureInvalid(BillingError):
    code = "signature_invalid"
    http_status = 401


class InvalidWebhookPayload(BillingError):
    code = "invalid_webhook_payload"
    http_status = 400


class ProviderError(BillingError):
    """A payment provider call failed.

    retryable: transport failure, timeout or 5xx. Permanent: 4xx business
    rejection or a response body we could not use.
    """
    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.retryable = retryable
        self.status_code = status_code

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 503 if self.retryable else 502


class InconsistentState(BillingError):
    code = "inconsistent_state"
    http_status = 409


class ConcurrentUpdate(BillingError):
    code = "concurrent_update"
    http_status = 409
