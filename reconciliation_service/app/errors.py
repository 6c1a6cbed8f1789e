"""Exception classes used across the reconciliation pipeline.

Each subclass maps to one class of failure and, at the HTTP edge, to one
response status:

- :class:`WebhookAuthError` - the notification cannot be trusted (401, or
  500 when our own secret is missing).
- :class:`PaymentFetchError` - the provider could not give us the payment
  (acknowledged with 200, flagged for manual review).
- :class:`IntegrityViolation` - amount or currency does not line up with
  what we quoted (400, logged at high severity).
"""

from decimal import Decimal
from typing import Optional


class ReconciliationError(Exception):
    """Base class for all errors raised by this service."""


class WebhookAuthError(ReconciliationError):
    """The webhook request could not be authenticated."""


class SignatureError(WebhookAuthError):
    """Signature header malformed, digest mismatch or timestamp outside the window."""


class WebhookConfigurationError(WebhookAuthError):
    """Verification cannot run: secret not configured or required headers absent."""

    def __init__(self, message: str, missing_secret: bool = False):
        super().__init__(message)
        self.missing_secret = missing_secret


class PaymentFetchError(ReconciliationError):
    """The payment could not be retrieved from the provider API."""

    def __init__(self, payment_id: str, message: str, attempts: int = 1):
        super().__init__(message)
        self.payment_id = payment_id
        self.attempts = attempts


class PaymentNotFoundError(PaymentFetchError):
    """The provider answered 404 for the payment id. Never retried."""


class IntegrityViolation(ReconciliationError):
    """Payment data does not match what the store expects."""


class AmountMismatchError(IntegrityViolation):
    """Paid amount is outside tolerance of the quote.

    ``expected`` is None when the quote is gone but the payment was already
    refused once for its amount.
    """

    def __init__(self, expected: Optional[Decimal], actual: Decimal):
        if expected is None:
            message = f"payment previously flagged for amount, got {actual}"
        else:
            message = f"expected {expected}, got {actual}"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class CurrencyMismatchError(IntegrityViolation):
    def __init__(self, expected: str, actual: Optional[str]):
        super().__init__(f"expected {expected}, got {actual}")
        self.expected = expected
        self.actual = actual
