"""Client for the payment provider's REST API.

Webhook bodies are only used to learn *which* payment changed; the amount,
currency and status are always re-read from here.
"""

import time
from typing import Callable, Optional

import requests
import structlog

from .config import Settings
from .errors import PaymentFetchError, PaymentNotFoundError
from .schemas import ProviderPayment

logger = structlog.get_logger(__name__)


class PaymentsClient:
    def __init__(
        self,
        base_url: str,
        access_token: str,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout
        self.session = session or requests.Session()
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: Settings) -> "PaymentsClient":
        return cls(
            settings.mp_api_base_url,
            settings.mp_access_token,
            max_attempts=settings.payment_fetch_attempts,
            backoff_seconds=settings.payment_fetch_backoff_seconds,
            timeout=settings.payment_fetch_timeout_seconds,
        )

    def _backoff(self, attempt_index: int) -> None:
        # attempt_index is 0-based; delay grows 1s, 2s, 4s, ...
        delay = self.backoff_seconds * (2 ** attempt_index)
        logger.warning("payment_fetch_retry_scheduled", attempt=attempt_index + 1, delay_seconds=delay)
        self._sleep(delay)

    def get_payment(self, payment_id: str) -> ProviderPayment:
        """Fetch the canonical payment record.

        Any transport failure and any 5xx answer is retried with
        exponential backoff. A 404 raises :class:`PaymentNotFoundError`
        immediately; any other 4xx raises :class:`PaymentFetchError` without
        retrying.
        """
        url = f"{self.base_url}/v1/payments/{payment_id}"
        headers = {"Authorization": f"Bearer {self.access_token}"}
        last_error = "unknown error"

        for attempt in range(self.max_attempts):
            try:
                response = self.session.get(url, headers=headers, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                last_error = f"transport error: {e}"
            else:
                if response.status_code == 404:
                    raise PaymentNotFoundError(payment_id, "payment not found", attempts=attempt + 1)
                if response.status_code >= 500:
                    last_error = f"provider error: HTTP {response.status_code}"
                elif response.status_code >= 400:
                    raise PaymentFetchError(
                        payment_id, f"provider refused request: HTTP {response.status_code}", attempts=attempt + 1
                    )
                else:
                    try:
                        return ProviderPayment.model_validate(response.json())
                    except ValueError as e:
                        # Covers both invalid JSON and a payload missing required fields.
                        raise PaymentFetchError(payment_id, f"unreadable payment payload: {e}", attempts=attempt + 1)

            if attempt < self.max_attempts - 1:
                self._backoff(attempt)

        raise PaymentFetchError(payment_id, last_error, attempts=self.max_attempts)
