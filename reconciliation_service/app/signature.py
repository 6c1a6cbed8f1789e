"""Authenticates webhook notifications from the payment provider.

The provider signs ``"{x-request-id}.{raw body}"`` with HMAC-SHA256 and sends
``x-signature: timestamp=<unix seconds>,signature=<hex digest>``. The digest
must be computed over the exact bytes received, never over a re-serialised
body.
"""

import hashlib
import hmac
import time
from typing import Callable, Dict, Mapping, Optional

import structlog

from .errors import SignatureError, WebhookConfigurationError

logger = structlog.get_logger(__name__)


def parse_signature_header(header: str) -> Dict[str, str]:
    """Split ``key=value`` pairs separated by commas."""
    parts = {}
    for chunk in header.split(","):
        key, sep, value = chunk.partition("=")
        if not sep:
            continue
        parts[key.strip()] = value.strip()
    return parts


def compute_signature(secret: str, request_id: str, raw_body: bytes) -> str:
    message = request_id.encode("utf-8") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class SignatureVerifier:
    def __init__(
        self,
        secret: Optional[str],
        max_age_seconds: int = 600,
        allow_unsigned: bool = False,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.max_age_seconds = max_age_seconds
        self.allow_unsigned = allow_unsigned
        self._clock = clock

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        """Return True when the request is authentic and fresh.

        Raises:
            WebhookConfigurationError: the secret or a required header is missing.
            SignatureError: the header is malformed, the digest does not match,
                or the timestamp is outside the replay window.
        """
        if self.allow_unsigned:
            logger.warning("webhook_signature_check_skipped", reason="allow_unsigned enabled")
            return True

        if not self.secret:
            logger.error("webhook_secret_not_configured")
            raise WebhookConfigurationError("webhook secret not configured", missing_secret=True)

        signature_header = headers.get("x-signature")
        request_id = headers.get("x-request-id")
        if not signature_header or not request_id:
            logger.error(
                "webhook_signature_headers_missing",
                has_signature=bool(signature_header),
                has_request_id=bool(request_id),
            )
            raise WebhookConfigurationError("signature headers missing")

        parts = parse_signature_header(signature_header)
        timestamp = parts.get("timestamp")
        provided = parts.get("signature")
        if not timestamp or not provided:
            logger.warning("webhook_signature_malformed")
            raise SignatureError("malformed signature header")

        try:
            ts = int(timestamp)
        except ValueError:
            logger.warning("webhook_signature_malformed", reason="timestamp not an integer")
            raise SignatureError("malformed signature timestamp")

        expected = compute_signature(self.secret, request_id, raw_body)
        if not hmac.compare_digest(expected.encode("ascii"), provided.lower().encode("utf-8")):
            logger.warning("webhook_signature_mismatch")
            raise SignatureError("signature mismatch")

        age = abs(self._clock() - ts)
        if age > self.max_age_seconds:
            logger.warning("webhook_signature_stale", age_seconds=int(age))
            raise SignatureError("signature timestamp outside replay window")

        return True
