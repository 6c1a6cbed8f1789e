import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel

TRUE_VALUES = {"1", "true", "True", "yes", "YES"}


def _env_bool(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).strip() in TRUE_VALUES


class Settings(BaseModel):
    """Runtime configuration, read from environment variables."""

    database_url: str = "sqlite:///./reconciliation.db"

    # Payment provider API
    mp_api_base_url: str = "https://api.mercadopago.com"
    mp_access_token: str = ""
    payment_fetch_attempts: int = 3
    payment_fetch_backoff_seconds: float = 1.0
    payment_fetch_timeout_seconds: float = 10.0

    # Webhook verification
    mp_webhook_secret: str = ""
    webhook_allow_unsigned: bool = False  # test/dev only, never on by default
    signature_max_age_seconds: int = 600

    # Reconciliation rules
    settlement_currency: str = "MXN"
    amount_tolerance: Decimal = Decimal("1")
    guest_user_id: Optional[str] = None

    # Provisional order cache
    pending_order_ttl_seconds: int = 600
    redis_url: Optional[str] = None

    # Client poller
    poll_interval_seconds: float = 5.0
    poll_max_attempts: int = 60
    poll_not_found_limit: int = 6

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./reconciliation.db"),
            mp_api_base_url=os.getenv("MP_API_BASE_URL", "https://api.mercadopago.com").rstrip("/"),
            mp_access_token=os.getenv("MP_ACCESS_TOKEN", ""),
            payment_fetch_attempts=int(os.getenv("PAYMENT_FETCH_ATTEMPTS", "3")),
            payment_fetch_backoff_seconds=float(os.getenv("PAYMENT_FETCH_BACKOFF_SECONDS", "1.0")),
            payment_fetch_timeout_seconds=float(os.getenv("PAYMENT_FETCH_TIMEOUT_SECONDS", "10")),
            mp_webhook_secret=os.getenv("MP_WEBHOOK_SECRET", ""),
            webhook_allow_unsigned=_env_bool("WEBHOOK_ALLOW_UNSIGNED"),
            signature_max_age_seconds=int(os.getenv("SIGNATURE_MAX_AGE_SECONDS", "600")),
            settlement_currency=os.getenv("SETTLEMENT_CURRENCY", "MXN"),
            amount_tolerance=Decimal(os.getenv("AMOUNT_TOLERANCE", "1")),
            guest_user_id=os.getenv("GUEST_USER_ID") or None,
            pending_order_ttl_seconds=int(os.getenv("PENDING_ORDER_TTL_SECONDS", "600")),
            redis_url=os.getenv("REDIS_URL") or None,
            poll_interval_seconds=float(os.getenv("POLL_INTERVAL_SECONDS", "5")),
            poll_max_attempts=int(os.getenv("POLL_MAX_ATTEMPTS", "60")),
            poll_not_found_limit=int(os.getenv("POLL_NOT_FOUND_LIMIT", "6")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_format=os.getenv("LOG_FORMAT", "json").lower(),
        )


@lru_cache
def get_settings() -> Settings:
    """FastAPI dependency returning the process-wide settings."""
    return Settings.from_env()
