"""Order status vocabulary, provider status mapping and allowed transitions."""

from enum import Enum
from typing import Optional


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    SHIPPED = "Shipped"
    COMPLETED = "Completed"
    REJECTED = "Rejected"
    REFUNDED = "Refunded"
    CHARGED_BACK = "ChargedBack"
    IN_DISPUTE = "InDispute"


# Provider status -> internal status. None means "no status": never creates an order.
PROVIDER_STATUS_MAP = {
    "approved": OrderStatus.PAID,
    "pending": OrderStatus.PENDING,
    "in_process": OrderStatus.PENDING,
    "rejected": None,
    "cancelled": None,
    "refunded": OrderStatus.REFUNDED,
    "charged_back": OrderStatus.CHARGED_BACK,
    "in_mediation": OrderStatus.IN_DISPUTE,
}

# Provider statuses that say the payment failed outright.
FAILED_PROVIDER_STATUSES = {"rejected", "cancelled"}

# These statuses only ever update an existing order.
UPDATE_ONLY_STATUSES = {OrderStatus.REFUNDED, OrderStatus.CHARGED_BACK, OrderStatus.IN_DISPUTE}

_AFTER_PAYMENT = {OrderStatus.REFUNDED, OrderStatus.CHARGED_BACK, OrderStatus.IN_DISPUTE}

ALLOWED_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PAID, OrderStatus.REJECTED},
    OrderStatus.REJECTED: {OrderStatus.PENDING, OrderStatus.PAID},
    OrderStatus.PAID: _AFTER_PAYMENT,
    OrderStatus.SHIPPED: _AFTER_PAYMENT,
    OrderStatus.COMPLETED: _AFTER_PAYMENT,
    OrderStatus.IN_DISPUTE: {OrderStatus.PAID, OrderStatus.REFUNDED, OrderStatus.CHARGED_BACK},
    OrderStatus.REFUNDED: set(),
    OrderStatus.CHARGED_BACK: set(),
}


def map_provider_status(provider_status: Optional[str]) -> Optional[OrderStatus]:
    """Return the internal status for a provider status, or None if it has none."""
    if not provider_status:
        return None
    return PROVIDER_STATUS_MAP.get(provider_status.strip().lower())


def parse_status(value: str) -> Optional[OrderStatus]:
    try:
        return OrderStatus(value)
    except ValueError:
        return None


def can_transition(current: str, new: OrderStatus) -> bool:
    """Forward-only guard so a late notification cannot regress an order.

    An unknown current status (e.g. written by hand) accepts any transition.
    """
    current_status = parse_status(current)
    if current_status is None:
        return True
    return new in ALLOWED_TRANSITIONS.get(current_status, set())
