import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Order ids are client-generated v1-v5 UUIDs; anything else is refused before a write.
ORDER_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_valid_order_id(value: Optional[str]) -> bool:
    return bool(value) and bool(ORDER_ID_RE.match(value))


# --- Checkout intent ---
class Buyer(BaseModel):
    name: str = "Cliente"
    email: str = ""
    phone: str = ""


class LineItem(BaseModel):
    product_id: str
    name: str = ""
    unit_price: Decimal
    quantity: int = Field(gt=0)


class ProvisionalOrder(BaseModel):
    """Checkout-time intent stored in the pending order cache."""
    order_id: str
    user_id: Optional[str] = None
    buyer: Buyer = Field(default_factory=Buyer)
    line_items: List[LineItem] = Field(default_factory=list)
    quoted_total: Decimal
    delivery_method: Literal["shipping", "pickup"] = "shipping"
    shipping_address: str = ""
    pickup_location: str = ""

    @field_validator("order_id")
    @classmethod
    def order_id_is_uuid(cls, value: str) -> str:
        if not is_valid_order_id(value):
            raise ValueError("order_id must be a UUID")
        return value

    def destination(self) -> str:
        if self.delivery_method == "pickup":
            return f"Pickup: {self.pickup_location}" if self.pickup_location else "Pickup"
        return self.shipping_address


class ProvisionalOrderIn(BaseModel):
    """Body of POST /api/pending-orders/{order_id}; the id comes from the path."""
    user_id: Optional[str] = None
    buyer: Buyer = Field(default_factory=Buyer)
    line_items: List[LineItem] = Field(default_factory=list)
    quoted_total: Decimal
    delivery_method: Literal["shipping", "pickup"] = "shipping"
    shipping_address: str = ""
    pickup_location: str = ""


# --- Provider payment record ---
class ProviderPayment(BaseModel):
    """Canonical payment record as returned by the provider API."""
    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    currency_id: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    external_reference: Optional[str] = None
    order: Optional[Dict[str, Any]] = None

    @field_validator("id", mode="before")
    @classmethod
    def id_as_string(cls, value: Any) -> str:
        return str(value)

    @property
    def merchant_order_id(self) -> Optional[str]:
        if self.order and self.order.get("id") is not None:
            return str(self.order["id"])
        return None


# --- Orders and products ---
class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: Optional[str] = None
    user_name: str
    user_email: str
    user_phone: str
    items: List[Dict[str, Any]]
    total: Decimal
    status: str
    shipping_address: str
    payment_id: Optional[str] = None
    merchant_order_id: Optional[str] = None
    currency: Optional[str] = None
    transaction_amount: Optional[Decimal] = None
    payment_status: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class StatusUpdate(BaseModel):
    status: str


class ProductIn(BaseModel):
    id: str
    name: str
    price: Decimal = Decimal("0")
    stock: int = Field(default=0, ge=0)


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    price: Optional[Decimal] = None
    stock: Optional[int] = Field(default=None, ge=0)


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    price: Decimal
    stock: int
