from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, String, Text

from .database import Base


def _utcnow():
    return datetime.now(timezone.utc)


# Defines the ORM model for a durable 'Order', created by the reconciliation engine.
class Order(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True)  # Client-generated UUID, the correlation key.
    user_id = Column(String, nullable=True, index=True)  # Null or the guest sentinel for guests.
    user_name = Column(String, nullable=False, default="Cliente")
    user_email = Column(String, nullable=False, default="")
    user_phone = Column(String, nullable=False, default="")
    items = Column(JSON, nullable=False, default=list)  # Snapshot of line items at creation time.
    total = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, index=True)
    shipping_address = Column(String, nullable=False, default="")

    # Payment tracking fields.
    payment_id = Column(String, unique=True, index=True)  # Provider payment id, the dedup key.
    merchant_order_id = Column(String, nullable=True)
    currency = Column(String(3))
    transaction_amount = Column(Numeric(12, 2))
    payment_status = Column(String)  # Raw provider status, kept verbatim for audit.
    paid_at = Column(DateTime(timezone=True), nullable=True)
    stock_adjusted = Column(Boolean, nullable=False, default=False)  # Set once stock was decremented.

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


# Defines the ORM model for a catalog product; this service only adjusts its stock.
class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    stock = Column(Integer, nullable=False, default=0)  # Never negative, clamped at zero.


# A notification that was acknowledged but not applied and needs a human look.
class PaymentReview(Base):
    __tablename__ = "payment_reviews"

    id = Column(Integer, primary_key=True, index=True)
    payment_id = Column(String, index=True)
    order_id = Column(String, nullable=True, index=True)
    request_id = Column(String, nullable=True)
    reason = Column(String, nullable=False)  # e.g. "fetch_failed", "amount_mismatch".
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
