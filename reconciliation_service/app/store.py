"""Narrow data-access layer over the orders and products tables."""

from typing import List, Optional

from sqlalchemy.orm import Session

from .models import Order, PaymentReview, Product


def find_order(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.id == order_id).first()


def find_order_by_payment(db: Session, payment_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.payment_id == payment_id).first()


def list_orders(db: Session, user_id: Optional[str] = None) -> List[Order]:
    query = db.query(Order)
    if user_id is not None:
        query = query.filter(Order.user_id == user_id)
    return query.order_by(Order.created_at.desc()).all()


def insert_order(db: Session, order: Order) -> Order:
    db.add(order)
    db.commit()
    db.refresh(order)
    return order


def save(db: Session, instance):
    """Commit pending changes on an already-attached instance."""
    db.commit()
    db.refresh(instance)
    return instance


def find_product(db: Session, product_id: str) -> Optional[Product]:
    return db.query(Product).filter(Product.id == product_id).first()


def record_review(db: Session, reason: str, payment_id=None, order_id=None, request_id=None, detail=None) -> PaymentReview:
    review = PaymentReview(
        payment_id=payment_id,
        order_id=order_id,
        request_id=request_id,
        reason=reason,
        detail=detail,
    )
    db.add(review)
    db.commit()
    return review


def has_review(db: Session, payment_id: str, reason: str) -> bool:
    return (
        db.query(PaymentReview)
        .filter(PaymentReview.payment_id == payment_id, PaymentReview.reason == reason)
        .first()
        is not None
    )
