"""Decrements product stock when an order becomes paid."""

import structlog
from sqlalchemy.orm import Session

from . import store
from .models import Order

logger = structlog.get_logger(__name__)


def _item_product_id(item: dict):
    return item.get("product_id") or item.get("id")


def adjust_stock_for_order(db: Session, order: Order) -> int:
    """Subtract each line item's quantity from its product's stock.

    Stock is clamped at zero. Products that no longer exist are skipped.
    The order's ``stock_adjusted`` flag makes a second call a no-op.

    Returns:
        The number of products whose stock was written.
    """
    log = logger.bind(order_id=order.id)
    if order.stock_adjusted:
        log.info("stock_already_adjusted")
        return 0

    items = order.items or []
    if not items:
        log.warning("stock_adjust_no_items")

    adjusted = 0
    for item in items:
        product_id = _item_product_id(item)
        quantity = int(item.get("quantity") or 0)
        if not product_id or quantity <= 0:
            continue

        product = store.find_product(db, product_id)
        if product is None:
            log.warning("stock_adjust_product_missing", product_id=product_id)
            continue

        product.stock = max(0, (product.stock or 0) - quantity)
        adjusted += 1
        log.info("stock_reduced", product_id=product_id, quantity=quantity, new_stock=product.stock)

    order.stock_adjusted = True
    db.commit()
    return adjusted
