"""Turns verified payment notifications into order rows and stock changes.

One call to :meth:`ReconciliationEngine.process` handles one webhook
delivery and always ends in a :class:`ReconciliationResult` whose
``http_status`` tells the provider whether to retry:

- 200: acknowledged, nothing more to do (including "not applicable" and
  "flagged for manual review" cases).
- 400: integrity violation (amount or currency), the payment is not applied.
- 500: a database write failed and nothing was durably written; the
  provider's retry is safe because duplicates are detected before writing.

Deliveries may repeat and arrive out of order. Duplicates are detected by
provider payment id plus raw payment status, and a forward-only transition
guard keeps a late ``pending`` from undoing an ``approved``.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Mapping, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import store
from .config import Settings
from .errors import AmountMismatchError, CurrencyMismatchError, PaymentFetchError, PaymentNotFoundError
from .inventory import adjust_stock_for_order
from .models import Order
from .payments_client import PaymentsClient
from .pending_orders import PendingOrderStore
from .schemas import ProviderPayment, ProvisionalOrder, is_valid_order_id
from .statuses import (
    FAILED_PROVIDER_STATUSES,
    UPDATE_ONLY_STATUSES,
    OrderStatus,
    can_transition,
    map_provider_status,
)

logger = structlog.get_logger(__name__)

HANDLED_TOPICS = {"payment", "merchant_order"}
PLACEHOLDER_NAME = "Cliente"


@dataclass
class ReconciliationResult:
    http_status: int
    outcome: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None


def extract_notification(query: Mapping[str, Any], body: Any) -> Tuple[Optional[str], Optional[str]]:
    """Pull the payment id and topic out of a webhook's query string and JSON body."""
    body = body if isinstance(body, dict) else {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    payment_id = query.get("data.id") or query.get("id") or data.get("id")
    topic = query.get("topic") or query.get("type") or body.get("type") or body.get("topic")
    return (str(payment_id) if payment_id not in (None, "") else None), topic


def amounts_match(expected: Decimal, actual: Decimal, tolerance: Decimal) -> bool:
    return abs(Decimal(expected) - Decimal(actual)) <= tolerance


class ReconciliationEngine:
    def __init__(
        self,
        db: Session,
        settings: Settings,
        pending_orders: PendingOrderStore,
        payments: PaymentsClient,
    ):
        self.db = db
        self.settings = settings
        self.pending_orders = pending_orders
        self.payments = payments

    # ----- helpers -----
    def _flag(self, reason: str, payment_id=None, order_id=None, request_id=None, detail=None) -> None:
        """Record a notification for manual follow-up without failing the webhook."""
        try:
            store.record_review(
                self.db, reason, payment_id=payment_id, order_id=order_id, request_id=request_id, detail=detail
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("payment_review_record_failed", reason=reason, error=str(e))

    def _adjust_stock(self, order: Order, request_id: Optional[str]) -> None:
        try:
            adjust_stock_for_order(self.db, order)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("stock_adjust_failed", error=str(e))
            self._flag("stock_adjust_failed", payment_id=order.payment_id, order_id=order.id,
                       request_id=request_id, detail=str(e))

    def _expected_total(self, pending: Optional[ProvisionalOrder], existing: Optional[Order]) -> Optional[Decimal]:
        if pending is not None:
            return pending.quoted_total
        if existing is not None and existing.total is not None:
            return Decimal(existing.total)
        return None

    def _check_currency(self, payment: ProviderPayment) -> None:
        expected = self.settings.settlement_currency.upper()
        if (payment.currency_id or "").upper() != expected:
            raise CurrencyMismatchError(expected, payment.currency_id)

    def _check_amount(self, payment: ProviderPayment, expected: Optional[Decimal]) -> None:
        if expected is None:
            # A payment that already failed the check stays refused once the quote is gone.
            if store.has_review(self.db, payment.id, "amount_mismatch"):
                raise AmountMismatchError(None, payment.transaction_amount or Decimal("0"))
            logger.warning("amount_reference_missing", amount=str(payment.transaction_amount))
            return
        actual = payment.transaction_amount
        if actual is None or not amounts_match(expected, actual, self.settings.amount_tolerance):
            raise AmountMismatchError(expected, actual if actual is not None else Decimal("0"))

    def _new_order(self, order_id: str, payment: ProviderPayment, status: OrderStatus,
                   pending: Optional[ProvisionalOrder]) -> Order:
        now = datetime.now(timezone.utc)
        if pending is not None:
            user_id = pending.user_id if pending.user_id not in (None, "", "guest") else self.settings.guest_user_id
            buyer = pending.buyer
            items = [item.model_dump(mode="json") for item in pending.line_items]
            total = pending.quoted_total
            shipping_address = pending.destination()
        else:
            logger.warning("pending_order_missing_using_placeholder")
            user_id = self.settings.guest_user_id
            buyer = None
            items = []
            total = payment.transaction_amount or Decimal("0")
            shipping_address = ""

        return Order(
            id=order_id,
            user_id=user_id,
            user_name=(buyer.name if buyer else None) or PLACEHOLDER_NAME,
            user_email=buyer.email if buyer else "",
            user_phone=buyer.phone if buyer else "",
            items=items,
            total=total,
            status=status.value,
            shipping_address=shipping_address,
            payment_id=payment.id,
            merchant_order_id=payment.merchant_order_id,
            currency=payment.currency_id,
            transaction_amount=payment.transaction_amount,
            payment_status=payment.status,
            paid_at=now if status == OrderStatus.PAID else None,
            stock_adjusted=False,
        )

    def _apply_payment(self, order: Order, payment: ProviderPayment, status: OrderStatus) -> None:
        order.status = status.value
        order.payment_id = payment.id
        order.merchant_order_id = payment.merchant_order_id or order.merchant_order_id
        order.currency = payment.currency_id
        order.transaction_amount = payment.transaction_amount
        order.payment_status = payment.status
        if status == OrderStatus.PAID:
            order.paid_at = datetime.now(timezone.utc)

    # ----- main entry point -----
    def process(self, payment_id: Optional[str], topic: Optional[str], request_id: Optional[str] = None) -> ReconciliationResult:
        # 1. Nothing to do without a payment id.
        if not payment_id:
            logger.warning("webhook_without_payment_id")
            return ReconciliationResult(200, "no_payment_id")
        structlog.contextvars.bind_contextvars(payment_id=payment_id)

        # 2. Only payment notifications are handled here.
        if topic and topic not in HANDLED_TOPICS:
            logger.info("webhook_topic_ignored", topic=topic)
            return ReconciliationResult(200, "topic_ignored", payment_id=payment_id)

        # 3. Re-fetch the payment; the webhook body is never trusted for amounts or status.
        try:
            payment = self.payments.get_payment(payment_id)
        except PaymentNotFoundError:
            logger.info("payment_not_found")
            return ReconciliationResult(200, "payment_not_found", payment_id=payment_id)
        except PaymentFetchError as e:
            logger.error("payment_fetch_failed", error=str(e), attempts=e.attempts)
            self._flag("fetch_failed", payment_id=payment_id, request_id=request_id, detail=str(e))
            return ReconciliationResult(200, "fetch_failed", payment_id=payment_id)

        # 4. The external reference must be one of our order ids.
        order_id = payment.external_reference
        if not order_id:
            logger.warning("payment_without_external_reference")
            return ReconciliationResult(200, "no_external_reference", payment_id=payment_id)
        if not is_valid_order_id(order_id):
            logger.error("invalid_external_reference", external_reference=order_id)
            self._flag("invalid_external_reference", payment_id=payment_id, request_id=request_id, detail=order_id)
            return ReconciliationResult(200, "invalid_external_reference", payment_id=payment_id)
        structlog.contextvars.bind_contextvars(order_id=order_id)

        # 5. Map the provider status.
        new_status = map_provider_status(payment.status)
        existing = store.find_order(self.db, order_id)
        logger.info(
            "payment_status_mapped",
            provider_status=payment.status,
            order_status=new_status.value if new_status else None,
            order_exists=existing is not None,
        )

        if new_status is None:
            return self._handle_unmapped(payment, existing, order_id)

        if existing is None and new_status in UPDATE_ONLY_STATUSES:
            logger.warning("update_only_status_without_order", order_status=new_status.value)
            return ReconciliationResult(200, "order_missing_for_update", order_id, payment_id)

        # 6-7. Currency and amount must match what was quoted.
        pending = self.pending_orders.get(order_id)
        try:
            self._check_currency(payment)
            self._check_amount(payment, self._expected_total(pending, existing))
        except CurrencyMismatchError as e:
            logger.error("currency_mismatch", expected=e.expected, actual=e.actual)
            self._flag("currency_mismatch", payment_id, order_id, request_id, detail=str(e))
            return ReconciliationResult(400, "currency_mismatch", order_id, payment_id)
        except AmountMismatchError as e:
            if e.expected is None:
                logger.critical("amount_mismatch_previously_flagged", actual=str(e.actual), suspected_tampering=True)
            else:
                logger.critical(
                    "amount_mismatch",
                    expected=str(e.expected),
                    actual=str(e.actual),
                    difference=str(e.actual - e.expected),
                    suspected_tampering=True,
                )
            self._flag("amount_mismatch", payment_id, order_id, request_id, detail=str(e))
            return ReconciliationResult(400, "amount_mismatch", order_id, payment_id)

        # 8. Idempotency: the same payment in the same state is applied once.
        by_payment = store.find_order_by_payment(self.db, payment.id)
        if by_payment is not None:
            if by_payment.id != order_id:
                logger.error("payment_bound_to_other_order", bound_order_id=by_payment.id)
                self._flag("payment_bound_to_other_order", payment_id, order_id, request_id, detail=by_payment.id)
                return ReconciliationResult(200, "payment_bound_to_other_order", order_id, payment_id)
            if by_payment.payment_status == payment.status:
                logger.info("payment_already_processed", existing_status=by_payment.status)
                return ReconciliationResult(200, "duplicate", order_id, payment_id)

        # 9. First notification for this order: create it.
        if existing is None:
            result = self._create_order(order_id, payment, new_status, pending, request_id)
        # 10. Existing order: move it forward if the status changed.
        else:
            result = self._update_order(existing, payment, new_status, request_id)

        # 11. The quote is spent once the order is written.
        if result.http_status == 200:
            self.pending_orders.delete(order_id)
        return result

    def _handle_unmapped(self, payment: ProviderPayment, existing: Optional[Order], order_id: str) -> ReconciliationResult:
        provider_status = (payment.status or "").strip().lower()
        if provider_status not in FAILED_PROVIDER_STATUSES:
            logger.warning("payment_status_unmapped", provider_status=payment.status)
            return ReconciliationResult(200, "status_unmapped", order_id, payment.id)

        self.pending_orders.delete(order_id)
        if existing is None:
            logger.warning("payment_failed_order_not_created", provider_status=payment.status)
            return ReconciliationResult(200, "payment_failed", order_id, payment.id)

        # Only the payment the order is waiting on can fail it.
        if existing.status != OrderStatus.PENDING.value or existing.payment_id not in (None, payment.id):
            logger.info("payment_failed_order_kept", current_status=existing.status)
            return ReconciliationResult(200, "payment_failed", order_id, payment.id)

        existing.status = OrderStatus.REJECTED.value
        existing.payment_status = payment.status
        try:
            store.save(self.db, existing)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("order_update_failed", error=str(e))
            return ReconciliationResult(500, "db_error", order_id, payment.id)
        logger.info("order_rejected", previous_status=OrderStatus.PENDING.value)
        return ReconciliationResult(200, "rejected", order_id, payment.id)

    def _create_order(self, order_id, payment, status, pending, request_id) -> ReconciliationResult:
        order = self._new_order(order_id, payment, status, pending)
        try:
            store.insert_order(self.db, order)
        except IntegrityError:
            # A concurrent delivery inserted the same order or payment first.
            self.db.rollback()
            logger.info("order_insert_conflict_treated_as_duplicate")
            return ReconciliationResult(200, "duplicate", order_id, payment.id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("order_insert_failed", error=str(e))
            return ReconciliationResult(500, "db_error", order_id, payment.id)

        logger.info("order_created", status=status.value, amount=str(payment.transaction_amount))
        if status == OrderStatus.PAID:
            self._adjust_stock(order, request_id)
        return ReconciliationResult(200, "created", order_id, payment.id)

    def _update_order(self, order: Order, payment, status, request_id) -> ReconciliationResult:
        previous = order.status
        if previous == status.value:
            if order.payment_id and payment.id != order.payment_id:
                # A second charge against the same order; the buyer may have paid twice.
                logger.error("additional_payment_for_order", recorded_payment_id=order.payment_id, status=previous)
                self._flag("additional_payment_for_order", payment.id, order.id, request_id, detail=order.payment_id)
                return ReconciliationResult(200, "additional_payment", order.id, payment.id)
            logger.info("order_status_unchanged", status=previous)
            return ReconciliationResult(200, "unchanged", order.id, payment.id)

        if not can_transition(previous, status):
            logger.warning("status_regression_ignored", current_status=previous, incoming_status=status.value)
            return ReconciliationResult(200, "transition_ignored", order.id, payment.id)

        self._apply_payment(order, payment, status)
        try:
            store.save(self.db, order)
        except IntegrityError:
            self.db.rollback()
            logger.error("order_update_conflict")
            return ReconciliationResult(200, "duplicate", order.id, payment.id)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error("order_update_failed", error=str(e))
            return ReconciliationResult(500, "db_error", order.id, payment.id)

        logger.info("order_updated", previous_status=previous, status=status.value)
        if status == OrderStatus.PAID and previous != OrderStatus.PAID.value:
            self._adjust_stock(order, request_id)
        return ReconciliationResult(200, "updated", order.id, payment.id)
