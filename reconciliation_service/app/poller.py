#!/usr/bin/env python3
"""
Client-side order status poller.

Polls GET /api/orders/{order_id} until the order reaches a terminal status.
A 404 is the normal state before the webhook lands, so consecutive
not-found answers get their own, shorter patience: a payment rejected
before any order was created would otherwise be polled for the full budget.

Run:
  reconciliation-poll http://localhost:8000 <order_id>
"""

import argparse
import sys
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

import requests
import structlog

from .config import get_settings
from .logging_config import configure_logging

logger = structlog.get_logger(__name__)

ORDER_GET_PATH = "/api/orders/{order_id}"

# Soft status sets (accept provider and legacy equivalents, compared lowercased)
SUCCESS_STATUSES: Set[str] = {"paid", "approved", "completed", "shipped", "pagado", "completado", "enviado"}
FAILURE_STATUSES: Set[str] = {
    "rejected", "cancelled", "refunded", "chargedback", "charged_back", "indispute", "in_dispute",
}


class PollOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    UNRESOLVED = "unresolved"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    last_status: Optional[str] = None
    order: Optional[Dict[str, Any]] = None


def classify_status(status: Optional[str]) -> Optional[PollOutcome]:
    """Return SUCCESS/FAILURE for terminal statuses, None while still pending."""
    normalized = (status or "").strip().lower()
    if normalized in SUCCESS_STATUSES:
        return PollOutcome.SUCCESS
    if normalized in FAILURE_STATUSES:
        return PollOutcome.FAILURE
    return None


def _read_order(resp: requests.Response) -> Optional[Dict[str, Any]]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


class OrderStatusPoller:
    def __init__(
        self,
        base_url: str,
        interval: float = 5.0,
        max_attempts: int = 60,
        not_found_limit: int = 6,
        timeout: float = 8.0,
        session: Optional[requests.Session] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.interval = interval
        self.max_attempts = max(1, int(max_attempts))
        self.not_found_limit = max(1, int(not_found_limit))
        self.timeout = timeout
        self.session = session or requests.Session()
        self._stop = threading.Event()
        # Default wait returns early when stop() is called.
        self._sleep = sleep or self._stop.wait

    def stop(self) -> None:
        """Cancel polling, e.g. when the buyer navigates away."""
        self._stop.set()

    def fetch(self, order_id: str) -> requests.Response:
        url = self.base_url + ORDER_GET_PATH.format(order_id=order_id)
        return self.session.get(url, timeout=self.timeout)

    def poll(self, order_id: str) -> PollResult:
        log = logger.bind(order_id=order_id)
        not_found = 0
        last_status: Optional[str] = None

        for attempt in range(1, self.max_attempts + 1):
            if self._stop.is_set():
                return PollResult(PollOutcome.CANCELLED, attempt - 1, last_status)

            try:
                resp = self.fetch(order_id)
            except requests.exceptions.RequestException as e:
                log.warning("order_poll_error", attempt=attempt, error=str(e))
                resp = None

            if resp is not None and resp.status_code == 404:
                not_found += 1
                if not_found >= self.not_found_limit:
                    log.warning("order_never_created", consecutive_not_found=not_found)
                    return PollResult(PollOutcome.FAILURE, attempt, last_status)
            elif resp is not None and resp.ok:
                not_found = 0
                order = _read_order(resp)
                if order is None:
                    # Proxy or maintenance pages answer 200 with HTML.
                    log.warning("order_poll_unreadable_body", attempt=attempt)
                else:
                    status = str(order.get("status", ""))
                    if status != last_status:
                        log.info("order_status_observed", status=status, attempt=attempt)
                        last_status = status
                    outcome = classify_status(status)
                    if outcome is not None:
                        return PollResult(outcome, attempt, status, order)
            elif resp is not None:
                log.warning("order_poll_unexpected_status", http_status=resp.status_code, attempt=attempt)

            if attempt < self.max_attempts:
                self._sleep(self.interval)

        log.warning("order_poll_unresolved", attempts=self.max_attempts, last_status=last_status)
        return PollResult(PollOutcome.UNRESOLVED, self.max_attempts, last_status)


def main(argv=None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, "console")
    parser = argparse.ArgumentParser(description="Wait for an order to reach a terminal payment status.")
    parser.add_argument("base_url")
    parser.add_argument("order_id")
    parser.add_argument("--interval", type=float, default=settings.poll_interval_seconds)
    parser.add_argument("--max-attempts", type=int, default=settings.poll_max_attempts)
    parser.add_argument("--not-found-limit", type=int, default=settings.poll_not_found_limit)
    args = parser.parse_args(argv)

    poller = OrderStatusPoller(
        args.base_url,
        interval=args.interval,
        max_attempts=args.max_attempts,
        not_found_limit=args.not_found_limit,
    )
    try:
        result = poller.poll(args.order_id)
    except KeyboardInterrupt:
        poller.stop()
        return 130

    print(f"{result.outcome.value}: status={result.last_status} attempts={result.attempts}")
    if result.outcome == PollOutcome.SUCCESS:
        return 0
    if result.outcome == PollOutcome.UNRESOLVED:
        # Check back later; not a confirmed failure.
        return 2
    return 1


if __name__ == "__main__":
    sys.exit(main())
