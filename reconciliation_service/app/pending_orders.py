"""Short-lived storage for checkout intent, keyed by the client order id.

Entries expire a fixed time after ``put`` and are never renewed. A missing
entry is a normal condition: the reconciliation engine falls back to
placeholder buyer data when the webhook arrives after expiry.
"""

import threading
import time
from typing import Callable, Dict, Optional, Tuple

import redis
import structlog

from .config import Settings
from .schemas import ProvisionalOrder

logger = structlog.get_logger(__name__)


class PendingOrderStore:
    """Interface shared by the cache backends."""

    def put(self, order_id: str, data: ProvisionalOrder) -> None:
        raise NotImplementedError

    def get(self, order_id: str) -> Optional[ProvisionalOrder]:
        raise NotImplementedError

    def delete(self, order_id: str) -> None:
        raise NotImplementedError


class InMemoryPendingOrderStore(PendingOrderStore):
    """Process-local store. Lost on restart and not shared between instances."""

    def __init__(self, ttl_seconds: int = 600, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, ProvisionalOrder]] = {}
        self._lock = threading.Lock()

    def put(self, order_id, data):
        with self._lock:
            self._entries[order_id] = (self._clock() + self.ttl_seconds, data)

    def get(self, order_id):
        with self._lock:
            entry = self._entries.get(order_id)
            if entry is None:
                return None
            expires_at, data = entry
            if self._clock() >= expires_at:
                del self._entries[order_id]
                return None
            return data

    def delete(self, order_id):
        with self._lock:
            self._entries.pop(order_id, None)

    def __len__(self):
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at, _ in self._entries.values() if now < expires_at)


class RedisPendingOrderStore(PendingOrderStore):
    """Shared store backed by Redis key expiry, safe across restarts and instances."""

    key_prefix = "pending-order:"

    def __init__(self, client: "redis.Redis", ttl_seconds: int = 600):
        self.client = client
        self.ttl_seconds = ttl_seconds

    def _key(self, order_id: str) -> str:
        return f"{self.key_prefix}{order_id}"

    def put(self, order_id, data):
        self.client.set(self._key(order_id), data.model_dump_json(), ex=self.ttl_seconds)

    def get(self, order_id):
        raw = self.client.get(self._key(order_id))
        if raw is None:
            return None
        return ProvisionalOrder.model_validate_json(raw)

    def delete(self, order_id):
        self.client.delete(self._key(order_id))


def build_pending_order_store(settings: Settings) -> PendingOrderStore:
    if settings.redis_url:
        logger.info("pending_order_store_selected", backend="redis")
        return RedisPendingOrderStore(
            redis.Redis.from_url(settings.redis_url),
            ttl_seconds=settings.pending_order_ttl_seconds,
        )
    logger.info("pending_order_store_selected", backend="memory")
    return InMemoryPendingOrderStore(ttl_seconds=settings.pending_order_ttl_seconds)
