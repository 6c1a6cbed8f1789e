"""Pytest fixtures for the reconciliation service tests."""

import os

# Must be set before the app package reads its settings.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import json
import time
import uuid
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reconciliation_service.app.config import Settings, get_settings
from reconciliation_service.app.database import Base, get_db
from reconciliation_service.app.errors import PaymentNotFoundError
from reconciliation_service.app.main import app, get_payments_client, get_pending_orders
from reconciliation_service.app.models import Order, PaymentReview, Product
from reconciliation_service.app.pending_orders import InMemoryPendingOrderStore
from reconciliation_service.app.schemas import ProviderPayment, ProvisionalOrder
from reconciliation_service.app.signature import compute_signature

WEBHOOK_SECRET = "test-webhook-secret"


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakePaymentsClient:
    """Stands in for the provider API; payments are registered per test."""

    def __init__(self):
        self.payments = {}
        self.failures = {}
        self.calls = []

    def set_payment(self, payment_id, order_id, status="approved", amount="1000", currency="MXN"):
        self.payments[payment_id] = ProviderPayment(
            id=payment_id,
            status=status,
            currency_id=currency,
            transaction_amount=Decimal(amount),
            external_reference=order_id,
        )

    def get_payment(self, payment_id):
        self.calls.append(payment_id)
        if payment_id in self.failures:
            raise self.failures[payment_id]
        if payment_id not in self.payments:
            raise PaymentNotFoundError(payment_id, "payment not found")
        return self.payments[payment_id]


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(mp_webhook_secret=WEBHOOK_SECRET, settlement_currency="MXN")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def pending_orders(clock):
    return InMemoryPendingOrderStore(ttl_seconds=600, clock=clock)


@pytest.fixture
def provider():
    return FakePaymentsClient()


@pytest.fixture
def client(session_factory, settings, pending_orders, provider):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_pending_orders] = lambda: pending_orders
    app.dependency_overrides[get_payments_client] = lambda: provider
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def new_order_id() -> str:
    return str(uuid.uuid4())


def make_provisional(order_id, total="1000", items=None, **kwargs) -> ProvisionalOrder:
    if items is None:
        items = [{"product_id": "prod-1", "name": "Bomba Hidraulica", "unit_price": total, "quantity": 1}]
    return ProvisionalOrder(
        order_id=order_id,
        buyer={"name": "Ana Ruiz", "email": "ana@example.com", "phone": "5550001111"},
        line_items=items,
        quoted_total=Decimal(total),
        shipping_address="Av. Reforma 1, CDMX",
        **kwargs,
    )


def signed_headers(raw_body: bytes, secret=WEBHOOK_SECRET, request_id=None, timestamp=None) -> dict:
    request_id = request_id or str(uuid.uuid4())
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = compute_signature(secret, request_id, raw_body)
    return {
        "x-signature": f"timestamp={timestamp},signature={signature}",
        "x-request-id": request_id,
        "content-type": "application/json",
    }


def send_webhook(client, payment_id, topic="payment", **sign_kwargs):
    raw_body = json.dumps({"type": topic, "data": {"id": payment_id}}).encode()
    return client.post("/api/mp/webhook", content=raw_body, headers=signed_headers(raw_body, **sign_kwargs))


def load_order(session_factory, order_id):
    with session_factory() as session:
        return session.query(Order).filter(Order.id == order_id).first()


def count_orders(session_factory):
    with session_factory() as session:
        return session.query(Order).count()


def product_stock(session_factory, product_id):
    with session_factory() as session:
        return session.query(Product).filter(Product.id == product_id).one().stock


def reviews(session_factory, reason=None):
    with session_factory() as session:
        query = session.query(PaymentReview)
        if reason:
            query = query.filter(PaymentReview.reason == reason)
        return query.all()


@pytest.fixture
def seed_product(session_factory):
    def _seed(product_id="prod-1", stock=10, price="1000"):
        with session_factory() as session:
            session.add(Product(id=product_id, name=f"Product {product_id}", price=Decimal(price), stock=stock))
            session.commit()
    return _seed
