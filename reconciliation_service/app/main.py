# --- Imports ---
import json
from datetime import datetime, timezone
from functools import lru_cache
from typing import List

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import store
from .config import Settings, get_settings
from .database import Base, engine, get_db
from .errors import SignatureError, WebhookConfigurationError
from .logging_config import configure_logging
from .models import Product
from .payments_client import PaymentsClient
from .pending_orders import PendingOrderStore, build_pending_order_store
from .reconciliation import ReconciliationEngine, extract_notification
from .schemas import (
    OrderOut,
    ProductIn,
    ProductOut,
    ProductUpdate,
    ProvisionalOrder,
    ProvisionalOrderIn,
    StatusUpdate,
    is_valid_order_id,
)
from .signature import SignatureVerifier
from .statuses import parse_status

_settings = get_settings()
configure_logging(_settings.log_level, _settings.log_format)
logger = structlog.get_logger(__name__)

# Create database tables on startup if they don't exist.
Base.metadata.create_all(bind=engine)

# --- App Instance ---
app = FastAPI(title="Checkout Reconciliation Service")


# --- Dependencies ---
@lru_cache
def get_pending_orders() -> PendingOrderStore:
    """One provisional order store per process."""
    return build_pending_order_store(get_settings())


@lru_cache
def get_payments_client() -> PaymentsClient:
    return PaymentsClient.from_settings(get_settings())


def get_signature_verifier(settings: Settings = Depends(get_settings)) -> SignatureVerifier:
    return SignatureVerifier(
        settings.mp_webhook_secret,
        max_age_seconds=settings.signature_max_age_seconds,
        allow_unsigned=settings.webhook_allow_unsigned,
    )


def _not_found(what: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"{what} not found"})


# --- Endpoints ---
@app.get("/")
def root():
    """Health check endpoint."""
    return {"message": "Reconciliation service is running"}


@app.get("/api/health")
def health():
    return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}


# Stores checkout intent before the buyer is sent to the hosted checkout.
@app.post("/api/pending-orders/{order_id}")
def store_pending_order(
    order_id: str,
    req: ProvisionalOrderIn,
    pending_orders: PendingOrderStore = Depends(get_pending_orders),
):
    if not is_valid_order_id(order_id):
        return JSONResponse(status_code=400, content={"error": "Invalid orderId"})

    pending_orders.put(order_id, ProvisionalOrder(order_id=order_id, **req.model_dump()))
    logger.info("pending_order_stored", order_id=order_id, quoted_total=str(req.quoted_total))
    return {"success": True}


# Payment provider notification endpoint.
@app.post("/api/mp/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    verifier: SignatureVerifier = Depends(get_signature_verifier),
    pending_orders: PendingOrderStore = Depends(get_pending_orders),
    payments: PaymentsClient = Depends(get_payments_client),
):
    """
    Reconciles one payment notification.
    - 200: acknowledged, the provider should not retry.
    - 400/401: integrity violation or unauthenticated sender.
    - 500: transient failure, the provider should retry.
    """
    # Exact bytes as received; the signature is computed over these.
    raw_body = await request.body()
    request_id = request.headers.get("x-request-id") or "unknown"
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    logger.info("webhook_received", path=request.url.path)

    # 1. Authenticate the sender.
    try:
        verifier.verify(request.headers, raw_body)
    except WebhookConfigurationError as e:
        if e.missing_secret:
            return JSONResponse(status_code=500, content={"error": "Webhook verification unavailable"})
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    except SignatureError:
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})

    try:
        body = json.loads(raw_body) if raw_body else {}
    except ValueError:
        body = {}
    payment_id, topic = extract_notification(request.query_params, body)

    # 2. Reconcile; database and provider calls block, so keep them off the event loop.
    reconciler = ReconciliationEngine(db, settings, pending_orders, payments)
    try:
        result = await run_in_threadpool(reconciler.process, payment_id, topic, request_id)
    except Exception:
        db.rollback()
        logger.exception("webhook_unexpected_error")
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    logger.info("webhook_processed", outcome=result.outcome, status_code=result.http_status)
    return JSONResponse(status_code=result.http_status, content={"outcome": result.outcome})


# Retrieves a single order by its ID; 404 until the webhook has created it.
@app.get("/api/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, db: Session = Depends(get_db)):
    order = store.find_order(db, order_id)
    if not order:
        return _not_found("Order")
    return order


# Administrative status override (e.g. Shipped, Completed).
@app.put("/api/orders/{order_id}")
def update_order_status(order_id: str, req: StatusUpdate, db: Session = Depends(get_db)):
    status = parse_status(req.status)
    if status is None:
        return JSONResponse(status_code=400, content={"error": f"Unknown status '{req.status}'"})

    order = store.find_order(db, order_id)
    if not order:
        return _not_found("Order")

    previous = order.status
    order.status = status.value
    store.save(db, order)
    logger.info("order_status_overridden", order_id=order_id, previous_status=previous, status=status.value)
    return {"success": True}


@app.get("/api/user-orders/{user_id}", response_model=List[OrderOut])
def list_user_orders(user_id: str, db: Session = Depends(get_db)):
    return store.list_orders(db, user_id=user_id)


@app.get("/api/all-orders", response_model=List[OrderOut])
def list_all_orders(db: Session = Depends(get_db)):
    return store.list_orders(db)


# --- Catalog maintenance ---
@app.get("/api/products", response_model=List[ProductOut])
def list_products(db: Session = Depends(get_db)):
    return db.query(Product).order_by(Product.name).all()


@app.post("/api/products", response_model=ProductOut)
def create_product(req: ProductIn, db: Session = Depends(get_db)):
    if store.find_product(db, req.id):
        return JSONResponse(status_code=409, content={"error": "Product already exists"})
    product = Product(**req.model_dump())
    db.add(product)
    db.commit()
    db.refresh(product)
    return product


@app.put("/api/products/{product_id}", response_model=ProductOut)
def update_product(product_id: str, req: ProductUpdate, db: Session = Depends(get_db)):
    product = store.find_product(db, product_id)
    if not product:
        return _not_found("Product")
    for field, value in req.model_dump(exclude_unset=True).items():
        if value is not None:
            setattr(product, field, value)
    return store.save(db, product)


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, db: Session = Depends(get_db)):
    product = store.find_product(db, product_id)
    if not product:
        return _not_found("Product")
    db.delete(product)
    db.commit()
    logger.info("product_deleted", product_id=product_id)
    return {"success": True}
