import os
import time
from typing import List

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import cart as cart_service
from . import orders as order_service
from .checkout import checkout
from .db import get_session, get_sessionmaker, init_db
from .errors import Conflict, NotFound, StorefrontError
from .models import Product, User
from .retry import retry_on_transient_failure
from .schemas import (
    CartItemIn,
    CartItemOut,
    CartOut,
    CheckoutOut,
    MessageOut,
    OrderItemOut,
    OrderOut,
    OrderStatusIn,
    ProductIn,
    ProductOut,
    UserIn,
    UserOut,
)
from .utils.logging import add_context, clear_context, configure_logging, get_logger

APP_NAME = "storefront"

# Optional prefix for routes. Leave empty ("") if your Gateway strips /api/v1.
API_PREFIX = os.getenv("API_PREFIX", "").strip()
if API_PREFIX and not API_PREFIX.startswith("/"):
    API_PREFIX = "/" + API_PREFIX
API_PREFIX = API_PREFIX.rstrip("/")

logger = get_logger(__name__)

app = FastAPI(title=APP_NAME)
router = APIRouter(prefix=API_PREFIX)

# ---- Startup: logging, schema + tables (idempotent) ----
@app.on_event("startup")
def on_startup():
    configure_logging()
    init_db()

# ---- Prometheus metrics ----
REQS = Counter("http_requests_total", "Total HTTP requests", ["service", "path", "method", "status"])
LAT = Histogram("http_request_duration_seconds", "Request latency", ["service", "path", "method"])
CHECKOUTS = Counter("checkouts_total", "Checkouts committed")
CHECKOUTS_FAILED = Counter("checkout_failures_total", "Checkout failures", ["reason"])

@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    clear_context()
    add_context(path=request.url.path, method=request.method)
    response = await call_next(request)
    REQS.labels(APP_NAME, request.url.path, request.method, response.status_code).inc()
    LAT.labels(APP_NAME, request.url.path, request.method).observe(time.time() - start)
    return response

@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("Request failed", error=exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

# Gateway sets X-User (user id) and X-Role; require them for protected endpoints
def require_user(request: Request) -> int:
    user = request.headers.get("X-User")
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing X-User")
    try:
        return int(user)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid X-User") from None

def require_admin(request: Request, user: int = Depends(require_user)) -> int:
    if request.headers.get("X-Role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin access required")
    return user

@app.get("/health", response_class=PlainTextResponse)
def health():
    return "ok"

@app.get("/metrics")
def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

# ---------- Users ----------
@router.post("/users", response_model=UserOut, status_code=201)
def register_user(payload: UserIn, session: Session = Depends(get_session)):
    u = User(email=payload.email.strip().lower(), role=payload.role)
    session.add(u)
    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Email already in use") from None
    session.refresh(u)
    return u

@router.get("/users/{uid}", response_model=UserOut)
def get_user(uid: int, session: Session = Depends(get_session)):
    u = session.get(User, uid)
    if not u:
        raise NotFound("User not found")
    return u

# ---------- Catalog ----------
@router.get("/products", response_model=List[ProductOut])
def list_products(session: Session = Depends(get_session)):
    return session.execute(select(Product).order_by(Product.id)).scalars().all()

@router.post("/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductIn, user: int = Depends(require_admin), session: Session = Depends(get_session)):
    p = Product(**payload.model_dump())
    session.add(p)
    session.flush()
    session.refresh(p)
    return p

@router.get("/products/{pid}", response_model=ProductOut)
def get_product(pid: int, session: Session = Depends(get_session)):
    p = session.get(Product, pid)
    if not p:
        raise NotFound("Product not found")
    return p

@router.put("/products/{pid}", response_model=ProductOut)
def update_product(pid: int, payload: ProductIn, user: int = Depends(require_admin), session: Session = Depends(get_session)):
    # stock is set directly; checkouts holding the row lock finish first
    p = session.execute(select(Product).where(Product.id == pid).with_for_update()).scalar_one_or_none()
    if not p:
        raise NotFound("Product not found")
    for field, value in payload.model_dump().items():
        setattr(p, field, value)
    session.flush()
    session.refresh(p)
    return p

@router.delete("/products/{pid}", status_code=204)
def delete_product(pid: int, user: int = Depends(require_admin), session: Session = Depends(get_session)):
    p = session.get(Product, pid)
    if not p:
        raise NotFound("Product not found")
    session.delete(p)
    try:
        session.flush()
    except IntegrityError:
        raise Conflict("Could not delete product. It may be part of an existing order.") from None
    return Response(status_code=204)

# ---------- Cart ----------
@router.get("/cart", response_model=CartOut)
def get_cart(user: int = Depends(require_user), session: Session = Depends(get_session)):
    items = [
        CartItemOut(
            product_id=p.id,
            name=p.name,
            price=p.price,
            quantity=ci.quantity,
            subtotal=p.price * ci.quantity,
        )
        for ci, p in cart_service.get_cart(session, user)
    ]
    return CartOut(items=items, total_price=sum(i.subtotal for i in items))

@router.post("/cart", response_model=MessageOut)
def add_to_cart(payload: CartItemIn, user: int = Depends(require_user), session: Session = Depends(get_session)):
    if session.get(User, user) is None:
        raise NotFound("User not found")
    cart_service.add_to_cart(session, user, payload.product_id, payload.quantity)
    return MessageOut(message="Item added to cart successfully")

@router.delete("/cart/{pid}", response_model=MessageOut)
def remove_from_cart(pid: int, user: int = Depends(require_user), session: Session = Depends(get_session)):
    cart_service.remove_from_cart(session, user, pid)
    return MessageOut(message="Item removed from cart successfully")

# ---------- Checkout & orders ----------
@retry_on_transient_failure()
def checkout_with_retry(user_id: int, factory: sessionmaker):
    # each attempt is a fresh unit of work with a fresh snapshot
    return checkout(user_id, factory)

@router.post("/checkout", response_model=CheckoutOut, status_code=201)
def place_order(user: int = Depends(require_user), factory: sessionmaker = Depends(get_sessionmaker)):
    try:
        result = checkout_with_retry(user, factory)
    except StorefrontError as e:
        CHECKOUTS_FAILED.labels(reason=type(e).__name__).inc()
        raise
    CHECKOUTS.inc()
    return CheckoutOut(order_id=result.order_id, total_amount=result.total_amount, status=result.status)

@router.get("/orders", response_model=List[OrderOut])
def list_my_orders(user: int = Depends(require_user), session: Session = Depends(get_session)):
    return [
        OrderOut(
            order_id=o.id,
            total_amount=o.total_amount,
            status=o.status,
            created_at=o.created_at,
            items=[
                OrderItemOut(
                    product_id=i.product_id,
                    product_name=i.product.name,
                    quantity=i.quantity,
                    price_at_purchase=i.price_at_purchase,
                )
                for i in o.items
            ],
        )
        for o in order_service.list_orders_for_user(session, user)
    ]

@router.put("/orders/{oid}/status", response_model=MessageOut)
def update_order_status(oid: int, payload: OrderStatusIn, user: int = Depends(require_admin), session: Session = Depends(get_session)):
    order = order_service.update_order_status(session, oid, payload.status)
    return MessageOut(message=f"Order status updated to {order.status}")

app.include_router(router)
