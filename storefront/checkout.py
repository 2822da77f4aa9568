"""Checkout: turn a user's cart into an order without overselling stock.

The three steps run inside one unit of work:

1. ``read_cart_snapshot`` reads the cart joined with product price and stock,
   locking the product rows in ascending id order so that concurrent
   checkouts on overlapping products queue behind each other instead of
   deadlocking.
2. ``validate_snapshot`` rejects an empty cart and any line asking for more
   than is in stock. There is no partial checkout.
3. ``commit_order`` writes the order and its lines with the price frozen,
   decrements stock and removes the ordered lines from the cart.

Any error leaves cart, stock and orders exactly as they were.
"""

from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from .db import unit_of_work
from .errors import EmptyCart, InsufficientStock, NotFound
from .models import CartItem, Order, OrderItem, OrderStatus, Product, User
from .utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class SnapshotLine:
    product_id: int
    quantity: int
    unit_price: int
    available_stock: int


@dataclass(frozen=True)
class CheckoutResult:
    order_id: int
    total_amount: int
    status: str


def read_cart_snapshot(session: Session, user_id: int) -> List[SnapshotLine]:
    """
    Return the user's cart lines with current price and stock.
    Product rows, and the user's cart rows, stay locked until the enclosing
    transaction ends.
    """
    stmt = (
        select(CartItem.product_id, CartItem.quantity, Product.price, Product.stock_quantity)
        .join(Product, Product.id == CartItem.product_id)
        .where(CartItem.user_id == user_id)
        .order_by(Product.id)
        .with_for_update(of=[Product, CartItem])
    )
    return [SnapshotLine(*row) for row in session.execute(stmt).all()]


def validate_snapshot(lines: List[SnapshotLine]) -> None:
    if not lines:
        raise EmptyCart()
    for line in lines:
        if line.quantity > line.available_stock:
            raise InsufficientStock(line.product_id, line.quantity, line.available_stock)


def commit_order(session: Session, user_id: int, lines: List[SnapshotLine]) -> CheckoutResult:
    """
    Persist the order for a validated snapshot.

    The stock update is guarded by ``stock_quantity >= quantity`` as well,
    so a row that was not locked by the reader still cannot go negative.
    """
    total = sum(line.unit_price * line.quantity for line in lines)
    order = Order(user_id=user_id, total_amount=total, status=OrderStatus.PENDING.value)
    session.add(order)
    session.flush()  # get order.id

    for line in lines:
        session.add(
            OrderItem(
                order_id=order.id,
                product_id=line.product_id,
                quantity=line.quantity,
                price_at_purchase=line.unit_price,
            )
        )
    session.flush()

    for line in lines:
        res = session.execute(
            update(Product)
            .where(Product.id == line.product_id, Product.stock_quantity >= line.quantity)
            .values(stock_quantity=Product.stock_quantity - line.quantity)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InsufficientStock(line.product_id, line.quantity, line.available_stock)

    session.execute(
        delete(CartItem)
        .where(CartItem.user_id == user_id, CartItem.product_id.in_([line.product_id for line in lines]))
        .execution_options(synchronize_session=False)
    )
    return CheckoutResult(order_id=order.id, total_amount=total, status=order.status)


def checkout(
    user_id: int,
    factory: Optional[sessionmaker] = None,
    timeout_ms: Optional[int] = None,
) -> CheckoutResult:
    """Place an order for everything in the user's cart, all or nothing."""
    with unit_of_work(factory, timeout_ms=timeout_ms) as session:
        if session.get(User, user_id) is None:
            raise NotFound(f"user {user_id} not found")
        lines = read_cart_snapshot(session, user_id)
        validate_snapshot(lines)
        result = commit_order(session, user_id, lines)

    logger.info(
        "Checkout committed",
        user_id=user_id,
        order_id=result.order_id,
        total_amount=result.total_amount,
        lines=len(lines),
    )
    return result
