from typing import Dict, FrozenSet, List, Union

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from .errors import InvalidStatus, InvalidStatusTransition, NotFound
from .models import Order, OrderItem, OrderStatus
from .utils.logging import get_logger

logger = get_logger(__name__)

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
    try:
        return OrderStatus(value)
    except ValueError:
        allowed = ", ".join(s.value for s in OrderStatus)
        raise InvalidStatus(f"Invalid status. Allowed values: {allowed}") from None


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def update_order_status(session: Session, order_id: int, status: Union[str, OrderStatus]) -> Order:
    """
    Move an order to ``status``.

    Unknown statuses raise InvalidStatus, transitions outside the allow-list
    raise InvalidStatusTransition. The order row is locked for the update.
    """
    target = parse_status(status)
    order = session.execute(
        select(Order).where(Order.id == order_id).with_for_update()
    ).scalar_one_or_none()
    if order is None:
        raise NotFound("Order not found")

    current = OrderStatus(order.status)
    if not can_transition(current, target):
        raise InvalidStatusTransition(f"cannot move order from {current.value} to {target.value}")

    order.status = target.value
    session.flush()
    logger.info("Order status updated", order_id=order_id, previous=current.value, status=target.value)
    return order


def list_orders_for_user(session: Session, user_id: int) -> List[Order]:
    # newest first; items and their products loaded eagerly
    return list(
        session.execute(
            select(Order)
            .where(Order.user_id == user_id)
            .options(selectinload(Order.items).selectinload(OrderItem.product))
            .order_by(Order.created_at.desc(), Order.id.desc())
        ).scalars().all()
    )
