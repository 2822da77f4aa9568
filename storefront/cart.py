from typing import List, Tuple

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from .errors import NotFound
from .models import CartItem, Product

_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def add_to_cart(session: Session, user_id: int, product_id: int, quantity: int) -> None:
    """
    Add ``quantity`` of a product to the cart; an existing line is
    incremented rather than duplicated.
    """
    if session.get(Product, product_id) is None:
        raise NotFound("Product not found")

    insert = _INSERTS[session.get_bind().dialect.name]
    stmt = insert(CartItem).values(user_id=user_id, product_id=product_id, quantity=quantity)
    stmt = stmt.on_conflict_do_update(
        index_elements=[CartItem.user_id, CartItem.product_id],
        set_={"quantity": CartItem.quantity + stmt.excluded.quantity},
    )
    session.execute(stmt)


def get_cart(session: Session, user_id: int) -> List[Tuple[CartItem, Product]]:
    rows = session.execute(
        select(CartItem, Product)
        .join(Product, Product.id == CartItem.product_id)
        .where(CartItem.user_id == user_id)
        .order_by(CartItem.created_at.desc(), CartItem.id.desc())
    ).all()
    return [(item, product) for item, product in rows]


def remove_from_cart(session: Session, user_id: int, product_id: int) -> None:
    res = session.execute(
        delete(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
    )
    if res.rowcount == 0:
        raise NotFound("Item not found in your cart")
