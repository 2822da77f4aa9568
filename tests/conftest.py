import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import func, select  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from storefront.db import get_sessionmaker, init_db, make_engine  # noqa: E402
from storefront.main import app  # noqa: E402
from storefront.models import CartItem, Order, Product, User  # noqa: E402


@pytest.fixture()
def engine(tmp_path):
    eng = make_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def client(factory):
    app.dependency_overrides[get_sessionmaker] = lambda: factory
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture()
def make_user(factory):
    def _make(email="buyer@example.com", role="customer"):
        with factory() as s:
            u = User(email=email, role=role)
            s.add(u)
            s.commit()
            return u.id

    return _make


@pytest.fixture()
def make_product(factory):
    def _make(name="Widget", price=1000, stock=10):
        with factory() as s:
            p = Product(name=name, price=price, stock_quantity=stock)
            s.add(p)
            s.commit()
            return p.id

    return _make


@pytest.fixture()
def add_line(factory):
    def _add(user_id, product_id, quantity):
        with factory() as s:
            s.add(CartItem(user_id=user_id, product_id=product_id, quantity=quantity))
            s.commit()

    return _add


@pytest.fixture()
def db_state(factory):
    """Read back stock, cart and order counts for assertions."""

    class State:
        def stock(self, product_id):
            with factory() as s:
                return s.get(Product, product_id).stock_quantity

        def cart_lines(self, user_id):
            with factory() as s:
                return s.scalar(select(func.count()).select_from(CartItem).where(CartItem.user_id == user_id))

        def orders(self, user_id):
            with factory() as s:
                return s.scalar(select(func.count()).select_from(Order).where(Order.user_id == user_id))

    return State()
