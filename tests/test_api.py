"""HTTP tests for the storefront service via TestClient."""

import pytest
import structlog
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

import storefront.main
from storefront.checkout import CheckoutResult
from storefront.errors import TransactionFailure
from storefront.utils.logging import add_context, clear_context

ADMIN = {"X-User": "1", "X-Role": "admin"}


def as_user(uid):
    return {"X-User": str(uid)}


@pytest.fixture()
def buyer(client):
    response = client.post("/users", json={"email": "Buyer@Example.com"})
    assert response.status_code == 201
    return response.json()["id"]


def _create_product(client, name="Keyboard", price=1000, stock=50):
    response = client.post(
        "/products",
        json={"name": name, "price": price, "stock_quantity": stock},
        headers=ADMIN,
    )
    assert response.status_code == 201
    return response.json()["id"]


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.text == "ok"


def test_register_user(client, buyer):
    response = client.get(f"/users/{buyer}")
    assert response.json() == {"id": buyer, "email": "buyer@example.com", "role": "customer"}

    dup = client.post("/users", json={"email": "buyer@example.com"})
    assert dup.status_code == 409

    assert client.get("/users/999").status_code == 404


def test_product_admin_routes_require_admin(client):
    payload = {"name": "Mug", "price": 300, "stock_quantity": 5}
    assert client.post("/products", json=payload).status_code == 401
    assert client.post("/products", json=payload, headers=as_user(5)).status_code == 403
    assert client.post("/products", json={**payload, "price": 0}, headers=ADMIN).status_code == 422


def test_product_crud(client):
    pid = _create_product(client, name="Mug", price=300, stock=5)

    response = client.put(
        f"/products/{pid}",
        json={"name": "Mug XL", "price": 350, "stock_quantity": 8},
        headers=ADMIN,
    )
    assert response.status_code == 200
    assert response.json()["stock_quantity"] == 8

    assert [p["name"] for p in client.get("/products").json()] == ["Mug XL"]

    assert client.delete(f"/products/{pid}", headers=ADMIN).status_code == 204
    assert client.get(f"/products/{pid}").status_code == 404


def test_cart_upsert_and_remove(client, buyer):
    pid = _create_product(client, price=1000)

    for qty in (2, 3):
        response = client.post("/cart", json={"product_id": pid, "quantity": qty}, headers=as_user(buyer))
        assert response.status_code == 200

    cart = client.get("/cart", headers=as_user(buyer)).json()
    assert cart["total_price"] == 5000
    assert [(i["product_id"], i["quantity"], i["subtotal"]) for i in cart["items"]] == [(pid, 5, 5000)]

    assert client.post("/cart", json={"product_id": pid, "quantity": 0}, headers=as_user(buyer)).status_code == 422
    assert client.post("/cart", json={"product_id": 999, "quantity": 1}, headers=as_user(buyer)).status_code == 404

    assert client.delete(f"/cart/{pid}", headers=as_user(buyer)).status_code == 200
    assert client.delete(f"/cart/{pid}", headers=as_user(buyer)).status_code == 404


def test_checkout_flow(client, buyer):
    keyboard = _create_product(client, name="Keyboard", price=1000, stock=50)
    mouse = _create_product(client, name="Mouse", price=500, stock=10)
    client.post("/cart", json={"product_id": keyboard, "quantity": 2}, headers=as_user(buyer))
    client.post("/cart", json={"product_id": mouse, "quantity": 1}, headers=as_user(buyer))

    response = client.post("/checkout", headers=as_user(buyer))
    assert response.status_code == 201
    body = response.json()
    assert body["total_amount"] == 2500
    assert body["status"] == "pending"

    assert client.get(f"/products/{keyboard}").json()["stock_quantity"] == 48
    assert client.get(f"/products/{mouse}").json()["stock_quantity"] == 9
    assert client.get("/cart", headers=as_user(buyer)).json()["items"] == []

    orders = client.get("/orders", headers=as_user(buyer)).json()
    assert len(orders) == 1
    assert orders[0]["order_id"] == body["order_id"]
    assert sorted((i["product_name"], i["price_at_purchase"]) for i in orders[0]["items"]) == [
        ("Keyboard", 1000),
        ("Mouse", 500),
    ]

    again = client.post("/checkout", headers=as_user(buyer))
    assert again.status_code == 400


def test_checkout_conflict_rolls_back(client, buyer):
    pid = _create_product(client, name="Limited Edition Poster", price=2000, stock=5)
    client.post("/cart", json={"product_id": pid, "quantity": 10}, headers=as_user(buyer))

    response = client.post("/checkout", headers=as_user(buyer))
    assert response.status_code == 409

    assert client.get(f"/products/{pid}").json()["stock_quantity"] == 5
    assert client.get("/orders", headers=as_user(buyer)).json() == []
    assert len(client.get("/cart", headers=as_user(buyer)).json()["items"]) == 1


def test_checkout_requires_identity(client):
    assert client.post("/checkout").status_code == 401
    assert client.post("/checkout", headers={"X-User": "abc"}).status_code == 401
    assert client.post("/checkout", headers=as_user(777)).status_code == 404


def test_order_status_updates(client, buyer):
    pid = _create_product(client)
    client.post("/cart", json={"product_id": pid, "quantity": 1}, headers=as_user(buyer))
    order_id = client.post("/checkout", headers=as_user(buyer)).json()["order_id"]
    url = f"/orders/{order_id}/status"

    assert client.put(url, json={"status": "processing"}, headers=as_user(buyer)).status_code == 403
    assert client.put(url, json={"status": "lost"}, headers=ADMIN).status_code == 422

    response = client.put(url, json={"status": "processing"}, headers=ADMIN)
    assert response.status_code == 200
    assert response.json()["message"] == "Order status updated to processing"

    assert client.put(url, json={"status": "pending"}, headers=ADMIN).status_code == 409
    assert client.put("/orders/999/status", json={"status": "cancelled"}, headers=ADMIN).status_code == 404


def test_ordered_product_cannot_be_deleted(client, buyer):
    pid = _create_product(client)
    client.post("/cart", json={"product_id": pid, "quantity": 1}, headers=as_user(buyer))
    client.post("/checkout", headers=as_user(buyer))

    assert client.delete(f"/products/{pid}", headers=ADMIN).status_code == 409
    assert client.get(f"/products/{pid}").status_code == 200


def test_metrics_count_checkouts(client, buyer):
    client.post("/checkout", headers=as_user(buyer))

    text = client.get("/metrics").text
    assert "checkouts_total" in text
    assert 'checkout_failures_total{reason="EmptyCart"}' in text


class FakeDriverError(Exception):
    def __init__(self, message, sqlstate=None):
        super().__init__(message)
        self.sqlstate = sqlstate


def _transaction_failure(sqlstate):
    failure = TransactionFailure()
    failure.__cause__ = OperationalError("SELECT ... FOR UPDATE", {}, FakeDriverError("aborted", sqlstate))
    return failure


def test_checkout_retries_serialization_failures(client, buyer, monkeypatch):
    calls = []

    def flaky_checkout(user_id, factory):
        calls.append(user_id)
        if len(calls) < 3:
            raise _transaction_failure("40001")
        return CheckoutResult(order_id=11, total_amount=900, status="pending")

    monkeypatch.setattr(storefront.main, "checkout", flaky_checkout)

    response = client.post("/checkout", headers=as_user(buyer))

    assert response.status_code == 201
    assert response.json()["order_id"] == 11
    assert calls == [buyer, buyer, buyer]


def test_transaction_failure_maps_to_server_error(client, buyer, monkeypatch):
    calls = []

    def broken_checkout(user_id, factory):
        calls.append(user_id)
        raise _transaction_failure("08006")

    monkeypatch.setattr(storefront.main, "checkout", broken_checkout)
    before = REGISTRY.get_sample_value("checkout_failures_total", {"reason": "TransactionFailure"}) or 0

    response = client.post("/checkout", headers=as_user(buyer))

    assert response.status_code == 500
    assert response.json() == {"detail": TransactionFailure.detail}
    assert len(calls) == 1
    after = REGISTRY.get_sample_value("checkout_failures_total", {"reason": "TransactionFailure"})
    assert after == before + 1


def test_request_log_context_is_reset(client, monkeypatch):
    cleared = []
    monkeypatch.setattr(storefront.main, "clear_context", lambda: cleared.append(True))

    client.get("/health")
    client.get("/health")

    assert cleared == [True, True]


def test_clear_context_drops_bindings():
    add_context(path="/stale", method="GET")
    clear_context()
    assert structlog.contextvars.get_contextvars() == {}
