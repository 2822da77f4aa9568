"""Failures raised by the storefront services.

Each error carries the HTTP status the service answers with, so route
handlers can let them propagate to the application's exception handler.
"""

from typing import Optional


class StorefrontError(Exception):
    status_code = 500
    detail = "internal error"

    def __init__(self, detail: Optional[str] = None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)


class NotFound(StorefrontError):
    status_code = 404
    detail = "not found"


class Conflict(StorefrontError):
    status_code = 409
    detail = "conflict"


class EmptyCart(StorefrontError):
    status_code = 400
    detail = "Your cart is empty"


class InsufficientStock(StorefrontError):
    status_code = 409

    def __init__(self, product_id: int, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"insufficient stock for product {product_id}: requested {requested}, available {available}"
        )


class TransactionFailure(StorefrontError):
    status_code = 500
    detail = "checkout could not be completed"


class InvalidStatus(StorefrontError):
    status_code = 422


class InvalidStatusTransition(StorefrontError):
    status_code = 409
