from datetime import datetime
from typing import List, Literal

from pydantic import BaseModel, ConfigDict, Field

from .models import OrderStatus


class UserIn(BaseModel):
    email: str = Field(min_length=3, max_length=255, pattern=r"^[^@\s]+@[^@\s]+$")
    role: Literal["customer", "admin"] = "customer"


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    role: str


class ProductIn(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    price: int = Field(gt=0)
    stock_quantity: int = Field(ge=0, default=0)


class ProductOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    price: int
    stock_quantity: int


class CartItemIn(BaseModel):
    product_id: int = Field(ge=1)
    quantity: int = Field(gt=0)


class CartItemOut(BaseModel):
    product_id: int
    name: str
    price: int
    quantity: int
    subtotal: int


class CartOut(BaseModel):
    items: List[CartItemOut]
    total_price: int


class CheckoutOut(BaseModel):
    order_id: int
    total_amount: int
    status: str
    message: str = "Checkout successful! Your order has been placed."


class OrderItemOut(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    price_at_purchase: int


class OrderOut(BaseModel):
    order_id: int
    total_amount: int
    status: str
    created_at: datetime
    items: List[OrderItemOut]


class OrderStatusIn(BaseModel):
    status: OrderStatus


class MessageOut(BaseModel):
    message: str
