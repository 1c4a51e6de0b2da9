"""Pydantic schemas for orders.

This module exposes the request/validation schemas used by the checkout
and admin endpoints, and the read models the order endpoints return. Field
names on the wire are camelCase, as the storefront sends and expects them.
"""

import re
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .domain import CartLine, Checkout, CustomerInfo, DeliveryMethod, Order, PaymentMethod

PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CartItemIn(BaseModel):
    """Input schema for a single cart line.

    Attributes:
        product_id: Catalog product id (``id`` on the wire).
        product_name: Display name (``name`` on the wire).
        brand: Brand name.
        size: Shoe size; numbers are accepted and kept as strings.
        quantity: Positive integer indicating units requested.
        price: Unit price in whole rand.
        images: Product image URLs; the first one is kept on the order.
    """

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="id", min_length=1, max_length=64)
    product_name: str = Field(alias="name", min_length=1, max_length=200)
    brand: str = Field(default="", max_length=100)
    size: str = Field(min_length=1, max_length=8)
    quantity: int = Field(gt=0, le=100)
    price: int = Field(ge=0)
    images: List[str] = Field(default_factory=list)

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        if not PRODUCT_ID_RE.match(v):
            raise ValueError("Invalid product id")
        return v

    @field_validator("size", mode="before")
    @classmethod
    def size_as_string(cls, v):
        return str(v) if isinstance(v, (int, float)) else v

    def to_domain(self) -> CartLine:
        return CartLine(
            product_id=self.product_id,
            product_name=self.product_name,
            brand=self.brand,
            size=self.size,
            quantity=self.quantity,
            price=self.price,
            image_url=self.images[0] if self.images else None,
        )


class CustomerInfoIn(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    full_name: str = Field(default="", max_length=200)
    email: str = Field(default="", max_length=254)
    phone: str = Field(default="", max_length=32)
    address: str = Field(default="", max_length=255)
    city: str = Field(default="", max_length=100)
    postal_code: str = Field(default="", max_length=16)
    delivery: Literal["standard", "express"] = "standard"
    payment: Literal["card", "eft", "cod"] = "card"

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Normalize the email; an empty value is left for the domain to reject.

        Raises:
            ValueError: When a non-empty value is not an email address.
        """
        v = v.strip()
        if v and not EMAIL_RE.match(v):
            raise ValueError("Invalid email address")
        return v


class CheckoutDTO(BaseModel):
    """Schema for the create-payment-intent call.

    Attributes:
        cart: Cart lines.
        customer_info: Contact, delivery and payment choices
            (``customerInfo`` on the wire).
        user_id: Signed-in customer, if any.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    cart: List[CartItemIn]
    customer_info: CustomerInfoIn
    user_id: Optional[str] = Field(default=None, max_length=64)

    def to_domain(self) -> Checkout:
        c = self.customer_info
        return Checkout(
            cart=[item.to_domain() for item in self.cart],
            customer=CustomerInfo(
                full_name=c.full_name,
                email=c.email,
                phone=c.phone,
                address=c.address,
                city=c.city,
                postal_code=c.postal_code,
                delivery_method=DeliveryMethod(c.delivery),
                payment_method=PaymentMethod(c.payment),
                user_id=self.user_id,
            ),
        )


class OrderStatusDTO(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    order_status: str = Field(min_length=1, max_length=32)


class _CamelOut(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OrderItemOut(_CamelOut):
    product_id: str
    product_name: str
    brand: str
    size: str
    quantity: int
    price: int
    image_url: Optional[str] = None


class OrderTrackDTO(_CamelOut):
    """Public view of an order, looked up by its order number."""

    order_number: str
    order_status: str
    payment_status: str
    delivery_method: str
    items: List[OrderItemOut]
    total: int
    currency: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderTrackDTO":
        return cls(**_common_fields(order))


class OrderReadDTO(OrderTrackDTO):
    """Full view of an order, for the order page and the admin list."""

    id: str
    customer_name: str
    customer_email: str
    customer_phone: str
    delivery_address: str
    delivery_city: str
    delivery_postal_code: str
    payment_method: str
    subtotal: int
    delivery_cost: int
    payment_intent_id: Optional[str] = None
    refund_required: bool = False

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        c = order.customer
        return cls(
            **_common_fields(order),
            id=str(order.id),
            customer_name=c.full_name,
            customer_email=c.email,
            customer_phone=c.phone,
            delivery_address=c.address,
            delivery_city=c.city,
            delivery_postal_code=c.postal_code,
            payment_method=c.payment_method.value,
            subtotal=order.subtotal,
            delivery_cost=order.delivery_cost,
            payment_intent_id=order.payment_intent_id,
            refund_required=order.refund_required,
        )


def _common_fields(order: Order) -> dict:
    return {
        "order_number": order.order_number,
        "order_status": order.order_status.value,
        "payment_status": order.payment_status.value,
        "delivery_method": order.customer.delivery_method.value,
        "items": [
            OrderItemOut(
                product_id=it.product_id,
                product_name=it.product_name,
                brand=it.brand,
                size=it.size,
                quantity=it.quantity,
                price=it.price,
                image_url=it.image_url,
            )
            for it in order.items
        ],
        "total": order.total,
        "currency": order.currency,
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }
