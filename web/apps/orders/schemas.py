"""Pydantic schemas for orders.

This module exposes the request/validation schema for checkout and the
read schema used to render orders in API responses.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import Order

PAYMENT_METHODS = {"cod", "online"}


class OrderItemIn(BaseModel):
    """Input schema for a single checkout line.

    Attributes:
        product: Product identifier.
        variant: Optional variant identifier; blank values mean no variant.
        qty: Positive integer indicating units requested.
        name: Display name stored on the order.
        price: Unit price stored on the order.

    Unknown keys (such as a client-side ``_id``) are dropped.
    """

    model_config = ConfigDict(extra="ignore")

    product: str = Field(min_length=1, max_length=64)
    variant: Optional[str] = Field(default=None, max_length=64)
    qty: int = Field(gt=0)
    name: str = Field(min_length=1, max_length=255)
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)

    @field_validator("variant")
    @classmethod
    def blank_variant_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class ShippingAddressIn(BaseModel):
    model_config = ConfigDict(extra="ignore")

    address: str = Field(min_length=1, max_length=255)
    city: str = Field(min_length=1, max_length=120)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=1, max_length=80)
    phone: Optional[str] = Field(default=None, max_length=32)


class CheckoutDTO(BaseModel):
    """Schema for placing an order.

    Attributes:
        order_items: Lines of the checkout. May be empty here; the domain
            service rejects empty orders with ``EMPTY_ORDER``.
        shipping_address: Delivery address.
        payment_method: ``cod`` or ``online``, normalized to lowercase.
        items_price: Sum of the line prices computed by the client.
        discount_price: Discount applied by the client.
        total_price: Amount due.
    """

    order_items: list[OrderItemIn]
    shipping_address: ShippingAddressIn
    payment_method: str
    items_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    discount_price: Decimal = Field(default=Decimal("0"), ge=0, max_digits=12, decimal_places=2)
    total_price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)

    @field_validator("payment_method")
    @classmethod
    def validate_payment_method(cls, v: str) -> str:
        """Validate and normalize the payment method.

        Raises:
            ValueError: When the method is not supported.
        """
        v2 = v.strip().lower()
        if v2 not in PAYMENT_METHODS:
            raise ValueError("Unsupported payment method")
        return v2


class OrderLineOut(BaseModel):
    id: UUID
    product: str
    variant: Optional[str] = None
    name: str
    qty: int
    price: Decimal


class OrderReadDTO(BaseModel):
    """Read schema for an order as returned by the API."""

    id: UUID
    user: int | str
    order_items: list[OrderLineOut]
    shipping_address: dict
    payment_method: str
    items_price: Decimal
    discount_price: Decimal
    total_price: Decimal
    is_paid: bool
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            user=order.user_id,
            order_items=[
                OrderLineOut(
                    id=ln.id,
                    product=ln.product_id,
                    variant=ln.variant_id,
                    name=ln.name,
                    qty=ln.quantity,
                    price=ln.unit_price,
                )
                for ln in order.lines
            ],
            shipping_address=order.shipping_address,
            payment_method=order.payment_method.value,
            items_price=order.pricing.items_price,
            discount_price=order.pricing.discount_price,
            total_price=order.pricing.total_price,
            is_paid=order.is_paid,
            paid_at=order.paid_at,
            created_at=order.created_at,
        )
