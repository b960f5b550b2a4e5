"""Repository layer for persisting orders.

This module implements ``OrderStorePort`` on top of the Django ORM. It keeps
a thin interface so the domain layer never touches ORM types: callers get
domain ``Order`` objects back.
"""

from datetime import datetime
from typing import Optional

from django.db import transaction

from .domain import Order, OrderDraft, OrderLine, OrderStorePort, PaymentMethod, Pricing
from .models import OrderLineModel, OrderModel


def to_domain(obj: OrderModel) -> Order:
    """Map an ``OrderModel`` (with its lines) to a domain ``Order``."""
    return Order(
        id=str(obj.id),
        user_id=obj.user_id,
        lines=[
            OrderLine(
                id=str(ln.id),
                position=ln.position,
                product_id=ln.product_id,
                variant_id=ln.variant_id,
                name=ln.name,
                quantity=ln.quantity,
                unit_price=ln.unit_price,
            )
            for ln in obj.lines.all()
        ],
        shipping_address=obj.shipping_address,
        payment_method=PaymentMethod(obj.payment_method),
        pricing=Pricing(
            items_price=obj.items_price,
            discount_price=obj.discount_price,
            total_price=obj.total_price,
        ),
        is_paid=obj.is_paid,
        paid_at=obj.paid_at,
        created_at=obj.created_at,
    )


class OrderRepository(OrderStorePort):
    """Repository that persists orders and their lines using Django ORM."""

    @transaction.atomic
    def create(self, draft: OrderDraft, paid_at: Optional[datetime]) -> Order:
        """Persist a new order together with its lines.

        The order row and every line are written in one transaction, so an
        order is never visible without its lines. Line ids are generated by
        the model, never taken from the client.

        Args:
            draft: Checkout data to persist.
            paid_at: Payment timestamp, or None for unpaid orders.

        Returns:
            The persisted order as a domain ``Order``.
        """
        obj = OrderModel.objects.create(
            user_id=draft.user_id,
            shipping_address=draft.shipping_address,
            payment_method=PaymentMethod(draft.payment_method).value,
            items_price=draft.pricing.items_price,
            discount_price=draft.pricing.discount_price,
            total_price=draft.pricing.total_price,
            is_paid=paid_at is not None,
            paid_at=paid_at,
        )
        OrderLineModel.objects.bulk_create(
            [
                OrderLineModel(
                    order=obj,
                    position=pos,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for pos, item in enumerate(draft.items)
            ]
        )
        return to_domain(obj)

    def delete(self, order_id: str) -> None:
        """Hard-delete an order; its lines are removed by cascade."""
        OrderModel.objects.filter(id=order_id).delete()

    def get(self, order_id) -> Order | None:
        obj = OrderModel.objects.prefetch_related("lines").filter(id=order_id).first()
        return to_domain(obj) if obj else None

    def for_user(self, user_id) -> list[Order]:
        qs = OrderModel.objects.filter(user_id=user_id).prefetch_related("lines").order_by("-created_at")
        return [to_domain(o) for o in qs]
