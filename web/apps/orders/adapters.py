"""In-process adapters for the orders domain ports.

``InMemoryStock`` implements ``StockPort`` without any network calls and is
used for unit tests and local development when the inventory service is not
running. ``InMemoryOrderStore`` implements ``OrderStorePort`` for domain
tests that do not need the database.
"""

import threading
import uuid
from datetime import datetime, timezone
from typing import Optional

from .domain import Order, OrderDraft, OrderLine, OrderStorePort, StockLevel, StockPort


class InMemoryStock(StockPort):
    """Thread-safe stock store keyed by ``(product_id, variant_id)``.

    Decrements are checked and applied under one lock, so concurrent
    checkouts can never drive a quantity below zero. Applied decrements are
    recorded per ``(order_id, line)`` so retries and restores act once.
    """

    def __init__(self, levels: dict | None = None):
        self._lock = threading.Lock()
        self._levels: dict[tuple[str, str], int] = {}
        self.movements: list[tuple[str, str, int, str, int]] = []
        self._applied: dict[tuple[str, int], tuple[str, str, int]] = {}
        self._restored: set[tuple[str, int]] = set()
        for key, qty in (levels or {}).items():
            product_id, variant_id = key if isinstance(key, tuple) else (key, None)
            self.set(product_id, variant_id, qty)

    @staticmethod
    def _key(product_id: str, variant_id: Optional[str]) -> tuple[str, str]:
        return product_id, variant_id or ""

    def set(self, product_id: str, variant_id: Optional[str], quantity: int) -> None:
        if quantity < 0:
            raise ValueError("NEGATIVE_STOCK")
        with self._lock:
            self._levels[self._key(product_id, variant_id)] = quantity

    def get(self, product_id: str, variant_id: Optional[str] = None) -> int:
        with self._lock:
            return self._levels.get(self._key(product_id, variant_id), 0)

    def clear(self) -> None:
        with self._lock:
            self._levels.clear()
            self._applied.clear()
            self._restored.clear()
            self.movements.clear()

    def check(self, product_id: str, variant_id: Optional[str], quantity: int) -> StockLevel:
        current = self.get(product_id, variant_id)
        return StockLevel(available=current >= quantity, current_stock=current, requested=quantity)

    def reduce(self, product_id: str, variant_id: Optional[str], quantity: int, order_id: str, line: int) -> bool:
        key = self._key(product_id, variant_id)
        with self._lock:
            if (order_id, line) in self._applied:
                return True
            current = self._levels.get(key, 0)
            if current < quantity:
                return False
            self._levels[key] = current - quantity
            self._applied[(order_id, line)] = (key[0], key[1], quantity)
            self.movements.append(("reduce", key[0], -quantity, order_id, line))
            return True

    def restore(self, order_id: str, line: int) -> bool:
        with self._lock:
            applied = self._applied.get((order_id, line))
            if applied is None or (order_id, line) in self._restored:
                return False
            product_id, variant_id, quantity = applied
            key = (product_id, variant_id)
            self._levels[key] = self._levels.get(key, 0) + quantity
            self._restored.add((order_id, line))
            self.movements.append(("restore", product_id, quantity, order_id, line))
            return True


class InMemoryOrderStore(OrderStorePort):
    """Dictionary-backed order store assigning UUID ids and timestamps."""

    def __init__(self):
        self._lock = threading.Lock()
        self.orders: dict[str, Order] = {}

    def create(self, draft: OrderDraft, paid_at: Optional[datetime]) -> Order:
        lines = [
            OrderLine(
                id=str(uuid.uuid4()),
                position=pos,
                product_id=item.product_id,
                variant_id=item.variant_id,
                name=item.name,
                quantity=item.quantity,
                unit_price=item.unit_price,
            )
            for pos, item in enumerate(draft.items)
        ]
        order = Order(
            id=str(uuid.uuid4()),
            user_id=draft.user_id,
            lines=lines,
            shipping_address=dict(draft.shipping_address),
            payment_method=draft.payment_method,
            pricing=draft.pricing,
            is_paid=paid_at is not None,
            paid_at=paid_at,
            created_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self.orders[order.id] = order
        return order

    def delete(self, order_id: str) -> None:
        with self._lock:
            self.orders.pop(order_id, None)
