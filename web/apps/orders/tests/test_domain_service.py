"""Unit tests for the OrderPlacementService orchestration.

These tests drive the checkout sequence with in-memory ports: happy paths
for both payment methods, empty orders, insufficient stock reporting,
compensation after a failed stock commit (with and without giving stock
back), notifications, and concurrent checkouts racing for the same stock.
"""

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from apps.orders.adapters import InMemoryOrderStore, InMemoryStock
from apps.orders.domain import (
    EmptyOrderError,
    InsufficientStockError,
    LineItem,
    OrderDraft,
    OrderPlacementService,
    PaymentMethod,
    PlacementState,
    Pricing,
    StockCommitError,
)

FIXED_NOW = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


def make_draft(*items, payment_method=PaymentMethod.COD, email="alice@example.com"):
    return OrderDraft(
        user_id=1,
        items=list(items),
        shipping_address={"address": "1 Market Street", "city": "Surat"},
        payment_method=payment_method,
        pricing=Pricing(Decimal("20.00"), Decimal("0"), Decimal("20.00")),
        customer_email=email,
    )


def make_service(stock, orders=None, **kw):
    return OrderPlacementService(stock, orders or InMemoryOrderStore(), clock=lambda: FIXED_NOW, **kw)


class RecordingNotifier:
    """Notifier stub remembering every order it was told about."""
    def __init__(self):
        self.sent = []

    def order_placed(self, order, recipient):
        self.sent.append((order.id, recipient))


class ExplodingNotifier:
    """Notifier stub that always fails."""
    def order_placed(self, order, recipient):
        raise RuntimeError("smtp down")


class StaleCheckStock(InMemoryStock):
    """Stock whose availability answers were computed before other buyers.

    ``check`` always reports the line as available, so the refusal happens
    at write time in ``reduce``, the way a lost race does.
    """
    def check(self, product_id, variant_id, quantity):
        level = super().check(product_id, variant_id, quantity)
        return type(level)(available=True, current_stock=max(level.current_stock, quantity), requested=quantity)


class CountingStock(InMemoryStock):
    def __init__(self, levels=None):
        super().__init__(levels)
        self.checks = 0
        self.reduced = []

    def check(self, product_id, variant_id, quantity):
        self.checks += 1
        return super().check(product_id, variant_id, quantity)

    def reduce(self, product_id, variant_id, quantity, order_id, line):
        self.reduced.append(product_id)
        return super().reduce(product_id, variant_id, quantity, order_id, line)


def test_place_order_cod_is_unpaid_and_takes_stock():
    """Cart of 2 X with 5 in stock, cash on delivery: unpaid order, 3 left."""
    stock = InMemoryStock({"X": 5})
    orders = InMemoryOrderStore()
    draft = make_draft(LineItem("X", 2, name="Product X", unit_price=Decimal("10")))

    order = make_service(stock, orders).place_order(draft)

    assert order.is_paid is False and order.paid_at is None
    assert stock.get("X") == 3
    assert order.id in orders.orders
    assert draft.state == PlacementState.COMMITTED


def test_place_order_online_is_paid_at_creation():
    stock = InMemoryStock({"X": 5})
    draft = make_draft(LineItem("X", 2, name="Product X"), payment_method=PaymentMethod.ONLINE)

    order = make_service(stock).place_order(draft)

    assert order.is_paid is True
    assert order.paid_at == FIXED_NOW
    assert stock.get("X") == 3


def test_lines_keep_order_and_get_store_ids():
    stock = InMemoryStock({"A": 5, ("B", "V-1"): 5})
    draft = make_draft(LineItem("A", 1, name="A"), LineItem("B", 2, name="B", variant_id="V-1"))

    order = make_service(stock).place_order(draft)

    assert [(ln.position, ln.product_id, ln.variant_id) for ln in order.lines] == [(0, "A", None), (1, "B", "V-1")]
    assert all(ln.id for ln in order.lines)
    assert stock.get("B", "V-1") == 3


def test_place_order_empty_does_no_io():
    stock = CountingStock()
    orders = InMemoryOrderStore()
    with pytest.raises(EmptyOrderError) as e:
        make_service(stock, orders).place_order(make_draft())
    assert str(e.value) == "EMPTY_ORDER"
    assert stock.checks == 0
    assert orders.orders == {}


def test_place_order_insufficient_stock_creates_nothing():
    """Cart of 10 Y with 3 in stock: refused, message lists Y 3/10."""
    stock = InMemoryStock({"Y": 3})
    orders = InMemoryOrderStore()
    draft = make_draft(LineItem("Y", 10, name="Product Y"))

    with pytest.raises(InsufficientStockError) as e:
        make_service(stock, orders).place_order(draft)

    assert str(e.value) == "INSUFFICIENT_STOCK"
    assert e.value.message == 'Insufficient stock for: "Product Y" (Available: 3, Requested: 10)'
    assert orders.orders == {}
    assert stock.get("Y") == 3
    assert draft.state == PlacementState.FAILED_INSUFFICIENT


def test_insufficient_stock_reports_every_short_line():
    """A has 5 of 10, B is fine, C has 0 of 1: both A and C reported, B untouched."""
    stock = CountingStock({"A": 5, "B": 10, "C": 0})
    orders = InMemoryOrderStore()
    draft = make_draft(LineItem("A", 10, name="Alpha"), LineItem("B", 1, name="Beta"), LineItem("C", 1, name="Gamma"))

    with pytest.raises(InsufficientStockError) as e:
        make_service(stock, orders).place_order(draft)

    msg = e.value.message
    assert '"Alpha" (Available: 5, Requested: 10)' in msg
    assert '"Gamma" (Available: 0, Requested: 1)' in msg
    assert "Beta" not in msg
    assert [(c.product_id, c.current_stock, c.requested) for c in e.value.items] == [("A", 5, 10), ("C", 0, 1)]
    assert stock.reduced == []
    assert stock.get("B") == 10
    assert orders.orders == {}


def test_check_error_propagates_without_order():
    class BrokenStock(InMemoryStock):
        def check(self, *a):
            raise ConnectionError("inventory unreachable")

    orders = InMemoryOrderStore()
    with pytest.raises(ConnectionError):
        make_service(BrokenStock(), orders).place_order(make_draft(LineItem("X", 1, name="X")))
    assert orders.orders == {}


def test_commit_failure_deletes_order_and_restores_applied_stock():
    """A lost race on line B removes the order and gives A's units back."""
    stock = StaleCheckStock({"A": 5, "B": 1})
    orders = InMemoryOrderStore()
    draft = make_draft(LineItem("A", 2, name="Alpha"), LineItem("B", 3, name="Beta"))

    with pytest.raises(StockCommitError) as e:
        make_service(stock, orders).place_order(draft)

    assert str(e.value) == "STOCK_COMMIT_FAILED"
    assert e.value.message == 'Failed to complete order: Insufficient stock for "Beta"'
    assert orders.orders == {}
    assert stock.get("A") == 5
    assert stock.get("B") == 1
    assert draft.state == PlacementState.ROLLED_BACK


def test_commit_failure_legacy_mode_keeps_applied_decrements():
    """With restore disabled only the order is removed (historic behaviour)."""
    stock = StaleCheckStock({"A": 5, "B": 1})
    orders = InMemoryOrderStore()
    draft = make_draft(LineItem("A", 2, name="Alpha"), LineItem("B", 3, name="Beta"))

    with pytest.raises(StockCommitError):
        make_service(stock, orders, restore_on_failure=False).place_order(draft)

    assert orders.orders == {}
    assert stock.get("A") == 3
    assert stock.get("B") == 1


def test_duplicate_lines_competing_for_the_same_stock_are_rolled_back():
    stock = InMemoryStock({"X": 5})
    orders = InMemoryOrderStore()
    draft = make_draft(LineItem("X", 3, name="X"), LineItem("X", 3, name="X"))

    with pytest.raises(StockCommitError):
        make_service(stock, orders).place_order(draft)

    assert orders.orders == {}
    assert stock.get("X") == 5


def test_reduce_exception_is_a_commit_failure():
    class FlakyStock(InMemoryStock):
        def reduce(self, product_id, *a):
            if product_id == "B":
                raise TimeoutError("write timed out")
            return super().reduce(product_id, *a)

    stock = FlakyStock({"A": 5, "B": 5})
    orders = InMemoryOrderStore()
    with pytest.raises(StockCommitError) as e:
        make_service(stock, orders).place_order(make_draft(LineItem("A", 1, name="A"), LineItem("B", 1, name="B")))

    assert "write timed out" in e.value.reason
    assert orders.orders == {}
    assert stock.get("A") == 5


def test_failed_compensating_delete_still_reports_commit_failure(caplog):
    class StickyOrders(InMemoryOrderStore):
        def delete(self, order_id):
            raise RuntimeError("db gone")

    stock = StaleCheckStock({"A": 0})
    with pytest.raises(StockCommitError):
        make_service(stock, StickyOrders()).place_order(make_draft(LineItem("A", 1, name="A")))
    assert "compensating order delete failed" in caplog.text


def test_notifier_is_told_about_committed_orders_only():
    notifier = RecordingNotifier()
    stock = InMemoryStock({"X": 1})
    service = make_service(stock, notifier=notifier)

    order = service.place_order(make_draft(LineItem("X", 1, name="X")))
    with pytest.raises(InsufficientStockError):
        service.place_order(make_draft(LineItem("X", 1, name="X")))

    assert notifier.sent == [(order.id, "alice@example.com")]


def test_notifier_failure_never_fails_checkout():
    stock = InMemoryStock({"X": 1})
    order = make_service(stock, notifier=ExplodingNotifier()).place_order(make_draft(LineItem("X", 1, name="X")))
    assert order.id
    assert stock.get("X") == 0


def test_two_concurrent_checkouts_racing_for_the_same_stock():
    """Both pass the check for 6 of 10 Z; exactly one keeps its order."""

    class LockstepStock(InMemoryStock):
        """Holds each check until both checkouts have read the stock."""
        def __init__(self, levels):
            super().__init__(levels)
            self.barrier = threading.Barrier(2, timeout=5)

        def check(self, *a):
            level = super().check(*a)
            self.barrier.wait()
            return level

    stock = LockstepStock({"Z": 10})
    orders = InMemoryOrderStore()
    service = make_service(stock, orders)
    results = []

    def attempt():
        try:
            results.append(service.place_order(make_draft(LineItem("Z", 6, name="Zed"))))
        except StockCommitError as e:
            results.append(e)

    threads = [threading.Thread(target=attempt) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    errors = [r for r in results if isinstance(r, StockCommitError)]
    placed = [r for r in results if not isinstance(r, StockCommitError)]
    assert len(placed) == 1 and len(errors) == 1
    assert stock.get("Z") == 4
    assert list(orders.orders) == [placed[0].id]
    assert errors[0].order_id not in orders.orders


def test_many_concurrent_checkouts_never_oversell():
    stock = StaleCheckStock({"Z": 10})
    orders = InMemoryOrderStore()
    service = make_service(stock, orders)
    outcomes = []

    def attempt():
        try:
            service.place_order(make_draft(LineItem("Z", 3, name="Zed")))
            outcomes.append(True)
        except StockCommitError:
            outcomes.append(False)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert outcomes.count(True) == 3
    assert stock.get("Z") == 1
    assert len(orders.orders) == 3
