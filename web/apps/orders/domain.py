"""Domain models, ports and service for placing storefront orders.

This module contains the dataclasses that describe a checkout attempt and a
persisted order, the protocol definitions (ports) for the collaborators the
flow depends on (stock store, order store, notifier), and the domain service
that sequences an order placement:

1. check stock for every line (concurrently),
2. refuse the whole checkout when any line is short,
3. persist the order,
4. commit the stock decrements (concurrently),
5. compensate when a decrement is refused after the order exists.

The service performs no HTTP or ORM work itself; concrete adapters live in
``adapters``, ``http_adapters`` and ``repository``.
"""

import contextvars
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


# ---- Enums ----
class PaymentMethod(str, Enum):
    """Payment methods accepted at checkout."""

    COD = "cod"
    ONLINE = "online"


class PlacementState(str, Enum):
    """Lifecycle of a single checkout attempt."""

    CHECKING = "CHECKING"
    FAILED_INSUFFICIENT = "FAILED_INSUFFICIENT"
    CHECKED = "CHECKED"
    CREATING = "CREATING"
    CREATED = "CREATED"
    COMMITTING = "COMMITTING"
    COMMITTED = "COMMITTED"
    COMPENSATING = "COMPENSATING"
    ROLLED_BACK = "ROLLED_BACK"


# ---- Errors ----
class OrderPlacementError(ValueError):
    """Base error for a failed checkout attempt.

    ``str(error)`` is the short machine code, ``error.message`` the
    human-readable explanation shown to the customer.
    """

    code = "ORDER_FAILED"

    def __init__(self, message: str | None = None):
        super().__init__(self.code)
        self.message = message or self.code


class EmptyOrderError(OrderPlacementError):
    code = "EMPTY_ORDER"

    def __init__(self):
        super().__init__("No order items")


class InsufficientStockError(OrderPlacementError):
    """One or more lines cannot be satisfied from current stock."""

    code = "INSUFFICIENT_STOCK"

    def __init__(self, items: List["StockCheck"]):
        self.items = items
        info = ", ".join(
            f'"{c.product_name}" (Available: {c.current_stock}, Requested: {c.requested})'
            for c in items
        )
        super().__init__(f"Insufficient stock for: {info}")


class StockCommitError(OrderPlacementError):
    """A stock decrement failed after the order had been created."""

    code = "STOCK_COMMIT_FAILED"

    def __init__(self, order_id: str, reason: str):
        self.order_id = order_id
        self.reason = reason
        super().__init__(f"Failed to complete order: {reason}")


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class LineItem:
    """A single requested line of a checkout.

    Attributes:
        product_id: Identifier of the product in the catalogue.
        quantity: Units requested, at least 1.
        name: Display name stored on the order for later listings.
        unit_price: Price per unit as sent by the client, stored as is.
        variant_id: Optional identifier of the product variant.
    """

    product_id: str
    quantity: int
    name: str = ""
    unit_price: Decimal = Decimal("0")
    variant_id: Optional[str] = None


@dataclass(frozen=True)
class Pricing:
    items_price: Decimal = Decimal("0")
    discount_price: Decimal = Decimal("0")
    total_price: Decimal = Decimal("0")


@dataclass(frozen=True)
class StockLevel:
    """Answer of the stock store to an availability query."""

    available: bool
    current_stock: int
    requested: int


@dataclass(frozen=True)
class StockCheck:
    """Availability of one line, keeping the line it was computed for."""

    available: bool
    current_stock: int
    requested: int
    product_id: str
    product_name: str
    variant_id: Optional[str] = None


@dataclass
class OrderDraft:
    """Everything needed to place an order, plus the attempt state.

    ``state`` is updated by ``OrderPlacementService.place_order`` so callers
    can observe how far an attempt progressed.
    """

    user_id: int | str
    items: List[LineItem]
    shipping_address: dict = field(default_factory=dict)
    payment_method: PaymentMethod = PaymentMethod.COD
    pricing: Pricing = field(default_factory=Pricing)
    customer_email: str = ""
    state: PlacementState = PlacementState.CHECKING


@dataclass(frozen=True)
class OrderLine:
    """A persisted line of an order, with its store-assigned id."""

    id: str
    position: int
    product_id: str
    variant_id: Optional[str]
    name: str
    quantity: int
    unit_price: Decimal


@dataclass
class Order:
    """A persisted order as returned by the order store."""

    id: str
    user_id: int | str
    lines: List[OrderLine]
    shipping_address: dict
    payment_method: PaymentMethod
    pricing: Pricing
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# ---- Ports (DIP) ----
class StockPort(Protocol):
    """Port describing the stock store used by the checkout flow."""

    def check(self, product_id: str, variant_id: Optional[str], quantity: int) -> StockLevel:
        """Return current stock for the key and whether ``quantity`` fits."""
        raise NotImplementedError()

    def reduce(self, product_id: str, variant_id: Optional[str], quantity: int, order_id: str, line: int) -> bool:
        """Atomically take ``quantity`` units, never driving stock negative.

        Returns:
            True when the decrement was applied, False when stock no longer
            suffices. Transport problems are raised, not returned.
        """
        raise NotImplementedError()

    def restore(self, order_id: str, line: int) -> bool:
        """Give back the units taken for ``(order_id, line)``, if any were."""
        raise NotImplementedError()


class OrderStorePort(Protocol):
    """Port describing order persistence."""

    def create(self, draft: OrderDraft, paid_at: Optional[datetime]) -> Order:
        raise NotImplementedError()

    def delete(self, order_id: str) -> None:
        raise NotImplementedError()


class NotifierPort(Protocol):
    """Port for fire-and-forget customer notifications."""

    def order_placed(self, order: Order, recipient: str):
        raise NotImplementedError()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---- Domain service ----
class OrderPlacementService:
    """Domain service that sequences an order placement.

    The service checks stock, creates the order, commits stock and
    compensates on a failed commit, using only the ports it was given.
    Independent stock reads and writes are fanned out on a thread pool and
    joined before the next step starts.
    """

    def __init__(
        self,
        stock: StockPort,
        orders: OrderStorePort,
        notifier: NotifierPort | None = None,
        restore_on_failure: bool = True,
        max_workers: int = 8,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """Initialize the service with its collaborators.

        Args:
            stock: StockPort used to check, reduce and restore stock.
            orders: OrderStorePort used to create and delete orders.
            notifier: Optional NotifierPort told about committed orders.
            restore_on_failure: When True a failed commit gives back every
                decrement already applied for the order before deleting it.
                When False only the order is deleted (legacy behaviour).
            max_workers: Upper bound of concurrent stock calls per step.
            clock: Callable returning the current aware datetime.
        """
        self.stock = stock
        self.orders = orders
        self.notifier = notifier
        self.restore_on_failure = restore_on_failure
        self.max_workers = max_workers
        self.clock = clock

    def _fan_out(self, fn, args_list: list) -> list:
        """Run ``fn(*args)`` for every entry concurrently, keeping order.

        Every task runs in a copy of the caller's context so the request id
        reaches log records and outgoing headers. Each outcome is either the
        return value or the raised exception.
        """
        if not args_list:
            return []
        workers = max(1, min(len(args_list), self.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="checkout") as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, fn, *args) for args in args_list
            ]
            outcomes = []
            for fut in futures:
                try:
                    outcomes.append(fut.result())
                except Exception as exc:
                    outcomes.append(exc)
            return outcomes

    def check_stock(self, items: List[LineItem]) -> List[StockCheck]:
        """Query availability for every line concurrently.

        Raises:
            Exception: The first error raised by the stock store, after all
                lookups have finished.
        """
        outcomes = self._fan_out(
            self.stock.check, [(i.product_id, i.variant_id, i.quantity) for i in items]
        )
        checks = []
        for item, level in zip(items, outcomes):
            if isinstance(level, Exception):
                raise level
            checks.append(
                StockCheck(
                    available=level.available,
                    current_stock=level.current_stock,
                    requested=level.requested,
                    product_id=item.product_id,
                    product_name=item.name,
                    variant_id=item.variant_id,
                )
            )
        return checks

    def place_order(self, draft: OrderDraft) -> Order:
        """Place an order: check stock, create, commit stock, compensate.

        ``draft.state`` follows ``PlacementState`` through the attempt.

        Args:
            draft: OrderDraft describing the checkout.

        Returns:
            The persisted Order once every decrement has been committed.

        Raises:
            EmptyOrderError: If the draft has no lines (no I/O happens).
            InsufficientStockError: If any line is short; nothing is written.
            StockCommitError: If a decrement fails after the order was
                created; the order has been removed by then.
            Exception: Any error of the stock store during the check step.
        """
        if not draft.items:
            raise EmptyOrderError()

        # 1) Availability
        draft.state = PlacementState.CHECKING
        checks = self.check_stock(draft.items)

        # 2) Fail fast
        short = [c for c in checks if not c.available]
        if short:
            draft.state = PlacementState.FAILED_INSUFFICIENT
            logger.info(
                "checkout refused: insufficient stock",
                extra={"products": [c.product_id for c in short]},
            )
            raise InsufficientStockError(short)
        draft.state = PlacementState.CHECKED

        # 3) Create
        draft.state = PlacementState.CREATING
        paid_at = self.clock() if draft.payment_method == PaymentMethod.ONLINE else None
        order = self.orders.create(draft, paid_at)
        draft.state = PlacementState.CREATED
        logger.info("order created", extra={"order_id": order.id, "lines": len(order.lines)})

        # 4) Commit stock
        draft.state = PlacementState.COMMITTING
        outcomes = self._fan_out(
            self.stock.reduce,
            [(ln.product_id, ln.variant_id, ln.quantity, order.id, ln.position) for ln in order.lines],
        )
        reasons = []
        for ln, outcome in zip(order.lines, outcomes):
            if isinstance(outcome, Exception):
                reasons.append(f'"{ln.name}": {outcome}')
            elif not outcome:
                reasons.append(f'Insufficient stock for "{ln.name}"')

        # 5) Compensate
        if reasons:
            draft.state = PlacementState.COMPENSATING
            reason = ", ".join(reasons)
            logger.error(
                "stock reduction failed after order creation",
                extra={"order_id": order.id, "reason": reason},
            )
            self._compensate(order)
            draft.state = PlacementState.ROLLED_BACK
            raise StockCommitError(order.id, reason)

        draft.state = PlacementState.COMMITTED
        self._notify(order, draft.customer_email)
        return order

    def _compensate(self, order: Order) -> None:
        """Undo a partially committed order. Failures are logged only."""
        if self.restore_on_failure:
            outcomes = self._fan_out(self.stock.restore, [(order.id, ln.position) for ln in order.lines])
            for ln, outcome in zip(order.lines, outcomes):
                if isinstance(outcome, Exception):
                    logger.error(
                        "stock restore failed",
                        extra={"order_id": order.id, "line": ln.position, "error": str(outcome)},
                    )
        try:
            self.orders.delete(order.id)
        except Exception:
            logger.exception("compensating order delete failed", extra={"order_id": order.id})

    def _notify(self, order: Order, recipient: str) -> None:
        if self.notifier is None or not recipient:
            return
        try:
            self.notifier.order_placed(order, recipient)
        except Exception:
            logger.exception("order notification dispatch failed", extra={"order_id": order.id})
