"""SQLAlchemy repository for stock records.

This module persists stock quantities per ``(product_id, variant_id)`` and a
ledger of stock movements. Checkout decrements are a single conditional
``UPDATE ... WHERE quantity >= :qty`` statement, so concurrent checkouts can
never oversell, and every decrement or restore is recorded under
``(order_id, line, kind)`` so a retried call is applied at most once.

A stock record without a variant is stored with ``variant_id = ""``.
Connection parameters come from ``INVENTORY_DATABASE_URL`` or the ``DB_*``
environment variables.
"""

import os
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
    create_engine,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column

DB_HOST = os.getenv("DB_HOST", "inventory-db")
DB_PORT = os.getenv("DB_PORT", "5432")
DB_NAME = os.getenv("DB_NAME", "inventory")
DB_USER = os.getenv("DB_USER", "inventory_user")
DB_PASSWORD = os.getenv("DB_PASSWORD", "inventory-pass")

DATABASE_URL = os.getenv(
    "INVENTORY_DATABASE_URL",
    f"postgresql+psycopg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}",
)
engine = create_engine(DATABASE_URL, pool_pre_ping=True)

REDUCE = "reduce"
RESTORE = "restore"


class Base(DeclarativeBase):
    pass


class Stock(Base):
    """Available units of a product, or of one of its variants.

    Attributes:
        product_id: Product identifier.
        variant_id: Variant identifier, ``""`` for the product itself.
        quantity: Units on hand, never negative.
    """

    __tablename__ = "stock"
    product_id = mapped_column(String(64), primary_key=True)
    variant_id = mapped_column(String(64), primary_key=True, default="")
    quantity = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (CheckConstraint("quantity >= 0", name="ck_stock_non_negative"),)


class StockMovement(Base):
    """Ledger row for a stock change made on behalf of an order line."""

    __tablename__ = "stock_movements"
    id = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id = mapped_column(String(64), nullable=False)
    line = mapped_column(Integer, nullable=False)
    kind = mapped_column(String(16), nullable=False)
    product_id = mapped_column(String(64), nullable=False)
    variant_id = mapped_column(String(64), nullable=False, default="")
    quantity = mapped_column(Integer, nullable=False)
    created_at = mapped_column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (UniqueConstraint("order_id", "line", "kind", name="ux_movement_order_line_kind"),)


def init_db() -> None:
    Base.metadata.create_all(engine)


@contextmanager
def get_session():
    """Yield a SQLAlchemy session, closed on exit."""
    with Session(engine) as s:
        yield s


def _variant(variant_id: Optional[str]) -> str:
    return variant_id or ""


class InventoryRepo:
    """Repository for stock lookups, administration and checkout movements."""

    def get(self, product_id: str, variant_id: Optional[str] = None) -> int:
        """Return units on hand (0 when the record does not exist)."""
        with get_session() as s:
            obj = s.get(Stock, (product_id, _variant(variant_id)))
            return obj.quantity if obj else 0

    def upsert(self, product_id: str, variant_id: Optional[str], quantity: int) -> None:
        """Set the quantity of a stock record, creating it if needed."""
        with get_session() as s:
            obj = s.get(Stock, (product_id, _variant(variant_id)))
            if obj is None:
                obj = Stock(product_id=product_id, variant_id=_variant(variant_id), quantity=quantity)
                s.add(obj)
            else:
                obj.quantity = quantity
            s.commit()

    def check(self, product_id: str, variant_id: Optional[str], quantity: int) -> tuple[bool, int]:
        """Return ``(available, current_stock)`` for a requested quantity."""
        current = self.get(product_id, variant_id)
        return current >= quantity, current

    def reduce(self, product_id: str, variant_id: Optional[str], quantity: int, order_id: str, line: int) -> bool:
        """Take ``quantity`` units for an order line, if they are there.

        The movement row and the conditional decrement share one
        transaction: when the ``UPDATE`` matches no row (stock would go
        negative, or the record is missing) everything is rolled back. A
        movement already recorded for ``(order_id, line)`` means this is a
        retry of an applied decrement, which succeeds without touching
        stock again.

        Returns:
            bool: True if the units are taken for this line, False if stock
                is insufficient.
        """
        with get_session() as s:
            try:
                s.add(
                    StockMovement(
                        order_id=order_id,
                        line=line,
                        kind=REDUCE,
                        product_id=product_id,
                        variant_id=_variant(variant_id),
                        quantity=quantity,
                    )
                )
                s.flush()
            except IntegrityError:
                s.rollback()
                return True

            res = s.execute(
                update(Stock)
                .where(
                    Stock.product_id == product_id,
                    Stock.variant_id == _variant(variant_id),
                    Stock.quantity >= quantity,
                )
                .values(quantity=Stock.quantity - quantity)
            )
            if res.rowcount != 1:
                s.rollback()
                return False
            s.commit()
            return True

    def restore(self, order_id: str, line: int) -> bool:
        """Give back the units taken by the decrement of ``(order_id, line)``.

        Returns:
            bool: True if units were given back by this call; False when no
                decrement was applied for the line or it was already restored.
        """
        with get_session() as s:
            taken = s.execute(
                select(StockMovement).where(
                    StockMovement.order_id == order_id,
                    StockMovement.line == line,
                    StockMovement.kind == REDUCE,
                )
            ).scalars().first()
            if taken is None:
                return False
            try:
                s.add(
                    StockMovement(
                        order_id=order_id,
                        line=line,
                        kind=RESTORE,
                        product_id=taken.product_id,
                        variant_id=taken.variant_id,
                        quantity=taken.quantity,
                    )
                )
                s.flush()
            except IntegrityError:
                s.rollback()
                return False
            s.execute(
                update(Stock)
                .where(Stock.product_id == taken.product_id, Stock.variant_id == taken.variant_id)
                .values(quantity=Stock.quantity + taken.quantity)
            )
            s.commit()
            return True

    def movements(self, order_id: str) -> list[StockMovement]:
        with get_session() as s:
            return list(
                s.execute(
                    select(StockMovement).where(StockMovement.order_id == order_id).order_by(StockMovement.id)
                ).scalars()
            )
