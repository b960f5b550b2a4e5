"""Service provider helpers for wiring OrderPlacementService with ports.

``get_order_service`` returns a configured ``OrderPlacementService``. Stock
goes through the HTTP inventory client when ``settings.USE_HTTP_ADAPTERS``
is truthy; otherwise the process-wide in-memory stock store is used, which
suits tests and local development. Orders are always persisted through the
Django ORM repository.
"""

from django.conf import settings

from .adapters import InMemoryStock
from .domain import OrderPlacementService, StockPort
from .http_adapters import HttpInventoryClient
from .notifications import EmailOrderNotifier
from .repository import OrderRepository

_local_stock = InMemoryStock()


def local_stock() -> InMemoryStock:
    """Return the in-process stock store used when HTTP adapters are off."""
    return _local_stock


def get_stock_port() -> StockPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpInventoryClient()
    return _local_stock


def get_order_service() -> OrderPlacementService:
    """Return an OrderPlacementService wired for the current settings."""
    return OrderPlacementService(
        stock=get_stock_port(),
        orders=OrderRepository(),
        notifier=EmailOrderNotifier(),
        restore_on_failure=getattr(settings, "ORDERS_RESTORE_STOCK_ON_FAILURE", True),
        max_workers=getattr(settings, "ORDERS_CHECKOUT_WORKERS", 8),
    )
