import pytest
from django.core.cache import cache

from apps.orders import providers


@pytest.fixture(autouse=True)
def use_local_stock(settings):
    settings.USE_HTTP_ADAPTERS = False
    settings.ORDERS_RESTORE_STOCK_ON_FAILURE = True
    # throttling counters live in the cache
    cache.clear()
    providers.local_stock().clear()
    yield
    providers.local_stock().clear()


@pytest.fixture
def stock():
    """The in-process stock store used by the checkout view."""
    return providers.local_stock()


@pytest.fixture
def user(django_user_model):
    return django_user_model.objects.create_user(username="alice", email="alice@example.com", password="pw")


@pytest.fixture
def auth_client(client, user):
    client.force_login(user)
    return client


@pytest.fixture
def checkout_payload():
    def build(*items, payment_method="cod"):
        lines = [
            {"product": p, "variant": v, "qty": q, "name": n, "price": "10.00"}
            for (p, v, q, n) in items
        ]
        total = sum(10 * q for (_, _, q, _) in items)
        return {
            "order_items": lines,
            "shipping_address": {
                "address": "1 Market Street",
                "city": "Surat",
                "postal_code": "395003",
                "country": "IN",
            },
            "payment_method": payment_method,
            "items_price": f"{total}.00",
            "discount_price": "0.00",
            "total_price": f"{total}.00",
        }

    return build
