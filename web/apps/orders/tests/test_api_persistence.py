"""Integration tests that assert placed orders are persisted.

They use low-level DB access to check the stored rows without going
through the ORM models.
"""

import pytest
from uuid import UUID
from django.db import connection

CREATE_URL = "/api/orders/"


@pytest.mark.django_db
def test_checkout_persists_order_and_lines(auth_client, stock, checkout_payload):
    stock.set("A", None, 5)
    stock.set("B", "V-1", 5)
    payload = checkout_payload(("A", None, 2, "Alpha"), ("B", "V-1", 1, "Beta"), payment_method="online")
    r = auth_client.post(CREATE_URL, data=payload, content_type="application/json")
    assert r.status_code == 201
    oid = r.json()["id"]
    UUID(oid)

    with connection.cursor() as cur:
        cur.execute("select payment_method, is_paid, total_price from orders where id = %s", [UUID(oid).hex])
        row = cur.fetchone()
        cur.execute(
            "select position, product_id, variant_id, quantity from order_lines where order_id = %s order by position",
            [UUID(oid).hex],
        )
        lines = cur.fetchall()

    assert row is not None
    payment_method, is_paid, total_price = row
    assert payment_method == "online"
    assert bool(is_paid) is True
    assert str(total_price) in ("30", "30.00", "30.0")
    assert lines == [(0, "A", None, 2), (1, "B", "V-1", 1)]
