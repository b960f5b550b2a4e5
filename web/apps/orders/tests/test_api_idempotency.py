import pytest

from apps.orders.models import OrderModel

CREATE_URL = "/api/orders/"


@pytest.mark.django_db
def test_idempotent_replay_returns_same_order_without_taking_stock_twice(auth_client, stock, checkout_payload):
    stock.set("X", None, 5)
    key = "idem-same-1"
    payload = checkout_payload(("X", None, 2, "Product X"))

    r1 = auth_client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 201

    r2 = auth_client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"
    assert OrderModel.objects.count() == 1
    assert stock.get("X") == 3


@pytest.mark.django_db
def test_idempotent_conflict_on_different_payload_with_same_key(auth_client, stock, checkout_payload):
    stock.set("X", None, 5)
    key = "idem-conflict-1"

    r1 = auth_client.post(
        CREATE_URL, data=checkout_payload(("X", None, 2, "X")), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key
    )
    assert r1.status_code == 201

    r2 = auth_client.post(
        CREATE_URL, data=checkout_payload(("X", None, 3, "X")), content_type="application/json", HTTP_IDEMPOTENCY_KEY=key
    )
    assert r2.status_code == 409
    assert r2.json()["detail"] == "IDEMPOTENCY_CONFLICT"


@pytest.mark.django_db
def test_idempotent_replay_preserves_422_status(auth_client, stock, checkout_payload):
    stock.set("Y", None, 3)
    key = "idem-422"
    payload = checkout_payload(("Y", None, 10, "Product Y"))

    r1 = auth_client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 422

    # replay answers from the stored response even if stock changed since
    stock.set("Y", None, 50)
    r2 = auth_client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 422
    assert r2.json() == r1.json()
    assert r2.headers.get("Idempotent-Replay") == "true"


@pytest.mark.django_db
def test_upstream_failure_frees_the_key_for_a_retry(auth_client, stock, checkout_payload, monkeypatch):
    stock.set("X", None, 5)
    key = "idem-503"
    payload = checkout_payload(("X", None, 1, "X"))

    def boom(*a):
        raise ConnectionError("inventory down")

    with monkeypatch.context() as m:
        m.setattr(stock, "check", boom)
        r1 = auth_client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r1.status_code == 503

    r2 = auth_client.post(CREATE_URL, data=payload, content_type="application/json", HTTP_IDEMPOTENCY_KEY=key)
    assert r2.status_code == 201
    assert r2.headers.get("Idempotent-Replay") is None
    assert stock.get("X") == 4
