"""HTTP stock adapter with retries, a circuit breaker and context headers.

This module implements ``StockPort`` against the inventory service using
``httpx``. It adds:

- Request correlation: propagates ``X-Request-ID`` from the ContextVar set
    by the gateway middleware (the checkout fan-out copies the context into
    its worker threads).
- A circuit breaker for the inventory service so an unhealthy dependency is
    not hammered, with HALF_OPEN probing after a timeout.
- A retry policy with exponential backoff for transport errors and 5xx.
    Retrying ``/reduce`` and ``/restore`` is safe: the inventory service
    records each movement under ``(order_id, line)`` and applies it once.
"""

import threading
import time
from typing import Optional

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import StockLevel, StockPort

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN once ``reset_timeout`` seconds have passed.
    - HALF_OPEN → CLOSED on a successful probe, back to OPEN on failure.
      Only one probe may be in flight while HALF_OPEN.

    Thread-safe via an internal lock; checkout fan-out calls it from several
    worker threads at once.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = "CLOSED"
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "OPEN" and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = "HALF_OPEN"
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Return the state a call is made in.

        Raises:
            RuntimeError: ``CIRCUIT_OPEN`` while open, or
                ``CIRCUIT_HALF_OPEN_BUSY`` when a probe is already running.
        """
        with self._lock:
            st = self.state
            if st == "OPEN":
                raise RuntimeError("CIRCUIT_OPEN")
            if st == "HALF_OPEN":
                if self._probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = "CLOSED"
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == "HALF_OPEN" or (self._failures >= self.fail_threshold and self._state != "OPEN"):
                self._state = "OPEN"
                self._opened_at = time.monotonic()
                self._probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state == "HALF_OPEN":
                self._probe_in_flight = False


_inventory_cb = CircuitBreaker(
    "inventory",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Build outgoing headers: ``X-Request-ID`` when known, then extras."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    # Retry only on transport errors or 5xx
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(StockPort):
    """HTTP client for the inventory service with retry and circuit breaker."""

    # Non-2xx statuses that carry a business answer rather than a fault
    BUSINESS_STATUSES = (409,)

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        self.base_url = (base_url or settings.INVENTORY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _post(self, path: str, payload: dict) -> httpx.Response:
        """POST ``payload`` with breaker precheck and retries.

        Returns:
            httpx.Response: A 2xx response or one of ``BUSINESS_STATUSES``.

        Raises:
            RuntimeError: When the circuit breaker rejects the call.
            httpx.RequestError: For transport errors after retries.
            httpx.HTTPStatusError: For other non-2xx responses.
        """
        max_retries, backoff = _retry_policy()
        tries = 0

        state = _inventory_cb.before_call()
        headers = _request_headers({"X-Circuit-State": state, "X-Retry-Count": "0"})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.post(f"{self.base_url}{path}", json=payload, headers=headers)
                        if resp.status_code < 300 or resp.status_code in self.BUSINESS_STATUSES:
                            _inventory_cb.on_success()
                            return resp
                        if not _should_retry(resp, None):
                            _inventory_cb.on_failure()
                            resp.raise_for_status()
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries > max_retries:
                        _inventory_cb.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = backoff * (2 ** (tries - 1))  # exponential backoff
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    time.sleep(min(sleep_s, cap))
        finally:
            _inventory_cb.on_finish()

    def check(self, product_id: str, variant_id: Optional[str], quantity: int) -> StockLevel:
        """Ask the inventory service whether ``quantity`` units are available."""
        resp = self._post("/check", {"product_id": product_id, "variant_id": variant_id, "quantity": quantity})
        data = resp.json()
        return StockLevel(
            available=bool(data.get("available", False)),
            current_stock=int(data.get("current_stock", 0)),
            requested=int(data.get("requested", quantity)),
        )

    def reduce(self, product_id: str, variant_id: Optional[str], quantity: int, order_id: str, line: int) -> bool:
        """Request a conditional decrement.

        Maps business responses:
        - 200 → True (decrement applied)
        - 409 → False (stock no longer suffices), not a circuit failure
        """
        resp = self._post(
            "/reduce",
            {
                "product_id": product_id,
                "variant_id": variant_id,
                "quantity": quantity,
                "order_id": order_id,
                "line": line,
            },
        )
        if resp.status_code == 409:
            return False
        return bool(resp.json().get("reduced", False))

    def restore(self, order_id: str, line: int) -> bool:
        resp = self._post("/restore", {"order_id": order_id, "line": line})
        return bool(resp.json().get("restored", False))

    def health(self) -> bool:
        """Return True when the inventory service answers its probe."""
        try:
            with httpx.Client(timeout=self.timeout) as client:
                return client.get(f"{self.base_url}/health", headers=_request_headers()).status_code == 200
        except httpx.HTTPError:
            return False
