"""HTTP views for the orders app.

This module contains the DRF API views of the storefront orders API. Views
are kept small: they validate requests (via Pydantic), map them to domain
DTOs, delegate to the domain service, and render the HTTP response.

The checkout view obtains a configured ``OrderPlacementService`` from
``providers.get_order_service()``, which wires either the HTTP inventory
client or the in-process stock store depending on runtime settings, so
tests and local development swap implementations without touching views.

Idempotency: when an ``Idempotency-Key`` header is sent with a checkout, the
first request is processed and its response stored. Retries with the same
payload get the stored response back with ``Idempotent-Replay: true``;
reusing the key with a different payload returns HTTP 409.
"""

import logging

from django.core.paginator import Paginator
from pydantic import ValidationError
from rest_framework import status
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from . import providers
from .domain import (
    InsufficientStockError,
    LineItem,
    OrderDraft,
    OrderPlacementError,
    PaymentMethod,
    Pricing,
)
from .idempotency import finalize, get_or_create_idempotent
from .models import OrderModel
from .repository import OrderRepository, to_domain
from .schemas import CheckoutDTO, OrderReadDTO

logger = logging.getLogger(__name__)

ERROR_STATUS = {
    "EMPTY_ORDER": status.HTTP_400_BAD_REQUEST,
    "INSUFFICIENT_STOCK": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "STOCK_COMMIT_FAILED": status.HTTP_409_CONFLICT,
}


def _error_body(exc: OrderPlacementError) -> dict:
    body = {"detail": exc.code, "message": exc.message}
    if isinstance(exc, InsufficientStockError):
        body["items"] = [
            {
                "product": c.product_id,
                "variant": c.variant_id,
                "name": c.product_name,
                "available": c.current_stock,
                "requested": c.requested,
            }
            for c in exc.items
        ]
    return body


def _render(order) -> dict:
    return OrderReadDTO.from_order(order).model_dump(mode="json")


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module."""

    permission_classes = [AllowAny]

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """Place an order (POST) or list all orders for the back office (GET).

    POST validates the checkout payload with a Pydantic DTO and runs the
    domain service, which checks stock, persists the order and commits the
    stock decrements. It supports the ``Idempotency-Key`` header.
    """

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        """Paginated listing of every order, newest first. Staff only."""
        if not request.user.is_staff:
            return Response({"detail": "FORBIDDEN"}, status=status.HTTP_403_FORBIDDEN)

        qs = OrderModel.objects.prefetch_related("lines").order_by("-created_at")
        page = int(request.GET.get("page", 1))
        page_size = int(request.GET.get("page_size", 20))
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)

        return Response(
            {
                "count": p.count,
                "page": page_obj.number,
                "page_size": page_size,
                "results": [_render(to_domain(o)) for o in page_obj.object_list],
            },
            status=200,
        )

    def post(self, request):
        """Place an order for the authenticated user.

        Args:
            request (Request): DRF request with JSON body and optional
                ``Idempotency-Key`` header.

        Returns:
            Response: One of the following responses.
            - 201 with the persisted order.
            - 400 for DTO validation errors or {detail: "EMPTY_ORDER"}.
            - 422 with {detail: "INSUFFICIENT_STOCK", message, items} when
              any line is short; no order is created.
            - 409 with {detail: "STOCK_COMMIT_FAILED", message} when a stock
              decrement fails after creation; the order is removed.
            - 409 with {detail: "IDEMPOTENCY_CONFLICT"} when a key is reused
              with a different payload.
            - 503 with {detail: "UPSTREAM_UNAVAILABLE"} when the stock store
              cannot be reached.
            - The stored response, with ``Idempotent-Replay: true``, for a
              replayed idempotency key.
        """
        idem_key = request.headers.get("Idempotency-Key")

        # 1) Pydantic validation
        try:
            dto = CheckoutDTO.model_validate(request.data)
        except ValidationError as e:
            return Response(
                {"detail": "VALIDATION_ERROR", "errors": e.errors(include_url=False, include_context=False)},
                status=status.HTTP_400_BAD_REQUEST,
            )

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(idem_key, request.data)
            except ValueError:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        draft = OrderDraft(
            user_id=request.user.pk,
            items=[
                LineItem(
                    product_id=i.product,
                    variant_id=i.variant,
                    quantity=i.qty,
                    name=i.name,
                    unit_price=i.price,
                )
                for i in dto.order_items
            ],
            shipping_address=dto.shipping_address.model_dump(exclude_none=True),
            payment_method=PaymentMethod(dto.payment_method),
            pricing=Pricing(
                items_price=dto.items_price,
                discount_price=dto.discount_price,
                total_price=dto.total_price,
            ),
            customer_email=request.user.email or "",
        )
        service = providers.get_order_service()

        try:
            order = service.place_order(draft)
        except OrderPlacementError as e:
            body = _error_body(e)
            status_code = ERROR_STATUS.get(e.code, status.HTTP_400_BAD_REQUEST)
            if rec:
                finalize(rec, status_code, body)
            return Response(body, status=status_code)
        except Exception:
            logger.exception("checkout failed upstream", extra={"state": draft.state.value})
            if rec:
                # transient: free the key so the client can retry
                rec.delete()
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        # 4) Response
        body = _render(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class MyOrdersView(APIView):
    """Orders of the authenticated user, newest first."""

    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_list"

    def get(self, request):
        orders = OrderRepository().for_user(request.user.pk)
        return Response([_render(o) for o in orders], status=200)


class RetrieveOrderView(APIView):
    permission_classes = [IsAuthenticated]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        order = OrderRepository().get(oid)
        # someone else's order is reported as missing
        if order is None or (order.user_id != request.user.pk and not request.user.is_staff):
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(_render(order), status=200)
