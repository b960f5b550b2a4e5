"""Inventory service API built with FastAPI.

This module exposes the stock endpoints the storefront checkout relies on:
availability checks, conditional decrements tagged with the order they
belong to, compensating restores, and a small administrative surface to
read and set stock. Validation is performed with Pydantic models, while
persistence is delegated to the SQLAlchemy-backed ``InventoryRepo``.
"""

import logging
import time
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, Field, constr
from pythonjsonlogger import jsonlogger
from sqlalchemy import text

from .repo import InventoryRepo, engine, init_db

app = FastAPI(title="Inventory Service")

Ident = constr(min_length=1, max_length=64)

logger = logging.getLogger("inventory")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


@app.on_event("startup")
def _startup_db():
    # wait briefly until the database accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)
    init_db()


class CheckRequest(BaseModel):
    """Availability query for one product or variant.

    Attributes:
        product_id: Product identifier.
        variant_id: Optional variant identifier.
        quantity: Positive number of units wanted.
    """
    product_id: Ident
    variant_id: Optional[Ident] = None
    quantity: int = Field(gt=0)


class CheckResponse(BaseModel):
    available: bool
    current_stock: int
    requested: int


class ReduceRequest(BaseModel):
    """Decrement request for one order line.

    Attributes:
        order_id: Order the units are taken for.
        line: Position of the line inside the order.
    """
    product_id: Ident
    variant_id: Optional[Ident] = None
    quantity: int = Field(gt=0)
    order_id: Ident
    line: int = Field(ge=0)


class RestoreRequest(BaseModel):
    order_id: Ident
    line: int = Field(ge=0)


class StockIn(BaseModel):
    variant_id: Optional[Ident] = None
    quantity: int = Field(ge=0)


class StockOut(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.post("/check", response_model=CheckResponse)
def check(req: CheckRequest):
    """Report whether ``quantity`` units are on hand. Read-only."""
    available, current = InventoryRepo().check(req.product_id, req.variant_id, req.quantity)
    return CheckResponse(available=available, current_stock=current, requested=req.quantity)


@app.post("/reduce")
def reduce(req: ReduceRequest, request: Request):
    """Take stock for an order line.

    The decrement is conditional on stock covering the quantity at write
    time, whatever an earlier ``/check`` answered.

    Raises:
        HTTPException: With status 409 when stock is insufficient.
    """
    ok = InventoryRepo().reduce(req.product_id, req.variant_id, req.quantity, req.order_id, req.line)
    if not ok:
        logger.info(
            "reduce refused",
            extra={
                "request_id": getattr(request.state, "request_id", "-"),
                "order_id": req.order_id,
                "product_id": req.product_id,
            },
        )
        raise HTTPException(status_code=409, detail={"reduced": False, "detail": "INSUFFICIENT_STOCK"})
    return {"reduced": True}


@app.post("/restore")
def restore(req: RestoreRequest):
    """Give back the units taken for an order line, if any were taken."""
    return {"restored": InventoryRepo().restore(req.order_id, req.line)}


@app.get("/stock/{product_id}", response_model=StockOut)
def get_stock(product_id: str, variant_id: Optional[str] = None):
    return StockOut(product_id=product_id, variant_id=variant_id, quantity=InventoryRepo().get(product_id, variant_id))


@app.put("/stock/{product_id}", response_model=StockOut)
def put_stock(product_id: str, body: StockIn):
    """Set the stock of a product or variant (inventory administration)."""
    InventoryRepo().upsert(product_id, body.variant_id, body.quantity)
    return StockOut(product_id=product_id, variant_id=body.variant_id, quantity=body.quantity)


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
