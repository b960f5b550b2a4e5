"""Idempotency records for the checkout endpoint.

A client may send an ``Idempotency-Key`` header with a checkout so a retried
request (for example after a dropped connection) does not place a second
order. The first request with a key creates a record; once the checkout has
finished its HTTP status and body are stored on it. Replays with the same
key and payload get the stored response back, while reusing a key with a
different payload is a conflict.
"""

import hashlib
import json

from django.core.serializers.json import DjangoJSONEncoder
from django.db import IntegrityError, transaction

from .models import IdempotencyKey


def _hash(payload) -> str:
    """Return the SHA-256 hex digest of a canonical JSON rendering."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), cls=DjangoJSONEncoder)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload) -> tuple[bool, IdempotencyKey]:
    """Fetch or register the idempotency record for ``key``.

    The create path runs inside a savepoint so a duplicate key only rolls
    back that block; an existing record is then read under a row lock.

    Args:
        key: Client-provided idempotency key.
        payload: Request body the key was sent with.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``; ``existing`` is
        False when the record was created by this call.

    Raises:
        ValueError: ``IDEMPOTENCY_CONFLICT`` when the key was first used with
            a different payload.
    """
    h = _hash(payload)
    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None) -> None:
    """Store the final response of the checkout that owns ``rec``."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])
