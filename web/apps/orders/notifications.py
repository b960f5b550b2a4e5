"""Order confirmation emails, dispatched off the request thread.

``EmailOrderNotifier`` implements ``NotifierPort``. Sending happens on a
small background pool so a slow or failing mail server never delays or
fails a checkout; errors are logged and dropped.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor

from django.conf import settings
from django.core.mail import send_mail

from .domain import NotifierPort, Order

logger = logging.getLogger(__name__)

_dispatcher = ThreadPoolExecutor(max_workers=2, thread_name_prefix="notify")


def render_order_email(order: Order) -> tuple[str, str]:
    """Return ``(subject, text)`` of the confirmation email for ``order``."""
    lines = "\n".join(f"  - {ln.name} x {ln.quantity} @ {ln.unit_price}" for ln in order.lines)
    paid = "Paid" if order.is_paid else "Pay on delivery"
    subject = f"Order confirmation #{order.id}"
    text = (
        "Thank you for your order.\n\n"
        f"Order: {order.id}\n"
        f"Items:\n{lines}\n"
        f"Total: {order.pricing.total_price}\n"
        f"Payment: {order.payment_method.value} ({paid})\n"
    )
    return subject, text


class EmailOrderNotifier(NotifierPort):
    """Send an order confirmation email in the background."""

    def __init__(self, from_email: str | None = None):
        self.from_email = from_email or getattr(settings, "ORDERS_EMAIL_FROM", None)

    def _send(self, order: Order, recipient: str) -> bool:
        subject, text = render_order_email(order)
        try:
            send_mail(subject, text, self.from_email, [recipient])
        except Exception:
            logger.exception("order confirmation email failed", extra={"order_id": order.id})
            return False
        logger.info("order confirmation email sent", extra={"order_id": order.id})
        return True

    def order_placed(self, order: Order, recipient: str) -> Future:
        """Queue the confirmation email and return without waiting.

        Returns:
            Future: Resolves to True when the email was handed to the mail
            backend, False when sending failed.
        """
        return _dispatcher.submit(self._send, order, recipient)
