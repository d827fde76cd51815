"""Best-effort delivery of invoice notifications."""
from __future__ import annotations

import logging
from threading import Thread
from typing import Protocol

from .models import NewInvoiceNotification

logger = logging.getLogger(__name__)


class InvoiceNotifier(Protocol):
    """Transport delivering "new invoice available" messages to users."""

    def notify_new_invoice(self, notification: NewInvoiceNotification) -> None:
        ...


class NotificationChannel:
    """Hands notifications to a notifier without tying the caller to the outcome.

    Delivery failures are logged and dropped. With ``background`` enabled each
    message is delivered on a daemon thread so a slow transport never blocks a
    reconciliation sweep.
    """

    def __init__(self, notifier: InvoiceNotifier, *, background: bool = True) -> None:
        self.notifier = notifier
        self.background = background

    def dispatch(self, notification: NewInvoiceNotification) -> None:
        if not self.background:
            self._deliver(notification)
            return
        worker = Thread(target=self._deliver, args=(notification,), daemon=True)
        worker.start()

    def _deliver(self, notification: NewInvoiceNotification) -> None:
        try:
            self.notifier.notify_new_invoice(notification)
        except Exception:
            logger.warning(
                "New invoice notification could not be delivered",
                extra={
                    "tenant_id": notification.tenant_id,
                    "invoice_id": notification.invoice_id,
                    "user_id": notification.user_id,
                },
                exc_info=True,
            )


__all__ = ["InvoiceNotifier", "NotificationChannel"]
