"""Settlement of outstanding invoices."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .models import OutcomeTally
from .provider import BillingProvider
from .storage import BillingRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ChargeExecutor:
    """Attempts to settle every payable invoice, one at a time."""

    repository: BillingRepository
    provider: BillingProvider
    query_limit: int = 1000

    def charge_outstanding_invoices(self, tenant_id: str) -> OutcomeTally:
        tally = OutcomeTally()
        invoices = self.repository.list_invoices_to_pay(tenant_id, limit=self.query_limit)
        for invoice in invoices:
            log_extra = {
                "tenant_id": tenant_id,
                "invoice_id": invoice.id,
                "billing_invoice_id": invoice.billing_invoice_id,
            }
            try:
                result = self.provider.charge_invoice(invoice)
            except Exception:
                tally.record_error()
                logger.error("Failed to charge invoice %s", invoice.id, extra=log_extra, exc_info=True)
                continue
            # The local status is refreshed by the next invoices sweep.
            tally.record_success()
            logger.info(
                "Successfully charged invoice %s",
                invoice.id,
                extra={**log_extra, "status": result.status.value if result else None},
            )
        return tally


__all__ = ["ChargeExecutor"]
