"""Persistence operations required by the reconciliation engine."""
from __future__ import annotations

from typing import Optional, Protocol, Sequence

from .models import BillingData, InvoiceDocument, InvoiceRecord, LocalUser, SynchronizationWatermark


class BillingRepository(Protocol):
    """Tenant scoped storage for users, invoices, documents and watermarks."""

    def list_users_in_billing_error(self, tenant_id: str, *, limit: int) -> Sequence[LocalUser]:
        ...

    def list_users_to_synchronize(self, tenant_id: str, *, limit: int) -> Sequence[LocalUser]:
        """Active users not in error whose billing data is missing or stale, by user id."""

    def get_user(self, tenant_id: str, user_id: str) -> Optional[LocalUser]:
        ...

    def get_user_by_billing_id(self, tenant_id: str, customer_id: str) -> Optional[LocalUser]:
        ...

    def save_user_billing_data(self, tenant_id: str, user_id: str, billing_data: BillingData) -> BillingData:
        ...

    def get_invoice_by_billing_invoice_id(self, tenant_id: str, billing_invoice_id: str) -> Optional[InvoiceRecord]:
        ...

    def save_invoice(self, invoice: InvoiceRecord) -> InvoiceRecord:
        """Upsert on ``(tenant_id, billing_invoice_id)`` and return the stored record."""

    def delete_invoice_by_billing_invoice_id(self, tenant_id: str, billing_invoice_id: str) -> bool:
        ...

    def save_invoice_document(self, tenant_id: str, document: InvoiceDocument) -> InvoiceDocument:
        ...

    def list_invoices_to_pay(self, tenant_id: str, *, limit: int) -> Sequence[InvoiceRecord]:
        ...

    def get_watermark(self, tenant_id: str) -> SynchronizationWatermark:
        ...

    def save_watermark(self, watermark: SynchronizationWatermark) -> SynchronizationWatermark:
        """Persist the watermark; stored timestamps never move backwards."""


__all__ = ["BillingRepository"]
