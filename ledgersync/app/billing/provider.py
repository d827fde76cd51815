"""Capability set every billing provider backend implements."""
from __future__ import annotations

from datetime import datetime
from typing import Mapping, Optional, Protocol, Sequence, Tuple

from .models import (
    BillingEvent,
    BillingTax,
    ChargeResult,
    InvoiceDocument,
    InvoiceItem,
    InvoiceRecord,
    LocalUser,
    ProviderInvoice,
    ProviderUser,
)


class BillingProvider(Protocol):
    """External billing system of record for customers and invoices.

    Every operation may raise; implementations do not retry internally and
    are responsible for their own timeouts. Lookups return ``None`` when the
    provider has no record for the given key.
    """

    def check_connection(self) -> None:
        """Raise :class:`BillingProviderError` when the provider cannot be reached."""

    def list_changed_customer_ids(self, since: Optional[datetime]) -> Sequence[str]:
        """Customer identifiers changed at the provider since ``since``."""

    def get_user(self, customer_id: str) -> Optional[ProviderUser]:
        ...

    def get_user_by_email(self, email: str) -> Optional[ProviderUser]:
        ...

    def user_exists(self, user: LocalUser) -> bool:
        ...

    def create_user(self, user: LocalUser) -> ProviderUser:
        ...

    def update_user(self, user: LocalUser) -> ProviderUser:
        ...

    def delete_user(self, user: LocalUser) -> None:
        ...

    def list_changed_invoice_ids(
        self,
        since: Optional[datetime],
        user: Optional[ProviderUser] = None,
    ) -> Sequence[str]:
        """Invoice identifiers changed since ``since``, optionally for one customer."""

    def get_invoice(self, billing_invoice_id: str) -> Optional[ProviderInvoice]:
        ...

    def download_invoice_document(self, invoice: InvoiceRecord) -> Optional[InvoiceDocument]:
        ...

    def create_invoice(
        self,
        user: ProviderUser,
        item: InvoiceItem,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[ProviderInvoice, InvoiceItem]:
        """Open a new invoice for ``user`` holding ``item``."""

    def create_invoice_item(
        self,
        user: ProviderUser,
        billing_invoice_id: str,
        item: InvoiceItem,
        *,
        idempotency_key: Optional[str] = None,
    ) -> InvoiceItem:
        ...

    def finalize_invoice(self, invoice: InvoiceRecord) -> str:
        """Finalize the invoice and return the URL of its hosted document."""

    def charge_invoice(self, invoice: InvoiceRecord) -> ChargeResult:
        ...

    def get_taxes(self) -> Sequence[BillingTax]:
        ...

    def attach_payment_method(self, user: LocalUser, payment_method_id: str) -> Mapping[str, object]:
        ...

    def decode_event(self, payload: bytes, signature: str) -> BillingEvent:
        """Verify and decode a raw provider event payload."""


__all__ = ["BillingProvider"]
