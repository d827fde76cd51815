"""Application wiring for the billing synchronization service."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import Dict, List, Mapping, Optional, Tuple
from uuid import uuid4

from ...config import BillingSyncConfig, load_billing_config
from ..billing import (
    BillingCorrelationError,
    BillingEvent,
    BillingEventType,
    BillingProvider,
    BillingProviderError,
    BillingSyncService,
    BillingTax,
    ChargeResult,
    InvoiceDocument,
    InvoiceItem,
    InvoiceNotifier,
    InvoiceRecord,
    InvoiceStatus,
    LocalUser,
    NewInvoiceNotification,
    ProviderInvoice,
    ProviderUser,
)
from ..billing.models import BillingData
from ..billing.repository import PostgresBillingRepository


logger = logging.getLogger("billing")


class LoggingInvoiceNotifier(InvoiceNotifier):
    """Notifier that records invoice notifications to the application logger."""

    def notify_new_invoice(self, notification: NewInvoiceNotification) -> None:
        logger.info(
            "New invoice %s available for user %s download=%s",
            notification.invoice_number or notification.invoice_id,
            notification.user_id,
            notification.download_url,
        )


class LocalSandboxBillingProvider(BillingProvider):
    """In-memory provider for local development and demos."""

    def __init__(self, *, webhook_secret: Optional[str] = None) -> None:
        self.webhook_secret = webhook_secret
        self._customers: Dict[str, ProviderUser] = {}
        self._customer_changes: Dict[str, datetime] = {}
        self._invoices: Dict[str, ProviderInvoice] = {}
        self._invoice_changes: Dict[str, datetime] = {}
        self._items: Dict[str, List[InvoiceItem]] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _touch_customer(self, customer: ProviderUser) -> ProviderUser:
        self._customers[customer.customer_id] = customer
        self._customer_changes[customer.customer_id] = self._now()
        return customer

    def _touch_invoice(self, invoice: ProviderInvoice) -> ProviderInvoice:
        self._invoices[invoice.billing_invoice_id] = invoice
        self._invoice_changes[invoice.billing_invoice_id] = self._now()
        return invoice

    def _require_customer(self, user: LocalUser) -> ProviderUser:
        customer = self._customers.get(user.customer_id or "") or self.get_user_by_email(user.email)
        if customer is None:
            raise BillingCorrelationError(
                code="billing_user_not_found",
                message="User does not exist in billing system",
                detail={"user_id": user.user_id},
            )
        return customer

    def check_connection(self) -> None:
        return None

    def list_changed_customer_ids(self, since: Optional[datetime]) -> List[str]:
        return [
            customer_id
            for customer_id, changed_at in self._customer_changes.items()
            if since is None or changed_at > since
        ]

    def get_user(self, customer_id: str) -> Optional[ProviderUser]:
        return self._customers.get(customer_id)

    def get_user_by_email(self, email: str) -> Optional[ProviderUser]:
        normalized = email.strip().lower()
        return next((customer for customer in self._customers.values() if customer.email == normalized), None)

    def user_exists(self, user: LocalUser) -> bool:
        return user.customer_id in self._customers or self.get_user_by_email(user.email) is not None

    def create_user(self, user: LocalUser) -> ProviderUser:
        customer = ProviderUser(
            email=user.email,
            name=" ".join(part for part in (user.first_name, user.last_name) if part) or None,
            billing_data=BillingData(customer_id=f"cus_{uuid4().hex[:14]}"),
        )
        return self._touch_customer(customer)

    def update_user(self, user: LocalUser) -> ProviderUser:
        customer = self._require_customer(user)
        updated = customer.model_copy(
            update={
                "email": user.email,
                "name": " ".join(part for part in (user.first_name, user.last_name) if part) or customer.name,
            }
        )
        return self._touch_customer(updated)

    def delete_user(self, user: LocalUser) -> None:
        customer = self._require_customer(user)
        self._customers.pop(customer.customer_id, None)
        self._customer_changes[customer.customer_id] = self._now()

    def list_changed_invoice_ids(
        self,
        since: Optional[datetime],
        user: Optional[ProviderUser] = None,
    ) -> List[str]:
        return [
            invoice_id
            for invoice_id, changed_at in self._invoice_changes.items()
            if (since is None or changed_at > since)
            and (
                user is None
                or invoice_id not in self._invoices
                or self._invoices[invoice_id].customer_id == user.customer_id
            )
        ]

    def get_invoice(self, billing_invoice_id: str) -> Optional[ProviderInvoice]:
        return self._invoices.get(billing_invoice_id)

    def download_invoice_document(self, invoice: InvoiceRecord) -> Optional[InvoiceDocument]:
        if invoice.billing_invoice_id not in self._invoices or invoice.id is None:
            return None
        content = f"Sandbox invoice {invoice.number or invoice.billing_invoice_id}".encode("utf-8")
        return InvoiceDocument(invoice_id=invoice.id, content=content)

    def create_invoice(
        self,
        user: ProviderUser,
        item: InvoiceItem,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[ProviderInvoice, InvoiceItem]:
        billing_invoice_id = f"in_{idempotency_key or uuid4().hex[:14]}"
        invoice = ProviderInvoice(
            billing_invoice_id=billing_invoice_id,
            customer_id=user.customer_id or "",
            number=f"SANDBOX-{len(self._invoices) + 1:05d}",
            status=InvoiceStatus.DRAFT,
            currency=item.currency,
        )
        self._touch_invoice(invoice)
        created_item = self.create_invoice_item(user, billing_invoice_id, item, idempotency_key=idempotency_key)
        return self._invoices[billing_invoice_id], created_item

    def create_invoice_item(
        self,
        user: ProviderUser,
        billing_invoice_id: str,
        item: InvoiceItem,
        *,
        idempotency_key: Optional[str] = None,
    ) -> InvoiceItem:
        invoice = self._invoices.get(billing_invoice_id)
        if invoice is None:
            raise BillingCorrelationError(
                code="billing_invoice_not_found",
                message="Invoice does not exist in billing system",
                detail={"billing_invoice_id": billing_invoice_id},
            )
        created = item.model_copy(update={"item_id": item.item_id or f"ii_{uuid4().hex[:14]}"})
        self._items.setdefault(billing_invoice_id, []).append(created)
        self._touch_invoice(
            invoice.model_copy(
                update={
                    "nbr_of_items": invoice.nbr_of_items + 1,
                    "amount": invoice.amount + created.amount * created.quantity,
                }
            )
        )
        return created

    def finalize_invoice(self, invoice: InvoiceRecord) -> str:
        current = self._invoices.get(invoice.billing_invoice_id)
        if current is None:
            raise BillingCorrelationError(
                code="billing_invoice_not_found",
                message="Invoice does not exist in billing system",
                detail={"billing_invoice_id": invoice.billing_invoice_id},
            )
        self._touch_invoice(current.model_copy(update={"status": InvoiceStatus.OPEN}))
        return f"https://billing.local/invoices/{invoice.billing_invoice_id}"

    def charge_invoice(self, invoice: InvoiceRecord) -> ChargeResult:
        current = self._invoices.get(invoice.billing_invoice_id)
        if current is None or current.status != InvoiceStatus.OPEN:
            raise BillingProviderError(
                code="billing_invoice_not_payable",
                message="Invoice cannot be charged",
                detail={"billing_invoice_id": invoice.billing_invoice_id},
            )
        self._touch_invoice(current.model_copy(update={"status": InvoiceStatus.PAID}))
        return ChargeResult(billing_invoice_id=invoice.billing_invoice_id, status=InvoiceStatus.PAID, paid=True)

    def get_taxes(self) -> List[BillingTax]:
        return [BillingTax(tax_id="txr_sandbox", description="Sandbox VAT", display_name="VAT", percentage=20.0)]

    def attach_payment_method(self, user: LocalUser, payment_method_id: str) -> Mapping[str, object]:
        customer = self._require_customer(user)
        return {"customer_id": customer.customer_id, "payment_method_id": payment_method_id, "attached": True}

    def decode_event(self, payload: bytes, signature: str) -> BillingEvent:
        if self.webhook_secret:
            expected = hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
            if not hmac.compare_digest(expected, signature):
                raise BillingProviderError(code="billing_event_signature_invalid", message="Invalid event signature")
        try:
            data = json.loads(payload.decode("utf-8"))
        except ValueError as exc:
            raise BillingProviderError(code="billing_event_invalid", message=f"Invalid event payload: {exc}") from exc
        if not isinstance(data, dict):
            raise BillingProviderError(code="billing_event_invalid", message="Event payload must be an object")
        event_object = data.get("data", {}).get("object", {})
        try:
            event_type = BillingEventType(str(data.get("type")))
        except ValueError:
            event_type = BillingEventType.UNKNOWN
        return BillingEvent(
            event_id=str(data.get("id") or f"evt_{uuid4().hex}"),
            event_type=event_type,
            object_id=event_object.get("id"),
            payload=data,
        )


def build_billing_sync_service(config: BillingSyncConfig) -> BillingSyncService:
    repository = PostgresBillingRepository()
    provider = LocalSandboxBillingProvider()
    notifier = LoggingInvoiceNotifier()
    service = BillingSyncService(
        repository=repository,
        provider=provider,
        config=config,
        notifier=notifier,
    )
    return service


@lru_cache(maxsize=1)
def get_billing_sync_service() -> BillingSyncService:
    return build_billing_sync_service(load_billing_config())


__all__ = [
    "build_billing_sync_service",
    "get_billing_sync_service",
    "LocalSandboxBillingProvider",
    "LoggingInvoiceNotifier",
]
