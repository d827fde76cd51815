"""Reconciliation of provider invoices into local invoice records."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from .exceptions import BillingCorrelationError, BillingInconsistencyError, BillingPreconditionError
from .models import BillingData, InvoiceRecord, LocalUser, NewInvoiceNotification, OutcomeTally, ProviderUser
from .notifications import NotificationChannel
from .provider import BillingProvider
from .storage import BillingRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def needs_document_download(previous: Optional[InvoiceRecord], current: InvoiceRecord) -> bool:
    """Return whether the invoice document has to be (re-)downloaded."""

    if previous is None or not current.downloadable:
        return True
    return previous.nbr_of_items != current.nbr_of_items


@dataclass(slots=True)
class InvoiceReconciler:
    """Merges provider invoice changes into local records and fetches their documents."""

    repository: BillingRepository
    provider: BillingProvider
    notifications: Optional[NotificationChannel] = None
    app_base_url: str = "http://localhost:5173"
    notify_new_invoices: bool = True
    clock: Callable[[], datetime] = _utcnow

    def reconcile_invoices(
        self,
        tenant_id: str,
        *,
        since: Optional[datetime],
        user: Optional[LocalUser] = None,
        started_at: Optional[datetime] = None,
    ) -> OutcomeTally:
        """Synchronize every invoice changed since ``since``.

        When ``user`` is given the sweep is limited to that user's invoices and
        the user's billing identity must be verified first; a failed check is
        raised to the caller. Per-invoice failures are only tallied.

        Owners are stamped with ``started_at`` once the sweep is over, and only
        when no invoice failed, so a scoped sweep lists failed invoices again.
        """
        started_at = started_at or self.clock()
        tally = OutcomeTally()
        owners: Dict[str, LocalUser] = {user.user_id: user} if user is not None else {}
        billing_user: Optional[ProviderUser] = None
        if user is not None:
            billing_user = self.check_and_get_billing_user(user)
            billing_user = billing_user.model_copy(update={"billing_data": user.billing_data})

        billing_invoice_ids = self.provider.list_changed_invoice_ids(since, billing_user)
        if billing_invoice_ids:
            logger.info(
                "%s billing invoice(s) are going to be synchronized with local invoices",
                len(billing_invoice_ids),
                extra={"tenant_id": tenant_id, "user_id": user.user_id if user else None},
            )
        for billing_invoice_id in billing_invoice_ids:
            try:
                self._synchronize_invoice(tenant_id, billing_invoice_id, user, owners, tally)
            except Exception:
                tally.record_error()
                logger.error(
                    "Unable to process billing invoice %s",
                    billing_invoice_id,
                    extra={"tenant_id": tenant_id, "billing_invoice_id": billing_invoice_id},
                    exc_info=True,
                )
        if tally.in_error == 0:
            for owner in owners.values():
                self._stamp_owner(tenant_id, owner, started_at, tally)
        return tally

    def _stamp_owner(self, tenant_id: str, owner: LocalUser, started_at: datetime, tally: OutcomeTally) -> None:
        try:
            current = self.repository.get_user(tenant_id, owner.user_id) or owner
            billing_data = current.billing_data or BillingData()
            stamped = billing_data.invoices_last_synchronized_on
            if stamped is not None and stamped >= started_at:
                return
            self.repository.save_user_billing_data(
                tenant_id,
                owner.user_id,
                billing_data.model_copy(update={"invoices_last_synchronized_on": started_at}),
            )
        except Exception:
            tally.record_error()
            logger.error(
                "Unable to stamp invoice synchronization of user %s",
                owner.user_id,
                extra={"tenant_id": tenant_id, "user_id": owner.user_id},
                exc_info=True,
            )

    def check_and_get_billing_user(self, user: LocalUser) -> ProviderUser:
        """Ensure ``user`` has the same verified customer identity locally and at the provider."""
        billing_user = self.provider.get_user_by_email(user.email)
        detail = {"user_id": user.user_id, "email": user.email}
        if billing_user is None:
            raise BillingCorrelationError(
                code="billing_user_not_found",
                message="User does not exist in billing system",
                detail=detail,
            )
        if not billing_user.customer_id:
            raise BillingPreconditionError(
                code="billing_data_missing_in_provider",
                message="User has no billing data in billing system",
                detail=detail,
            )
        if not user.customer_id:
            raise BillingPreconditionError(
                code="billing_data_missing_locally",
                message="User has no local billing data",
                detail=detail,
            )
        if user.customer_id != billing_user.customer_id:
            raise BillingInconsistencyError(
                code="billing_customer_mismatch",
                message="User billing data differs locally and in the billing system",
                detail={
                    **detail,
                    "local_customer_id": user.customer_id,
                    "billing_customer_id": billing_user.customer_id,
                },
            )
        return billing_user

    def send_invoice_to_user(self, tenant_id: str, user: LocalUser, invoice: InvoiceRecord) -> InvoiceRecord:
        """Hand a "new invoice available" message to the notification channel."""
        if self.notifications is None or invoice.id is None:
            return invoice
        base_url = self.app_base_url.rstrip("/")
        invoices_url = f"{base_url}/tenants/{tenant_id}/invoices"
        notification = NewInvoiceNotification(
            tenant_id=tenant_id,
            invoice_id=invoice.id,
            billing_invoice_id=invoice.billing_invoice_id,
            user_id=user.user_id,
            email=user.email,
            invoice_number=invoice.number,
            dashboard_url=f"{base_url}/tenants/{tenant_id}",
            invoices_url=invoices_url,
            download_url=f"{invoices_url}/{invoice.id}/download",
        )
        self.notifications.dispatch(notification)
        return invoice

    def _synchronize_invoice(
        self,
        tenant_id: str,
        billing_invoice_id: str,
        user: Optional[LocalUser],
        owners: Dict[str, LocalUser],
        tally: OutcomeTally,
    ) -> None:
        log_extra = {"tenant_id": tenant_id, "billing_invoice_id": billing_invoice_id}
        billing_invoice = self.provider.get_invoice(billing_invoice_id)
        previous = self.repository.get_invoice_by_billing_invoice_id(tenant_id, billing_invoice_id)
        if billing_invoice is None and previous is None:
            tally.record_error()
            logger.error("Billing invoice %s does not exist", billing_invoice_id, extra=log_extra)
            return
        if billing_invoice is None:
            self.repository.delete_invoice_by_billing_invoice_id(tenant_id, billing_invoice_id)
            tally.record_success()
            logger.debug("Billing invoice %s deleted locally", billing_invoice_id, extra=log_extra)
            return

        owner = user or self.repository.get_user_by_billing_id(tenant_id, billing_invoice.customer_id)
        if owner is None:
            tally.record_error()
            logger.error(
                "No user found for billing invoice %s",
                billing_invoice_id,
                extra={**log_extra, "customer_id": billing_invoice.customer_id},
            )
            return

        invoice = self.repository.save_invoice(
            InvoiceRecord.from_provider(
                billing_invoice,
                tenant_id=tenant_id,
                user_id=owner.user_id,
                previous=previous,
            )
        )
        if needs_document_download(previous, invoice):
            invoice = self._download_document(tenant_id, owner, invoice)

        owners.setdefault(owner.user_id, owner)
        tally.record_success()
        logger.debug(
            "Invoice %s has been %s locally",
            billing_invoice_id,
            "updated" if previous else "created",
            extra={**log_extra, "invoice_id": invoice.id, "user_id": owner.user_id},
        )

    def _download_document(self, tenant_id: str, owner: LocalUser, invoice: InvoiceRecord) -> InvoiceRecord:
        log_extra = {"tenant_id": tenant_id, "invoice_id": invoice.id, "billing_invoice_id": invoice.billing_invoice_id}
        try:
            document = self.provider.download_invoice_document(invoice)
        except Exception:
            logger.warning("Invoice document download failed", extra=log_extra, exc_info=True)
            return invoice
        if document is None:
            logger.debug("No invoice document available yet", extra=log_extra)
            return invoice

        self.repository.save_invoice_document(tenant_id, document.model_copy(update={"invoice_id": invoice.id}))
        was_downloadable = invoice.downloadable
        invoice = self.repository.save_invoice(invoice.model_copy(update={"downloadable": True}))
        if not was_downloadable and self.notify_new_invoices:
            try:
                self.send_invoice_to_user(tenant_id, owner, invoice)
            except Exception:
                logger.warning("New invoice notification could not be dispatched", extra=log_extra, exc_info=True)
        return invoice


__all__ = ["InvoiceReconciler", "needs_document_download"]
