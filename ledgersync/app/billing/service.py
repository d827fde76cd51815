"""Entry points sequencing the billing reconciliation sweeps."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from ...config import BillingSyncConfig
from . import guard
from .charges import ChargeExecutor
from .invoices import InvoiceReconciler
from .models import BillingData, InvoiceRecord, LocalUser, OutcomeTally, Transaction
from .notifications import InvoiceNotifier, NotificationChannel
from .provider import BillingProvider
from .storage import BillingRepository
from .users import UserReconciler

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_outcome(tenant_id: str, action: str, tally: OutcomeTally, noun: str, *, verb: str = "synchronized") -> None:
    level = logging.WARNING if tally.in_error else logging.INFO
    logger.log(
        level,
        tally.describe(noun, verb=verb),
        extra={
            "tenant_id": tenant_id,
            "action": action,
            "in_success": tally.in_success,
            "in_error": tally.in_error,
        },
    )


@dataclass(slots=True)
class BillingSyncService:
    """Synchronizes users and invoices with a billing provider and charges open invoices.

    Every sweep first checks the provider connection and aborts when it
    fails. Otherwise sweeps always return a tally, even on partial failure.

    The users watermark moves to the time a sweep finished, so the sweep's
    own provider writes are not reported back as changes. The invoices
    watermark moves to the time a sweep started, and only when no invoice
    failed; otherwise it is held so failed invoices are listed again.
    """

    repository: BillingRepository
    provider: BillingProvider
    config: BillingSyncConfig = field(default_factory=BillingSyncConfig)
    notifier: Optional[InvoiceNotifier] = None
    clock: Callable[[], datetime] = _utcnow
    users: UserReconciler = field(init=False)
    invoices: InvoiceReconciler = field(init=False)
    charges: ChargeExecutor = field(init=False)

    def __post_init__(self) -> None:
        channel = (
            NotificationChannel(self.notifier, background=self.config.notify_in_background)
            if self.notifier is not None
            else None
        )
        self.users = UserReconciler(
            repository=self.repository,
            provider=self.provider,
            query_limit=self.config.query_limit,
            clock=self.clock,
        )
        self.invoices = InvoiceReconciler(
            repository=self.repository,
            provider=self.provider,
            notifications=channel,
            app_base_url=self.config.app_base_url,
            notify_new_invoices=self.config.notify_new_invoices,
            clock=self.clock,
        )
        self.charges = ChargeExecutor(
            repository=self.repository,
            provider=self.provider,
            query_limit=self.config.query_limit,
        )

    def synchronize_users(self, tenant_id: str) -> OutcomeTally:
        if not self.config.feature_toggles.sync_users:
            logger.info("User synchronization runs lazily, sweep skipped", extra={"tenant_id": tenant_id})
            return OutcomeTally()
        self.provider.check_connection()
        watermark = self.repository.get_watermark(tenant_id)
        tally = self.users.reconcile_users(tenant_id, since=watermark.users_last_synchronized_on)
        finished_at = self.clock()
        _log_outcome(tenant_id, "synchronize_users", tally, "user")
        self.repository.save_watermark(watermark.advance(users=finished_at))
        return tally

    def synchronize_invoices(self, tenant_id: str, user: Optional[LocalUser] = None) -> OutcomeTally:
        self.provider.check_connection()
        started_at = self.clock()
        if user is not None:
            since = user.billing_data.invoices_last_synchronized_on if user.billing_data else None
            tally = self.invoices.reconcile_invoices(tenant_id, since=since, user=user, started_at=started_at)
            _log_outcome(tenant_id, "synchronize_invoices", tally, "invoice")
            return tally

        watermark = self.repository.get_watermark(tenant_id)
        tally = self.invoices.reconcile_invoices(
            tenant_id,
            since=watermark.invoices_last_synchronized_on,
            started_at=started_at,
        )
        _log_outcome(tenant_id, "synchronize_invoices", tally, "invoice")
        if tally.in_error:
            logger.warning(
                "Invoices watermark kept at %s until failed invoices are synchronized",
                watermark.invoices_last_synchronized_on,
                extra={"tenant_id": tenant_id, "in_error": tally.in_error},
            )
            return tally
        self.repository.save_watermark(watermark.advance(invoices=started_at))
        return tally

    def charge_invoices(self, tenant_id: str) -> OutcomeTally:
        self.provider.check_connection()
        tally = self.charges.charge_outstanding_invoices(tenant_id)
        _log_outcome(tenant_id, "charge_invoices", tally, "invoice", verb="charged")
        return tally

    def synchronize_user(self, tenant_id: str, user: LocalUser) -> BillingData:
        return self.users.synchronize_user(tenant_id, user)

    def force_synchronize_user(self, tenant_id: str, user: LocalUser) -> BillingData:
        return self.users.force_synchronize_user(tenant_id, user)

    def send_invoice_to_user(self, tenant_id: str, user: LocalUser, invoice: InvoiceRecord) -> InvoiceRecord:
        return self.invoices.send_invoice_to_user(tenant_id, user, invoice)

    def check_start_transaction(self, transaction: Transaction) -> Transaction:
        """Run the start guard, resolving the user's customer first in lazy mode."""
        user = transaction.user
        if not self.config.feature_toggles.sync_users and user is not None and not user.customer_id:
            billing_data = self.users.force_synchronize_user(transaction.tenant_id, user)
            transaction = transaction.model_copy(
                update={"user": user.model_copy(update={"billing_data": billing_data})}
            )
        guard.check_start_transaction(transaction)
        return transaction

    def check_stop_transaction(self, transaction: Transaction) -> None:
        guard.check_stop_transaction(transaction)

    def delete_user(self, tenant_id: str, user: LocalUser) -> None:
        """Remove the provider customer of a local user about to be deleted."""
        guard.check_user_deletion(
            user,
            prevent_customer_deletion=self.config.feature_toggles.prevent_customer_deletion,
        )
        if not user.customer_id:
            return
        self.provider.delete_user(user)
        logger.info(
            "Deleted billing user %s",
            user.customer_id,
            extra={"tenant_id": tenant_id, "user_id": user.user_id},
        )


__all__ = ["BillingSyncService"]
