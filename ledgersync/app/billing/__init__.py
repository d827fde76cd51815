"""Billing reconciliation package synchronizing users and invoices with a provider."""

from .exceptions import (
    BillingCorrelationError,
    BillingError,
    BillingInconsistencyError,
    BillingPreconditionError,
    BillingProviderError,
)
from .guard import check_start_transaction, check_stop_transaction, check_user_deletion
from .models import (
    BillingData,
    BillingEvent,
    BillingEventType,
    BillingTax,
    ChargeResult,
    InvoiceDocument,
    InvoiceItem,
    InvoiceRecord,
    InvoiceStatus,
    LocalUser,
    NewInvoiceNotification,
    OutcomeTally,
    ProviderInvoice,
    ProviderUser,
    SynchronizationWatermark,
    Transaction,
    TransactionBillingData,
    UserStatus,
)
from .notifications import InvoiceNotifier, NotificationChannel
from .provider import BillingProvider
from .service import BillingSyncService
from .storage import BillingRepository

__all__ = [
    "BillingCorrelationError",
    "BillingData",
    "BillingError",
    "BillingEvent",
    "BillingEventType",
    "BillingInconsistencyError",
    "BillingPreconditionError",
    "BillingProvider",
    "BillingProviderError",
    "BillingRepository",
    "BillingSyncService",
    "BillingTax",
    "ChargeResult",
    "InvoiceDocument",
    "InvoiceItem",
    "InvoiceNotifier",
    "InvoiceRecord",
    "InvoiceStatus",
    "LocalUser",
    "NewInvoiceNotification",
    "NotificationChannel",
    "OutcomeTally",
    "ProviderInvoice",
    "ProviderUser",
    "SynchronizationWatermark",
    "Transaction",
    "TransactionBillingData",
    "UserStatus",
    "check_start_transaction",
    "check_stop_transaction",
    "check_user_deletion",
]
