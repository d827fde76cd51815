"""Shared fakes for the billing reconciliation tests."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Mapping, Optional, Sequence, Set, Tuple

import pytest

from ledgersync.app.billing import (
    BillingData,
    BillingEvent,
    BillingEventType,
    BillingProvider,
    BillingProviderError,
    BillingRepository,
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
    SynchronizationWatermark,
    UserStatus,
)
from ledgersync.app.billing.models import PAYABLE_INVOICE_STATUSES

TENANT = "tenant-1"


class InMemoryBillingRepository(BillingRepository):
    def __init__(self) -> None:
        self.users: Dict[Tuple[str, str], LocalUser] = {}
        self.invoices: Dict[Tuple[str, str], InvoiceRecord] = {}
        self.documents: Dict[Tuple[str, str], InvoiceDocument] = {}
        self.watermarks: Dict[str, SynchronizationWatermark] = {}
        self.saved_billing_data: List[Tuple[str, BillingData]] = []
        self._next_invoice_id = 1

    def add_user(self, user: LocalUser) -> LocalUser:
        self.users[(user.tenant_id, user.user_id)] = user
        return user

    def list_users_in_billing_error(self, tenant_id: str, *, limit: int) -> Sequence[LocalUser]:
        matching = [
            user
            for (user_tenant, _), user in sorted(self.users.items())
            if user_tenant == tenant_id and user.billing_data and user.billing_data.has_synchro_error
        ]
        return matching[:limit]

    def list_users_to_synchronize(self, tenant_id: str, *, limit: int) -> Sequence[LocalUser]:
        matching = [
            user
            for (user_tenant, _), user in sorted(self.users.items())
            if user_tenant == tenant_id
            and user.status == UserStatus.ACTIVE
            and not (user.billing_data and user.billing_data.has_synchro_error)
            and user.needs_billing_synchronization
        ]
        return matching[:limit]

    def get_user(self, tenant_id: str, user_id: str) -> Optional[LocalUser]:
        return self.users.get((tenant_id, user_id))

    def get_user_by_billing_id(self, tenant_id: str, customer_id: str) -> Optional[LocalUser]:
        return next(
            (
                user
                for (user_tenant, _), user in self.users.items()
                if user_tenant == tenant_id and user.customer_id == customer_id
            ),
            None,
        )

    def save_user_billing_data(self, tenant_id: str, user_id: str, billing_data: BillingData) -> BillingData:
        user = self.users.get((tenant_id, user_id))
        if user is None:
            raise LookupError(f"User {user_id} not found in tenant {tenant_id}")
        self.users[(tenant_id, user_id)] = user.model_copy(update={"billing_data": billing_data})
        self.saved_billing_data.append((user_id, billing_data))
        return billing_data

    def get_invoice_by_billing_invoice_id(self, tenant_id: str, billing_invoice_id: str) -> Optional[InvoiceRecord]:
        return self.invoices.get((tenant_id, billing_invoice_id))

    def save_invoice(self, invoice: InvoiceRecord) -> InvoiceRecord:
        key = (invoice.tenant_id, invoice.billing_invoice_id)
        existing = self.invoices.get(key)
        invoice_id = invoice.id or (existing.id if existing else None)
        if invoice_id is None:
            invoice_id = f"inv-{self._next_invoice_id}"
            self._next_invoice_id += 1
        stored = invoice.model_copy(update={"id": invoice_id})
        self.invoices[key] = stored
        return stored

    def delete_invoice_by_billing_invoice_id(self, tenant_id: str, billing_invoice_id: str) -> bool:
        return self.invoices.pop((tenant_id, billing_invoice_id), None) is not None

    def save_invoice_document(self, tenant_id: str, document: InvoiceDocument) -> InvoiceDocument:
        self.documents[(tenant_id, document.invoice_id)] = document
        return document

    def list_invoices_to_pay(self, tenant_id: str, *, limit: int) -> Sequence[InvoiceRecord]:
        matching = [
            invoice
            for (invoice_tenant, _), invoice in self.invoices.items()
            if invoice_tenant == tenant_id and invoice.status in PAYABLE_INVOICE_STATUSES
        ]
        return matching[:limit]

    def get_watermark(self, tenant_id: str) -> SynchronizationWatermark:
        return self.watermarks.get(tenant_id) or SynchronizationWatermark(tenant_id=tenant_id)

    def save_watermark(self, watermark: SynchronizationWatermark) -> SynchronizationWatermark:
        stored = self.get_watermark(watermark.tenant_id).advance(
            users=watermark.users_last_synchronized_on,
            invoices=watermark.invoices_last_synchronized_on,
        )
        self.watermarks[watermark.tenant_id] = stored
        return stored


class FakeBillingProvider(BillingProvider):
    def __init__(self) -> None:
        self.customers: Dict[str, ProviderUser] = {}
        self.invoices: Dict[str, ProviderInvoice] = {}
        self.documents: Dict[str, bytes] = {}
        self.changed_customer_ids: List[str] = []
        self.changed_invoice_ids: List[str] = []
        self.failing_emails: Set[str] = set()
        self.failing_charges: Set[str] = set()
        self.failing_downloads: Set[str] = set()
        self.connection_error: Optional[Exception] = None
        self.created: List[str] = []
        self.updated: List[str] = []
        self.deleted: List[str] = []
        self.charged: List[str] = []
        self.downloads: List[str] = []
        self.since_calls: List[Optional[datetime]] = []
        self.identity_override: Optional[str] = None
        self._next_customer = 1

    def add_customer(self, email: str, customer_id: str, name: Optional[str] = None) -> ProviderUser:
        customer = ProviderUser(email=email, name=name, billing_data=BillingData(customer_id=customer_id))
        self.customers[customer_id] = customer
        return customer

    def add_invoice(self, invoice: ProviderInvoice, *, document: Optional[bytes] = b"%PDF-1.4") -> ProviderInvoice:
        self.invoices[invoice.billing_invoice_id] = invoice
        if document is not None:
            self.documents[invoice.billing_invoice_id] = document
        self.changed_invoice_ids.append(invoice.billing_invoice_id)
        return invoice

    def check_connection(self) -> None:
        if self.connection_error is not None:
            raise self.connection_error

    def list_changed_customer_ids(self, since: Optional[datetime]) -> Sequence[str]:
        self.since_calls.append(since)
        return list(self.changed_customer_ids)

    def get_user(self, customer_id: str) -> Optional[ProviderUser]:
        return self.customers.get(customer_id)

    def get_user_by_email(self, email: str) -> Optional[ProviderUser]:
        return next((customer for customer in self.customers.values() if customer.email == email), None)

    def user_exists(self, user: LocalUser) -> bool:
        return (user.customer_id in self.customers) or self.get_user_by_email(user.email) is not None

    def _guard(self, user: LocalUser) -> None:
        if user.email in self.failing_emails:
            raise BillingProviderError(code="billing_provider_unavailable", message="Provider rejected the user")

    def create_user(self, user: LocalUser) -> ProviderUser:
        self._guard(user)
        customer_id = self.identity_override if self.identity_override is not None else f"cus_{self._next_customer}"
        self._next_customer += 1
        self.created.append(user.user_id)
        return self.add_customer(user.email, customer_id)

    def update_user(self, user: LocalUser) -> ProviderUser:
        self._guard(user)
        existing = self.customers.get(user.customer_id or "") or self.get_user_by_email(user.email)
        assert existing is not None
        self.updated.append(user.user_id)
        if self.identity_override is not None:
            return existing.model_copy(update={"billing_data": BillingData(customer_id=self.identity_override)})
        return existing

    def delete_user(self, user: LocalUser) -> None:
        self.deleted.append(user.user_id)
        self.customers.pop(user.customer_id or "", None)

    def list_changed_invoice_ids(
        self,
        since: Optional[datetime],
        user: Optional[ProviderUser] = None,
    ) -> Sequence[str]:
        self.since_calls.append(since)
        if user is None:
            return list(self.changed_invoice_ids)
        return [
            invoice_id
            for invoice_id in self.changed_invoice_ids
            if invoice_id not in self.invoices or self.invoices[invoice_id].customer_id == user.customer_id
        ]

    def get_invoice(self, billing_invoice_id: str) -> Optional[ProviderInvoice]:
        return self.invoices.get(billing_invoice_id)

    def download_invoice_document(self, invoice: InvoiceRecord) -> Optional[InvoiceDocument]:
        self.downloads.append(invoice.billing_invoice_id)
        if invoice.billing_invoice_id in self.failing_downloads:
            raise BillingProviderError(code="billing_download_failed", message="Document unavailable")
        content = self.documents.get(invoice.billing_invoice_id)
        if content is None:
            return None
        return InvoiceDocument(invoice_id=invoice.id or "", content=content)

    def create_invoice(
        self,
        user: ProviderUser,
        item: InvoiceItem,
        *,
        idempotency_key: Optional[str] = None,
    ) -> Tuple[ProviderInvoice, InvoiceItem]:
        invoice = ProviderInvoice(billing_invoice_id=f"in_{idempotency_key}", customer_id=user.customer_id or "")
        self.invoices[invoice.billing_invoice_id] = invoice
        return invoice, item

    def create_invoice_item(
        self,
        user: ProviderUser,
        billing_invoice_id: str,
        item: InvoiceItem,
        *,
        idempotency_key: Optional[str] = None,
    ) -> InvoiceItem:
        return item

    def finalize_invoice(self, invoice: InvoiceRecord) -> str:
        return f"https://billing.test/{invoice.billing_invoice_id}"

    def charge_invoice(self, invoice: InvoiceRecord) -> ChargeResult:
        self.charged.append(invoice.billing_invoice_id)
        if invoice.billing_invoice_id in self.failing_charges:
            raise BillingProviderError(code="billing_card_declined", message="Card declined")
        return ChargeResult(billing_invoice_id=invoice.billing_invoice_id, status=InvoiceStatus.PAID, paid=True)

    def get_taxes(self) -> Sequence[BillingTax]:
        return []

    def attach_payment_method(self, user: LocalUser, payment_method_id: str) -> Mapping[str, object]:
        return {"payment_method_id": payment_method_id}

    def decode_event(self, payload: bytes, signature: str) -> BillingEvent:
        return BillingEvent(event_id="evt_test", event_type=BillingEventType.UNKNOWN)


class RecordingNotifier(InvoiceNotifier):
    def __init__(self) -> None:
        self.notifications: List[NewInvoiceNotification] = []

    def notify_new_invoice(self, notification: NewInvoiceNotification) -> None:
        self.notifications.append(notification)


class SteppingClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        value = self.current
        self.current = self.current + timedelta(seconds=1)
        return value


@pytest.fixture
def tenant_id() -> str:
    return TENANT


@pytest.fixture
def repository() -> InMemoryBillingRepository:
    return InMemoryBillingRepository()


@pytest.fixture
def provider() -> FakeBillingProvider:
    return FakeBillingProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def clock() -> SteppingClock:
    return SteppingClock(datetime(2024, 5, 1, 8, tzinfo=timezone.utc))


@pytest.fixture
def make_user(repository):
    def _make_user(
        user_id: str,
        *,
        customer_id: Optional[str] = None,
        has_synchro_error: bool = False,
        synchronized: bool = False,
        status: UserStatus = UserStatus.ACTIVE,
    ) -> LocalUser:
        changed_on = datetime(2024, 4, 1, tzinfo=timezone.utc)
        billing_data = None
        if customer_id or has_synchro_error:
            billing_data = BillingData(
                customer_id=customer_id,
                has_synchro_error=has_synchro_error,
                last_changed_on=changed_on + timedelta(days=1) if synchronized else None,
            )
        user = LocalUser(
            user_id=user_id,
            tenant_id=TENANT,
            email=f"{user_id}@example.com",
            first_name=user_id.title(),
            status=status,
            billing_data=billing_data,
            last_changed_on=changed_on,
        )
        return repository.add_user(user)

    return _make_user


@pytest.fixture
def make_invoice():
    def _make_invoice(
        billing_invoice_id: str,
        customer_id: str,
        *,
        status: InvoiceStatus = InvoiceStatus.OPEN,
        nbr_of_items: int = 1,
        amount: int = 1000,
    ) -> ProviderInvoice:
        return ProviderInvoice(
            billing_invoice_id=billing_invoice_id,
            customer_id=customer_id,
            number=f"NR-{billing_invoice_id}",
            status=status,
            amount=amount,
            nbr_of_items=nbr_of_items,
            created_on=datetime(2024, 4, 30, tzinfo=timezone.utc),
        )

    return _make_invoice
