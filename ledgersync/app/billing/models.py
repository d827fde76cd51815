"""Domain models for billing reconciliation."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    """Lifecycle status of a local user account."""

    ACTIVE = "active"
    PENDING = "pending"
    BLOCKED = "blocked"
    INACTIVE = "inactive"
    LOCKED = "locked"


class InvoiceStatus(str, Enum):
    """Status of an invoice as reported by the billing provider."""

    DRAFT = "draft"
    OPEN = "open"
    PAID = "paid"
    VOID = "void"
    UNCOLLECTIBLE = "uncollectible"


PAYABLE_INVOICE_STATUSES = (InvoiceStatus.OPEN,)


class BillingEventType(str, Enum):
    """Provider events the application decodes."""

    CUSTOMER_UPDATED = "customer.updated"
    CUSTOMER_DELETED = "customer.deleted"
    INVOICE_CREATED = "invoice.created"
    INVOICE_UPDATED = "invoice.updated"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    UNKNOWN = "unknown"


class BillingData(BaseModel):
    """Provider linkage stored on a local user."""

    customer_id: Optional[str] = None
    has_synchro_error: bool = False
    invoices_last_synchronized_on: Optional[datetime] = None
    last_changed_on: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class LocalUser(BaseModel):
    """Local user record as seen by the reconciliation engine."""

    user_id: str
    tenant_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    locale: str = "en_US"
    status: UserStatus = UserStatus.ACTIVE
    billing_data: Optional[BillingData] = None
    last_changed_on: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def customer_id(self) -> Optional[str]:
        return self.billing_data.customer_id if self.billing_data else None

    @property
    def needs_billing_synchronization(self) -> bool:
        """Return ``True`` when the provider has not seen the latest user state."""
        data = self.billing_data
        if data is None or not data.customer_id or data.last_changed_on is None:
            return True
        return self.last_changed_on > data.last_changed_on


class ProviderUser(BaseModel):
    """Provider-side projection of a customer."""

    email: str
    name: Optional[str] = None
    billing_data: BillingData

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def customer_id(self) -> Optional[str]:
        return self.billing_data.customer_id


class ProviderInvoice(BaseModel):
    """Invoice as returned by the billing provider."""

    billing_invoice_id: str
    customer_id: str
    number: Optional[str] = None
    status: InvoiceStatus = InvoiceStatus.OPEN
    amount: int = Field(default=0, ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    nbr_of_items: int = Field(default=0, ge=0)
    created_on: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class InvoiceRecord(BaseModel):
    """Local invoice keyed by its provider identifier within a tenant."""

    id: Optional[str] = None
    tenant_id: str
    billing_invoice_id: str
    user_id: str
    customer_id: str
    number: Optional[str] = None
    status: InvoiceStatus
    amount: int = Field(default=0, ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    nbr_of_items: int = Field(default=0, ge=0)
    downloadable: bool = False
    created_on: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @classmethod
    def from_provider(
        cls,
        invoice: ProviderInvoice,
        *,
        tenant_id: str,
        user_id: str,
        previous: Optional["InvoiceRecord"] = None,
    ) -> "InvoiceRecord":
        """Project a provider invoice, carrying the local id and document flag forward."""
        return cls(
            id=previous.id if previous else None,
            tenant_id=tenant_id,
            billing_invoice_id=invoice.billing_invoice_id,
            user_id=user_id,
            customer_id=invoice.customer_id,
            number=invoice.number,
            status=invoice.status,
            amount=invoice.amount,
            currency=invoice.currency,
            nbr_of_items=invoice.nbr_of_items,
            downloadable=previous.downloadable if previous else False,
            created_on=invoice.created_on,
        )


class InvoiceDocument(BaseModel):
    """Rendered invoice document keyed by the local invoice id."""

    invoice_id: str
    content: bytes
    content_type: str = "application/pdf"
    encoding: str = "base64"
    created_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class SynchronizationWatermark(BaseModel):
    """Per-tenant timestamps of the last completed sweeps."""

    tenant_id: str
    users_last_synchronized_on: Optional[datetime] = None
    invoices_last_synchronized_on: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def advance(
        self,
        *,
        users: Optional[datetime] = None,
        invoices: Optional[datetime] = None,
    ) -> "SynchronizationWatermark":
        """Return a copy with the given timestamps, never moving one backwards."""
        return self.model_copy(
            update={
                "users_last_synchronized_on": _latest(self.users_last_synchronized_on, users),
                "invoices_last_synchronized_on": _latest(self.invoices_last_synchronized_on, invoices),
            }
        )


def _latest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if candidate is None:
        return current
    if current is None:
        return candidate
    return max(current, candidate)


class TransactionBillingData(BaseModel):
    """Billing state attached to a usage session."""

    invoice_id: Optional[str] = None
    invoice_status: Optional[InvoiceStatus] = None
    invoice_item_id: Optional[str] = None
    last_update: Optional[datetime] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class Transaction(BaseModel):
    """Billable usage session as handed over by the transaction lifecycle."""

    id: str
    tenant_id: str
    user_id: Optional[str] = None
    user: Optional[LocalUser] = None
    charge_box_id: Optional[str] = None
    billing_data: Optional[TransactionBillingData] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class InvoiceItem(BaseModel):
    """Line item added to a provider invoice."""

    description: str
    amount: int = Field(ge=0)
    currency: str = Field(default="EUR", min_length=3, max_length=3)
    quantity: int = Field(default=1, ge=1)
    tax_ids: List[str] = Field(default_factory=list)
    item_id: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingTax(BaseModel):
    """Tax rate configured at the provider."""

    tax_id: str
    description: str
    display_name: str
    percentage: float = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class ChargeResult(BaseModel):
    """Outcome of a settlement attempt reported by the provider."""

    billing_invoice_id: str
    status: InvoiceStatus
    paid: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class BillingEvent(BaseModel):
    """Decoded provider event."""

    event_id: str
    event_type: BillingEventType
    object_id: Optional[str] = None
    payload: Dict[str, object] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)


class NewInvoiceNotification(BaseModel):
    """Message telling a user that an invoice can be downloaded."""

    tenant_id: str
    invoice_id: str
    billing_invoice_id: str
    user_id: str
    email: str
    invoice_number: Optional[str] = None
    dashboard_url: str
    invoices_url: str
    download_url: str

    model_config = ConfigDict(populate_by_name=True, frozen=True)


@dataclass
class OutcomeTally:
    """Success and error counts accumulated by a batch operation."""

    in_success: int = 0
    in_error: int = 0

    def record_success(self) -> None:
        self.in_success += 1

    def record_error(self, count: int = 1) -> None:
        self.in_error += count

    @property
    def total(self) -> int:
        return self.in_success + self.in_error

    def describe(self, noun: str, *, verb: str = "synchronized") -> str:
        if self.in_success and self.in_error:
            return (
                f"{self.in_success} {noun}(s) were successfully {verb} "
                f"and {self.in_error} failed to be {verb}"
            )
        if self.in_success:
            return f"{self.in_success} {noun}(s) were successfully {verb}"
        if self.in_error:
            return f"{self.in_error} {noun}(s) failed to be {verb}"
        return f"All the {noun}s are up to date"
