"""PostgreSQL persistence for billing reconciliation state."""
from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Optional
from uuid import uuid4

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from .models import (
    PAYABLE_INVOICE_STATUSES,
    BillingData,
    InvoiceDocument,
    InvoiceRecord,
    InvoiceStatus,
    LocalUser,
    SynchronizationWatermark,
    UserStatus,
)


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_billing_data(row: dict) -> Optional[BillingData]:
    columns = (
        "billing_customer_id",
        "billing_has_synchro_error",
        "billing_invoices_last_synchronized_on",
        "billing_last_changed_on",
    )
    if not any(row.get(column) for column in columns):
        return None
    return BillingData(
        customer_id=row.get("billing_customer_id"),
        has_synchro_error=bool(row.get("billing_has_synchro_error")),
        invoices_last_synchronized_on=row.get("billing_invoices_last_synchronized_on"),
        last_changed_on=row.get("billing_last_changed_on"),
    )


def _row_to_user(row: dict) -> LocalUser:
    return LocalUser(
        user_id=row["id"],
        tenant_id=row["tenant_id"],
        email=row["email"],
        first_name=row.get("first_name"),
        last_name=row.get("last_name"),
        locale=row.get("locale") or "en_US",
        status=UserStatus(row["status"]),
        billing_data=_row_to_billing_data(row),
        last_changed_on=row["last_changed_on"],
    )


def _row_to_invoice(row: dict) -> InvoiceRecord:
    return InvoiceRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        billing_invoice_id=row["billing_invoice_id"],
        user_id=row["user_id"],
        customer_id=row["customer_id"],
        number=row.get("number"),
        status=InvoiceStatus(row["status"]),
        amount=int(row["amount"]),
        currency=row["currency"],
        nbr_of_items=int(row["nbr_of_items"]),
        downloadable=bool(row["downloadable"]),
        created_on=row["created_on"],
        updated_at=row["updated_at"],
    )


def _row_to_watermark(tenant_id: str, row: Optional[dict]) -> SynchronizationWatermark:
    if not row:
        return SynchronizationWatermark(tenant_id=tenant_id)
    return SynchronizationWatermark(
        tenant_id=tenant_id,
        users_last_synchronized_on=row.get("users_last_synchronized_on"),
        invoices_last_synchronized_on=row.get("invoices_last_synchronized_on"),
    )


class PostgresBillingRepository:
    """Concrete repository persisting reconciliation state in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def list_users_in_billing_error(self, tenant_id: str, *, limit: int) -> list[LocalUser]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM users
                WHERE tenant_id = %s AND billing_has_synchro_error IS TRUE
                ORDER BY id
                LIMIT %s
                """,
                (tenant_id, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_user(row) for row in rows]

    def list_users_to_synchronize(self, tenant_id: str, *, limit: int) -> list[LocalUser]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM users
                WHERE tenant_id = %s
                  AND status = %s
                  AND billing_has_synchro_error IS NOT TRUE
                  AND (
                      billing_customer_id IS NULL
                      OR billing_last_changed_on IS NULL
                      OR last_changed_on > billing_last_changed_on
                  )
                ORDER BY id
                LIMIT %s
                """,
                (tenant_id, UserStatus.ACTIVE.value, limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_user(row) for row in rows]

    def get_user(self, tenant_id: str, user_id: str) -> Optional[LocalUser]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM users
                WHERE tenant_id = %s AND id = %s
                LIMIT 1
                """,
                (tenant_id, user_id),
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def get_user_by_billing_id(self, tenant_id: str, customer_id: str) -> Optional[LocalUser]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM users
                WHERE tenant_id = %s AND billing_customer_id = %s
                LIMIT 1
                """,
                (tenant_id, customer_id),
            )
            row = cursor.fetchone()
            return _row_to_user(row) if row else None

    def save_user_billing_data(self, tenant_id: str, user_id: str, billing_data: BillingData) -> BillingData:
        with self._cursor() as cursor:
            cursor.execute(
                """
                UPDATE users
                SET billing_customer_id = %(customer_id)s,
                    billing_has_synchro_error = %(has_synchro_error)s,
                    billing_invoices_last_synchronized_on = %(invoices_last_synchronized_on)s,
                    billing_last_changed_on = %(last_changed_on)s
                WHERE tenant_id = %(tenant_id)s AND id = %(user_id)s
                RETURNING *
                """,
                {
                    "tenant_id": tenant_id,
                    "user_id": user_id,
                    "customer_id": billing_data.customer_id,
                    "has_synchro_error": billing_data.has_synchro_error,
                    "invoices_last_synchronized_on": billing_data.invoices_last_synchronized_on,
                    "last_changed_on": billing_data.last_changed_on,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise LookupError(f"User {user_id} not found in tenant {tenant_id}")
            return _row_to_billing_data(row) or billing_data

    def get_invoice_by_billing_invoice_id(self, tenant_id: str, billing_invoice_id: str) -> Optional[InvoiceRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_invoices
                WHERE tenant_id = %s AND billing_invoice_id = %s
                LIMIT 1
                """,
                (tenant_id, billing_invoice_id),
            )
            row = cursor.fetchone()
            return _row_to_invoice(row) if row else None

    def save_invoice(self, invoice: InvoiceRecord) -> InvoiceRecord:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_invoices (
                    id,
                    tenant_id,
                    billing_invoice_id,
                    user_id,
                    customer_id,
                    number,
                    status,
                    amount,
                    currency,
                    nbr_of_items,
                    downloadable,
                    created_on
                )
                VALUES (%(id)s, %(tenant_id)s, %(billing_invoice_id)s, %(user_id)s,
                        %(customer_id)s, %(number)s, %(status)s, %(amount)s,
                        %(currency)s, %(nbr_of_items)s, %(downloadable)s, %(created_on)s)
                ON CONFLICT (tenant_id, billing_invoice_id) DO UPDATE SET
                    user_id = EXCLUDED.user_id,
                    customer_id = EXCLUDED.customer_id,
                    number = EXCLUDED.number,
                    status = EXCLUDED.status,
                    amount = EXCLUDED.amount,
                    currency = EXCLUDED.currency,
                    nbr_of_items = EXCLUDED.nbr_of_items,
                    downloadable = EXCLUDED.downloadable,
                    created_on = EXCLUDED.created_on,
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "id": invoice.id or uuid4().hex,
                    "tenant_id": invoice.tenant_id,
                    "billing_invoice_id": invoice.billing_invoice_id,
                    "user_id": invoice.user_id,
                    "customer_id": invoice.customer_id,
                    "number": invoice.number,
                    "status": invoice.status.value,
                    "amount": invoice.amount,
                    "currency": invoice.currency,
                    "nbr_of_items": invoice.nbr_of_items,
                    "downloadable": invoice.downloadable,
                    "created_on": invoice.created_on,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist invoice")
            return _row_to_invoice(row)

    def delete_invoice_by_billing_invoice_id(self, tenant_id: str, billing_invoice_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM billing_invoices
                WHERE tenant_id = %s AND billing_invoice_id = %s
                """,
                (tenant_id, billing_invoice_id),
            )
            return cursor.rowcount > 0

    def save_invoice_document(self, tenant_id: str, document: InvoiceDocument) -> InvoiceDocument:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_invoice_documents (
                    tenant_id,
                    invoice_id,
                    content,
                    content_type,
                    encoding,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (tenant_id, invoice_id) DO UPDATE SET
                    content = EXCLUDED.content,
                    content_type = EXCLUDED.content_type,
                    encoding = EXCLUDED.encoding,
                    created_at = EXCLUDED.created_at
                """,
                (
                    tenant_id,
                    document.invoice_id,
                    psycopg2.Binary(document.content),
                    document.content_type,
                    document.encoding,
                    document.created_at,
                ),
            )
            return document

    def list_invoices_to_pay(self, tenant_id: str, *, limit: int) -> list[InvoiceRecord]:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_invoices
                WHERE tenant_id = %s AND status = ANY(%s)
                LIMIT %s
                """,
                (tenant_id, [status.value for status in PAYABLE_INVOICE_STATUSES], limit),
            )
            rows = cursor.fetchall() or []
            return [_row_to_invoice(row) for row in rows]

    def get_watermark(self, tenant_id: str) -> SynchronizationWatermark:
        with self._cursor() as cursor:
            cursor.execute(
                """
                SELECT *
                FROM billing_settings
                WHERE tenant_id = %s
                LIMIT 1
                """,
                (tenant_id,),
            )
            return _row_to_watermark(tenant_id, cursor.fetchone())

    def save_watermark(self, watermark: SynchronizationWatermark) -> SynchronizationWatermark:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO billing_settings (
                    tenant_id,
                    users_last_synchronized_on,
                    invoices_last_synchronized_on
                )
                VALUES (%(tenant_id)s, %(users)s, %(invoices)s)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    users_last_synchronized_on = GREATEST(
                        billing_settings.users_last_synchronized_on,
                        EXCLUDED.users_last_synchronized_on
                    ),
                    invoices_last_synchronized_on = GREATEST(
                        billing_settings.invoices_last_synchronized_on,
                        EXCLUDED.invoices_last_synchronized_on
                    ),
                    updated_at = NOW()
                RETURNING *
                """,
                {
                    "tenant_id": watermark.tenant_id,
                    "users": watermark.users_last_synchronized_on,
                    "invoices": watermark.invoices_last_synchronized_on,
                },
            )
            return _row_to_watermark(watermark.tenant_id, cursor.fetchone())


__all__ = ["PostgresBillingRepository", "managed_connection"]
