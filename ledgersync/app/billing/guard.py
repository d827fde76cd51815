"""Billing preconditions gating the lifecycle of a billable usage session.

These checks are pure: they perform no I/O and raise
:class:`BillingPreconditionError` on the first unmet condition.
"""
from __future__ import annotations

from .exceptions import BillingPreconditionError
from .models import LocalUser, Transaction


def _fail(code: str, message: str, transaction: Transaction) -> BillingPreconditionError:
    return BillingPreconditionError(
        code=code,
        message=message,
        detail={"transaction_id": transaction.id, "tenant_id": transaction.tenant_id},
    )


def check_start_transaction(transaction: Transaction) -> None:
    """Refuse to start a session the provider cannot charge."""

    if not transaction.user_id or transaction.user is None:
        raise _fail("billing_user_missing", "User is not provided", transaction)
    if not transaction.user.customer_id:
        raise _fail(
            "billing_customer_missing",
            "Transaction user has no billing method or no customer in the billing system",
            transaction,
        )


def check_stop_transaction(transaction: Transaction) -> None:
    """Refuse to bill a stopped session twice or without a charging resource."""

    if not transaction.user_id or transaction.user is None:
        raise _fail("billing_user_missing", "User is not provided", transaction)
    if not transaction.charge_box_id:
        raise _fail("billing_charge_box_missing", "Charging station is not provided", transaction)
    if transaction.billing_data is not None and transaction.billing_data.invoice_id:
        raise _fail("billing_already_invoiced", "Transaction has already billing data", transaction)
    if transaction.user.billing_data is None:
        raise _fail("billing_data_missing", "User has no billing data", transaction)


def check_user_deletion(user: LocalUser, *, prevent_customer_deletion: bool) -> None:
    """Refuse to delete a provider customer while customer deletion is prevented."""

    if prevent_customer_deletion and user.customer_id:
        raise BillingPreconditionError(
            code="billing_customer_deletion_prevented",
            message="User has a customer in the billing system and cannot be deleted there",
            detail={"user_id": user.user_id, "customer_id": user.customer_id},
        )


__all__ = ["check_start_transaction", "check_stop_transaction", "check_user_deletion"]
