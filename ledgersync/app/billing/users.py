"""Reconciliation of local users with provider customers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional, Set

from .exceptions import BillingCorrelationError, BillingInconsistencyError
from .models import BillingData, LocalUser, OutcomeTally, ProviderUser
from .provider import BillingProvider
from .storage import BillingRepository

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class UserReconciler:
    """Pushes local users to the provider and pulls provider-side changes back."""

    repository: BillingRepository
    provider: BillingProvider
    query_limit: int = 1000
    clock: Callable[[], datetime] = _utcnow

    def reconcile_users(self, tenant_id: str, *, since: Optional[datetime]) -> OutcomeTally:
        """Run one users sweep and return its tally.

        Users already flagged in error are counted, not retried. Users whose
        billing data is stale are created or updated at the provider, then
        customers changed at the provider since ``since`` are pulled back.
        Every failure is isolated to its user; a changed customer that could
        not be pulled leaves its local user stale so the next push retries it.
        """
        tally = OutcomeTally()

        users_in_error = self.repository.list_users_in_billing_error(tenant_id, limit=self.query_limit)
        tally.record_error(len(users_in_error))

        processed: Set[str] = set()
        users_to_synchronize = self.repository.list_users_to_synchronize(tenant_id, limit=self.query_limit)
        if users_to_synchronize:
            logger.info(
                "%s user(s) are going to be synchronized in the billing system",
                len(users_to_synchronize),
                extra={"tenant_id": tenant_id},
            )
        for user in users_to_synchronize:
            processed.add(user.user_id)
            self._synchronize_in_sweep(tenant_id, user, tally)

        changed_customer_ids = self.provider.list_changed_customer_ids(since)
        if changed_customer_ids:
            logger.info(
                "%s billing user(s) are going to be synchronized with local users",
                len(changed_customer_ids),
                extra={"tenant_id": tenant_id},
            )
        for customer_id in changed_customer_ids:
            try:
                self._pull_customer(tenant_id, customer_id, processed, tally)
            except Exception:
                tally.record_error()
                logger.error(
                    "Failed to reconcile billing user %s",
                    customer_id,
                    extra={"tenant_id": tenant_id, "customer_id": customer_id},
                    exc_info=True,
                )

        return tally

    def synchronize_user(self, tenant_id: str, user: LocalUser) -> BillingData:
        """Create or update ``user`` at the provider and persist the returned billing data."""
        if self.provider.user_exists(user):
            provider_user = self.provider.update_user(user)
        else:
            provider_user = self.provider.create_user(user)
        self._check_identity(user, provider_user)
        billing_data = provider_user.billing_data.model_copy(
            update={
                "has_synchro_error": False,
                "invoices_last_synchronized_on": (
                    user.billing_data.invoices_last_synchronized_on
                    if user.billing_data
                    else provider_user.billing_data.invoices_last_synchronized_on
                ),
                "last_changed_on": self.clock(),
            }
        )
        return self.repository.save_user_billing_data(tenant_id, user.user_id, billing_data)

    def force_synchronize_user(self, tenant_id: str, user: LocalUser) -> BillingData:
        """Resolve the provider identity of one user by email, bypassing change detection."""
        provider_user = self.provider.get_user_by_email(user.email)
        if provider_user is not None:
            if user.billing_data is not None:
                billing_data = user.billing_data.model_copy(
                    update={
                        "customer_id": provider_user.customer_id,
                        "has_synchro_error": False,
                    }
                )
            else:
                billing_data = self.provider.update_user(user).billing_data
        else:
            billing_data = self.provider.create_user(user).billing_data
        billing_data = billing_data.model_copy(update={"last_changed_on": self.clock()})
        stored = self.repository.save_user_billing_data(tenant_id, user.user_id, billing_data)
        logger.info(
            "Forced the synchronization of user %s",
            user.email,
            extra={"tenant_id": tenant_id, "user_id": user.user_id, "customer_id": stored.customer_id},
        )
        return stored

    def _synchronize_in_sweep(self, tenant_id: str, user: LocalUser, tally: OutcomeTally) -> None:
        try:
            self.synchronize_user(tenant_id, user)
        except Exception:
            tally.record_error()
            logger.error(
                "Failed to synchronize user %s in the billing system",
                user.user_id,
                extra={"tenant_id": tenant_id, "user_id": user.user_id, "customer_id": user.customer_id},
                exc_info=True,
            )
        else:
            tally.record_success()
            logger.info(
                "User %s successfully synchronized in the billing system",
                user.user_id,
                extra={"tenant_id": tenant_id, "user_id": user.user_id},
            )

    def _pull_customer(self, tenant_id: str, customer_id: str, processed: Set[str], tally: OutcomeTally) -> None:
        user = self.repository.get_user_by_billing_id(tenant_id, customer_id)
        if user is None:
            tally.record_error()
            logger.error(
                "Billing user %s does not exist locally",
                customer_id,
                extra={"tenant_id": tenant_id, "customer_id": customer_id},
            )
            return
        if user.user_id in processed:
            logger.debug(
                "User %s already handled in this sweep",
                user.user_id,
                extra={"tenant_id": tenant_id, "customer_id": customer_id},
            )
            return
        processed.add(user.user_id)
        if self.provider.get_user(customer_id) is None:
            # Deleted upstream: keep the local user, flag it for operators.
            self._flag_synchro_error(tenant_id, user)
            tally.record_error()
            logger.error(
                "Billing user %s does not exist in the billing system",
                customer_id,
                extra={"tenant_id": tenant_id, "user_id": user.user_id, "customer_id": customer_id},
            )
            return
        try:
            self.synchronize_user(tenant_id, user)
        except Exception:
            # Picked up again by the next sweep's push step.
            self._mark_stale(tenant_id, user)
            raise
        tally.record_success()
        logger.info(
            "Billing user %s successfully synchronized with local user %s",
            customer_id,
            user.user_id,
            extra={"tenant_id": tenant_id, "user_id": user.user_id, "customer_id": customer_id},
        )

    def _mark_stale(self, tenant_id: str, user: LocalUser) -> None:
        billing_data = (user.billing_data or BillingData()).model_copy(update={"last_changed_on": None})
        self.repository.save_user_billing_data(tenant_id, user.user_id, billing_data)

    def _flag_synchro_error(self, tenant_id: str, user: LocalUser) -> None:
        billing_data = (user.billing_data or BillingData()).model_copy(update={"has_synchro_error": True})
        self.repository.save_user_billing_data(tenant_id, user.user_id, billing_data)

    @staticmethod
    def _check_identity(user: LocalUser, provider_user: ProviderUser) -> None:
        if not provider_user.customer_id:
            raise BillingCorrelationError(
                code="billing_customer_missing",
                message="Billing system returned a user without customer identifier",
                detail={"user_id": user.user_id},
            )
        if user.customer_id and user.customer_id != provider_user.customer_id:
            raise BillingInconsistencyError(
                code="billing_customer_mismatch",
                message="Local and billing system customer identifiers differ",
                detail={
                    "user_id": user.user_id,
                    "local_customer_id": user.customer_id,
                    "billing_customer_id": provider_user.customer_id,
                },
            )


__all__ = ["UserReconciler"]
