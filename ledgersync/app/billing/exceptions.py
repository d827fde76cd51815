"""Exceptions raised by the billing reconciliation engine."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass
class BillingError(Exception):
    """Base error carrying a machine readable code and structured detail."""

    code: str
    message: str
    detail: Optional[Mapping[str, Any]] = None

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for logs and API responses."""

        return self._payload


class BillingPreconditionError(BillingError):
    """A billing precondition is not met; the triggering operation must stop."""


class BillingCorrelationError(BillingError):
    """A local or provider reference could not be resolved."""


class BillingInconsistencyError(BillingError):
    """Local and provider identities disagree and need operator remediation."""


class BillingProviderError(BillingError):
    """The billing provider failed or could not be reached."""


__all__ = [
    "BillingCorrelationError",
    "BillingError",
    "BillingInconsistencyError",
    "BillingPreconditionError",
    "BillingProviderError",
]
