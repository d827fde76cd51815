"""Billing synchronization configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional
import os


@dataclass(frozen=True)
class FeatureToggles:
    """Optional billing behaviors switched on or off at startup."""

    sync_users: bool = True
    prevent_customer_deletion: bool = True


@dataclass(frozen=True)
class BillingSyncConfig:
    """Configuration for the billing reconciliation engine."""

    feature_toggles: FeatureToggles = field(default_factory=FeatureToggles)
    query_limit: int = 1000
    notify_new_invoices: bool = True
    notify_in_background: bool = True
    app_base_url: str = "http://localhost:5173"


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def load_billing_config(env: Optional[Mapping[str, str]] = None) -> BillingSyncConfig:
    """Load :class:`BillingSyncConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    feature_toggles = FeatureToggles(
        sync_users=_to_bool(env_mapping.get("BILLING_SYNC_USERS"), default=True),
        prevent_customer_deletion=_to_bool(
            env_mapping.get("BILLING_PREVENT_CUSTOMER_DELETION"), default=True
        ),
    )
    query_limit = max(1, _to_int(env_mapping.get("BILLING_QUERY_LIMIT"), default=1000))
    app_base_url = env_mapping.get("APP_BASE_URL", "http://localhost:5173")

    return BillingSyncConfig(
        feature_toggles=feature_toggles,
        query_limit=query_limit,
        notify_new_invoices=_to_bool(env_mapping.get("BILLING_NOTIFY_NEW_INVOICES"), default=True),
        notify_in_background=_to_bool(env_mapping.get("BILLING_NOTIFY_IN_BACKGROUND"), default=True),
        app_base_url=app_base_url.rstrip("/"),
    )
