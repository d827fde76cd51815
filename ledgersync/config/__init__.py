"""Runtime configuration for the billing synchronization engine."""

from .billing import BillingSyncConfig, FeatureToggles, load_billing_config

__all__ = [
    "BillingSyncConfig",
    "FeatureToggles",
    "load_billing_config",
]
