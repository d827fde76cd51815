"""Scheduled billing jobs and their run metrics."""
from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Dict, Optional, Sequence

from dotenv import load_dotenv

from ledgersync.app.billing import BillingSyncService, OutcomeTally
from ledgersync.app.services.billing import build_billing_sync_service, get_billing_sync_service
from ledgersync.config import load_billing_config

logger = logging.getLogger(__name__)


class BillingJob(str, Enum):
    """Billing sweeps that can be scheduled per tenant."""

    SYNCHRONIZE_USERS = "synchronize_users"
    SYNCHRONIZE_INVOICES = "synchronize_invoices"
    CHARGE_INVOICES = "charge_invoices"


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "in_success": 0,
        "in_error": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_JOB_METRICS: Dict[str, Dict[str, object]] = {job.value: _empty_metrics() for job in BillingJob}
_metrics_lock = Lock()


def _record_run_start(job: BillingJob, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job.value]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(job: BillingJob, completed_at: datetime, tally: OutcomeTally) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job.value]
        metrics["in_success"] = int(metrics.get("in_success", 0)) + tally.in_success
        metrics["in_error"] = int(metrics.get("in_error", 0)) + tally.in_error
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(job: BillingJob, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job.value]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def run_billing_job(
    job: BillingJob,
    tenant_id: str,
    *,
    service: Optional[BillingSyncService] = None,
    now: Optional[datetime] = None,
) -> OutcomeTally:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    billing_service = service or get_billing_sync_service()
    _record_run_start(job, current_time)
    try:
        if job == BillingJob.SYNCHRONIZE_USERS:
            tally = billing_service.synchronize_users(tenant_id)
        elif job == BillingJob.SYNCHRONIZE_INVOICES:
            tally = billing_service.synchronize_invoices(tenant_id)
        else:
            tally = billing_service.charge_invoices(tenant_id)
    except Exception as exc:
        _record_run_failure(job, exc)
        logger.exception(
            "Billing job failed",
            extra={"job": job.value, "tenant_id": tenant_id},
        )
        raise
    else:
        _record_run_success(job, current_time, tally)
        logger.info(
            "Billing job completed",
            extra={
                "job": job.value,
                "tenant_id": tenant_id,
                "in_success": tally.in_success,
                "in_error": tally.in_error,
            },
        )
        return tally


def get_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _JOB_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _JOB_METRICS.values():
            metrics.update(_empty_metrics())


def _configure_database() -> None:
    import psycopg2

    from ledgersync import app_context

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL environment variable is required")
    app_context.configure(get_conn=lambda: psycopg2.connect(database_url))


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run a billing synchronization job for one tenant.")
    parser.add_argument("job", choices=[job.value for job in BillingJob])
    parser.add_argument("--tenant", required=True, help="Tenant identifier")
    args = parser.parse_args(argv)

    load_dotenv()
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    _configure_database()

    # Deliver notifications before the process exits.
    config = replace(load_billing_config(), notify_in_background=False)
    service = build_billing_sync_service(config)
    tally = run_billing_job(BillingJob(args.job), args.tenant, service=service)
    print(f"{args.job}: in_success={tally.in_success} in_error={tally.in_error}")
    return 0


__all__ = [
    "BillingJob",
    "get_job_metrics",
    "main",
    "run_billing_job",
]


if __name__ == "__main__":
    sys.exit(main())
