# Overview: Scheduled maintenance sweeps; each is safe to run at any time and any number of times.

from __future__ import annotations

from dataclasses import dataclass

from flask import current_app

from ..time_utils import days_ago


@dataclass(frozen=True)
class SweepResult:
    task: str
    affected: int


def purge_audit_logs(core, *, retention_days: int | None = None) -> SweepResult:
    """
    Delete audit entries older than retention_days.

    Default retention: AUDIT_RETENTION_DAYS.
    """
    days = core.settings.audit_retention_days if retention_days is None else retention_days
    deleted = core.purge_audit_older_than(days_ago(days))
    current_app.logger.info("Purged %d audit entries older than %d days", deleted, days)
    return SweepResult("purge-audit", deleted)


def purge_idempotency_records(core) -> SweepResult:
    deleted = core.purge_expired_idempotency_records()
    current_app.logger.info("Purged %d expired idempotency records", deleted)
    return SweepResult("purge-idempotency", deleted)


def cleanup_sync_queue(core, *, retention_days: int | None = None) -> SweepResult:
    """Drop synced items past retention, then re-queue failed items whose backoff elapsed."""
    deleted = core.cleanup_synced(retention_days)
    requeued = core.retry_failed_sync()
    current_app.logger.info("Removed %d synced items, re-queued %d failed items", deleted, requeued)
    return SweepResult("cleanup-sync", deleted + requeued)


def run_alert_checks(core) -> SweepResult:
    evaluated = core.run_alert_checks()
    return SweepResult("alert-checks", evaluated)


def run_all(core) -> list[SweepResult]:
    return [
        purge_idempotency_records(core),
        purge_audit_logs(core),
        cleanup_sync_queue(core),
        run_alert_checks(core),
    ]
