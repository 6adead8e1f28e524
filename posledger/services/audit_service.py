"""
Audit trail recorder.

WHY: Every state-changing operation leaves a before/after snapshot that
can be queried by subject, by user, or by time window.

DESIGN PRINCIPLES:
- Append-only; the retention purge is the only delete
- record() never commits: the entry joins the caller's transaction, so an
  audit row exists iff the change it describes was committed
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime

from ..errors import ValidationError
from ..models import AuditLog
from .concurrency import run_with_retry


@dataclass(frozen=True)
class ClientMeta:
    """Who performed an operation and from where. Every field is optional."""
    user_id: str | None = None
    user_name: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def _snapshot(values: dict | None) -> str | None:
    if values is None:
        return None
    return json.dumps(values, default=str, sort_keys=True)


class AuditRecorder:
    def __init__(self, store, *, retry_attempts: int = 3, backoff_base: float = 0.1):
        self.store = store
        self.session = store.session
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def record(
        self,
        subject_type: str,
        subject_id: str,
        action: str,
        *,
        old_values: dict | None = None,
        new_values: dict | None = None,
        meta: ClientMeta | None = None,
    ) -> AuditLog:
        if not subject_type or not subject_id or not action:
            raise ValidationError("Audit entries need a subject and an action")
        meta = meta or ClientMeta()
        entry = AuditLog(
            subject_type=subject_type,
            subject_id=subject_id,
            action=action,
            old_values=_snapshot(old_values),
            new_values=_snapshot(new_values),
            user_id=meta.user_id,
            user_name=meta.user_name,
            ip_address=meta.ip_address,
            user_agent=meta.user_agent,
        )
        return self.store.add(entry)

    def for_subject(self, subject_type: str, subject_id: str) -> list[AuditLog]:
        return self.store.for_subject(subject_type, subject_id)

    def for_user(self, user_id: str, limit: int = 100) -> list[AuditLog]:
        return self.store.for_user(user_id, limit)

    def between(self, start: datetime, end: datetime) -> list[AuditLog]:
        if start > end:
            raise ValidationError("Audit window start must not be after its end")
        return self.store.between(start, end)

    def recent(self, limit: int = 50) -> list[AuditLog]:
        return self.store.recent(limit)

    def purge_older_than(self, cutoff: datetime) -> int:
        """Bulk delete entries created before ``cutoff``. Returns the row count."""
        def _op():
            deleted = self.store.delete_older_than(cutoff)
            self.session.commit()
            return deleted

        return run_with_retry(
            _op,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )
