"""
Outbound sync queue.

Committed changes are queued here, in the same transaction as the change,
for a pusher process to send to the central server. The pusher reports back
with mark_synced() / mark_failed(); failed items are re-queued with
exponential backoff until SYNC_MAX_RETRIES is reached.
"""

from __future__ import annotations

import json

from flask import current_app, has_app_context

from ..errors import NotFound, ValidationError
from ..models import SyncOperation, SyncQueueItem, SyncStatus
from ..time_utils import days_ago, utcnow
from .concurrency import run_with_retry


class SyncQueue:
    def __init__(self, store, *, max_retries: int = 5, retry_attempts: int = 3, backoff_base: float = 0.1):
        self.store = store
        self.session = store.session
        self.max_retries = max_retries
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def enqueue(self, entity_type: str, entity_id: str, operation: str, payload: dict) -> SyncQueueItem:
        """Joins the caller's transaction; does not commit."""
        if operation not in (SyncOperation.INSERT, SyncOperation.UPDATE, SyncOperation.DELETE):
            raise ValidationError(f"Unknown sync operation {operation!r}")
        item = SyncQueueItem(
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            payload=json.dumps(payload, default=str, sort_keys=True),
            status=SyncStatus.PENDING,
        )
        return self.store.add(item)

    def pending(self, limit: int = 100) -> list[SyncQueueItem]:
        return self.store.pending(limit)

    def pending_count(self) -> int:
        return self.store.pending_count()

    def mark_synced(self, item_id: str) -> SyncQueueItem:
        def _op():
            item = self._get(item_id)
            item.status = SyncStatus.SYNCED
            item.synced_at = utcnow()
            item.error_message = None
            item.touch()
            self.session.commit()
            return item

        return self._retrying(_op)

    def mark_failed(self, item_id: str, error_message: str) -> SyncQueueItem:
        def _op():
            item = self._get(item_id)
            item.status = SyncStatus.FAILED
            item.retry_count = item.retry_count + 1
            item.last_retry_at = utcnow()
            item.error_message = error_message
            item.touch()
            self.session.commit()
            return item

        item = self._retrying(_op)
        if has_app_context():
            current_app.logger.warning(
                "Sync of %s %s failed (attempt %d): %s",
                item.entity_type, item.entity_id, item.retry_count, error_message,
            )
        return item

    def retry_failed(self) -> int:
        """
        Move FAILED items whose backoff delay has elapsed back to PENDING.

        Items at or over max_retries stay FAILED for manual inspection.
        """
        def _op():
            now = utcnow()
            requeued = 0
            for item in self.store.failed():
                if not item.can_retry(self.max_retries):
                    continue
                if item.last_retry_at and item.last_retry_at + item.next_retry_delay() > now:
                    continue
                item.status = SyncStatus.PENDING
                item.touch()
                requeued += 1
            self.session.commit()
            return requeued

        return self._retrying(_op)

    def cleanup_synced(self, retention_days: int) -> int:
        def _op():
            deleted = self.store.delete_synced_before(days_ago(retention_days))
            self.session.commit()
            return deleted

        return self._retrying(_op)

    def _get(self, item_id: str) -> SyncQueueItem:
        item = self.store.get(item_id)
        if item is None:
            raise NotFound("SyncQueueItem", item_id)
        return item

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )
