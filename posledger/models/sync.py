from __future__ import annotations

from datetime import timedelta

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class SyncOperation:
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncStatus:
    PENDING = "PENDING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


class SyncQueueItem(IdentityMixin, db.Model):
    """Outbound change waiting to be pushed to the central server."""
    __tablename__ = "sync_queue_items"

    entity_type = db.Column(db.String(32), nullable=False)
    entity_id = db.Column(db.String(36), nullable=False)
    operation = db.Column(db.String(8), nullable=False)
    payload = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(8), nullable=False, default=SyncStatus.PENDING, index=True)

    retry_count = db.Column(db.Integer, nullable=False, default=0)
    last_retry_at = db.Column(db.DateTime, nullable=True)
    error_message = db.Column(db.Text, nullable=True)
    synced_at = db.Column(db.DateTime, nullable=True)

    def can_retry(self, max_retries: int) -> bool:
        return self.retry_count < max_retries

    def next_retry_delay(self) -> timedelta:
        # 1s, 2s, 4s, ... capped at five minutes
        return timedelta(seconds=min(2 ** self.retry_count, 300))

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "operation": self.operation,
            "status": self.status,
            "retry_count": self.retry_count,
            "last_retry_at": to_utc_z(self.last_retry_at),
            "error_message": self.error_message,
            "synced_at": to_utc_z(self.synced_at),
        }
