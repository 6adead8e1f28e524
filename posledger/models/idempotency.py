from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow
from .base import IdentityMixin


class IdempotencyStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class IdempotencyRecord(IdentityMixin, db.Model):
    """
    One row per caller-supplied idempotency key.

    - PENDING: claimed by the attempt holding claim_token
    - COMPLETED: response_json holds the terminal result (or a cached
      terminal error when error_code is set); replayed until expires_at
    - FAILED: the last attempt failed retryably; the key may be reclaimed

    Every transition is a compare-and-set on claim_token.
    """
    __tablename__ = "idempotency_records"
    __table_args__ = (
        db.UniqueConstraint("key", name="uq_idempotency_records_key"),
    )

    key = db.Column(db.String(128), nullable=False)
    operation = db.Column(db.String(64), nullable=False)
    request_hash = db.Column(db.String(64), nullable=True)
    status = db.Column(db.String(16), nullable=False, default=IdempotencyStatus.PENDING, index=True)
    claim_token = db.Column(db.String(36), nullable=False)

    response_json = db.Column(db.Text, nullable=True)
    error_code = db.Column(db.String(32), nullable=True)
    expires_at = db.Column(db.DateTime, nullable=False, index=True)

    def is_expired(self, now=None) -> bool:
        return (now or utcnow()) > self.expires_at

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "key": self.key,
            "operation": self.operation,
            "status": self.status,
            "error_code": self.error_code,
            "expires_at": to_utc_z(self.expires_at),
        }
