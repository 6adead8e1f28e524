from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class AlertType:
    LOW_STOCK = "LOW_STOCK"
    EXPIRING_PRODUCT = "EXPIRING_PRODUCT"
    CUSTOMER_DEBT = "CUSTOMER_DEBT"
    PENDING_PURCHASE_ORDER = "PENDING_PURCHASE_ORDER"
    CASH_REGISTER_OPEN = "CASH_REGISTER_OPEN"
    SYNC_PENDING = "SYNC_PENDING"

    ALL = (LOW_STOCK, EXPIRING_PRODUCT, CUSTOMER_DEBT, PENDING_PURCHASE_ORDER, CASH_REGISTER_OPEN, SYNC_PENDING)


class AlertSeverity:
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"

    RANK = {INFO: 1, WARNING: 2, CRITICAL: 3}


class AlertStatus:
    ACTIVE = "ACTIVE"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    RESOLVED = "RESOLVED"
    DISMISSED = "DISMISSED"

    OPEN = (ACTIVE, ACKNOWLEDGED)
    TERMINAL = (RESOLVED, DISMISSED)


def open_key_for(subject_type: str, subject_id: str, alert_type: str) -> str:
    return f"{subject_type}:{subject_id}:{alert_type}"


class Alert(IdentityMixin, db.Model):
    """
    Operational alert derived from ledger/domain state.

    open_key is set while the alert is ACTIVE or ACKNOWLEDGED and cleared
    when it reaches a terminal status; the unique constraint allows at most
    one open alert per (subject, type).
    """
    __tablename__ = "alerts"
    __table_args__ = (
        db.UniqueConstraint("open_key", name="uq_alerts_open_key"),
        db.Index("ix_alerts_subject", "subject_type", "subject_id", "alert_type"),
    )

    alert_type = db.Column(db.String(32), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False)
    severity_rank = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=AlertStatus.ACTIVE, index=True)

    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text, nullable=False)
    subject_type = db.Column(db.String(32), nullable=False)
    subject_id = db.Column(db.String(36), nullable=False)
    open_key = db.Column(db.String(128), nullable=True)

    acknowledged_at = db.Column(db.DateTime, nullable=True)
    acknowledged_by_user_id = db.Column(db.String(36), nullable=True)
    resolved_at = db.Column(db.DateTime, nullable=True)

    @property
    def is_open(self) -> bool:
        return self.status in AlertStatus.OPEN

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "alert_type": self.alert_type,
            "severity": self.severity,
            "status": self.status,
            "title": self.title,
            "message": self.message,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "acknowledged_at": to_utc_z(self.acknowledged_at),
            "acknowledged_by_user_id": self.acknowledged_by_user_id,
            "resolved_at": to_utc_z(self.resolved_at),
        }
