from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class AuditLog(IdentityMixin, db.Model):
    """
    Append-only change log.

    old_values / new_values are JSON snapshots (either may be NULL, e.g. no
    old value on creation). Rows are only ever removed by the retention purge.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("ix_audit_logs_subject", "subject_type", "subject_id", "created_at"),
        db.Index("ix_audit_logs_user_created", "user_id", "created_at"),
    )

    subject_type = db.Column(db.String(32), nullable=False)
    subject_id = db.Column(db.String(36), nullable=False)
    action = db.Column(db.String(64), nullable=False)

    old_values = db.Column(db.Text, nullable=True)
    new_values = db.Column(db.Text, nullable=True)

    user_id = db.Column(db.String(36), nullable=True)
    user_name = db.Column(db.String(128), nullable=True)
    ip_address = db.Column(db.String(64), nullable=True)
    user_agent = db.Column(db.String(255), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "subject_type": self.subject_type,
            "subject_id": self.subject_id,
            "action": self.action,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "user_id": self.user_id,
            "user_name": self.user_name,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "created_at": to_utc_z(self.created_at),
        }
