from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class CreditMovementKind:
    CHARGE = "CHARGE"
    PAYMENT = "PAYMENT"


class Customer(IdentityMixin, db.Model):
    """
    Customer and its credit account.

    outstanding_cents caches SUM(credit_movements.amount_cents); it is only
    written by the credit ledger. A credit sale may never leave
    outstanding_cents above credit_limit_cents.
    """
    __tablename__ = "customers"

    name = db.Column(db.String(255), nullable=False)
    document_number = db.Column(db.String(32), nullable=True, unique=True)
    phone = db.Column(db.String(32), nullable=True)

    credit_limit_cents = db.Column(db.Integer, nullable=False, default=0)
    outstanding_cents = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def available_credit_cents(self) -> int:
        return max(self.credit_limit_cents - self.outstanding_cents, 0)

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "name": self.name,
            "document_number": self.document_number,
            "phone": self.phone,
            "credit_limit_cents": self.credit_limit_cents,
            "outstanding_cents": self.outstanding_cents,
            "available_credit_cents": self.available_credit_cents(),
            "is_active": self.is_active,
            "version_id": self.version_id,
        }


class CreditMovement(IdentityMixin, db.Model):
    """Append-only credit ledger row: CHARGE is positive, PAYMENT negative."""
    __tablename__ = "credit_movements"
    __table_args__ = (
        db.Index("ix_credit_movements_customer_created", "customer_id", "created_at"),
    )

    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False)
    amount_cents = db.Column(db.Integer, nullable=False)
    balance_after_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(16), nullable=True)
    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(36), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.String(36), nullable=True)

    customer = db.relationship("Customer", backref=db.backref("credit_movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "kind": self.kind,
            "amount_cents": self.amount_cents,
            "balance_after_cents": self.balance_after_cents,
            "payment_method": self.payment_method,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
