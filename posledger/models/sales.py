from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class PaymentMethod:
    CASH = "CASH"
    CARD = "CARD"
    TRANSFER = "TRANSFER"
    WALLET_TRANSFER = "WALLET_TRANSFER"
    CREDIT = "CREDIT"
    MIXED = "MIXED"

    ALL = (CASH, CARD, TRANSFER, WALLET_TRANSFER, CREDIT, MIXED)


class SaleStatus:
    DRAFT = "DRAFT"
    VALIDATED = "VALIDATED"
    COMMITTED = "COMMITTED"
    REVERSED = "REVERSED"


class Sale(IdentityMixin, db.Model):
    """
    Sale document.

    LIFECYCLE: DRAFT -> VALIDATED -> COMMITTED, and COMMITTED -> REVERSED
    only through an explicit reversal. Only COMMITTED and REVERSED sales are
    ever persisted; a sale that fails validation is rolled back with its
    transaction.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.Index("ix_sales_status_created", "status", "created_at"),
    )

    status = db.Column(db.String(16), nullable=False, default=SaleStatus.DRAFT, index=True)
    payment_method = db.Column(db.String(16), nullable=False)

    customer_id = db.Column(db.String(36), db.ForeignKey("customers.id"), nullable=True, index=True)
    register_session_id = db.Column(db.String(36), db.ForeignKey("register_sessions.id"), nullable=True, index=True)
    created_by_user_id = db.Column(db.String(36), nullable=True)
    idempotency_key = db.Column(db.String(128), nullable=True, index=True)

    subtotal_cents = db.Column(db.Integer, nullable=False, default=0)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False, default=0)
    notes = db.Column(db.Text, nullable=True)

    committed_at = db.Column(db.DateTime, nullable=True)
    reversed_at = db.Column(db.DateTime, nullable=True)
    reversed_by_user_id = db.Column(db.String(36), nullable=True)
    reversal_reason = db.Column(db.String(255), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))
    register_session = db.relationship("RegisterSession", backref=db.backref("sales", lazy=True))
    lines = db.relationship(
        "SaleLine",
        back_populates="sale",
        order_by="SaleLine.position",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "status": self.status,
            "payment_method": self.payment_method,
            "customer_id": self.customer_id,
            "register_session_id": self.register_session_id,
            "created_by_user_id": self.created_by_user_id,
            "subtotal_cents": self.subtotal_cents,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "notes": self.notes,
            "committed_at": to_utc_z(self.committed_at),
            "reversed_at": to_utc_z(self.reversed_at),
            "reversal_reason": self.reversal_reason,
            "lines": [line.to_dict() for line in self.lines],
        }


class SaleLine(IdentityMixin, db.Model):
    """Individual line items on a sale document."""
    __tablename__ = "sale_lines"

    sale_id = db.Column(db.String(36), db.ForeignKey("sales.id"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    line_total_cents = db.Column(db.Integer, nullable=False)

    sale = db.relationship("Sale", back_populates="lines")
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "position": self.position,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "discount_cents": self.discount_cents,
            "line_total_cents": self.line_total_cents,
        }
