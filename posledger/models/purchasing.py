from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class PurchaseOrderStatus:
    PENDING = "PENDING"
    PARTIALLY_RECEIVED = "PARTIALLY_RECEIVED"
    RECEIVED = "RECEIVED"
    CANCELLED = "CANCELLED"

    OUTSTANDING = (PENDING, PARTIALLY_RECEIVED)


class PurchaseOrder(IdentityMixin, db.Model):
    """Supplier order; receiving it appends PURCHASE stock movements."""
    __tablename__ = "purchase_orders"

    supplier_name = db.Column(db.String(255), nullable=False)
    status = db.Column(db.String(24), nullable=False, default=PurchaseOrderStatus.PENDING, index=True)
    expected_at = db.Column(db.DateTime, nullable=True)
    received_at = db.Column(db.DateTime, nullable=True)
    created_by_user_id = db.Column(db.String(36), nullable=True)
    notes = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    lines = db.relationship(
        "PurchaseOrderLine",
        back_populates="purchase_order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.position",
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def total_cents(self) -> int:
        return sum(line.quantity_ordered * line.unit_cost_cents for line in self.lines)

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "supplier_name": self.supplier_name,
            "status": self.status,
            "expected_at": to_utc_z(self.expected_at),
            "received_at": to_utc_z(self.received_at),
            "notes": self.notes,
            "total_cents": self.total_cents,
            "lines": [line.to_dict() for line in self.lines],
        }


class PurchaseOrderLine(IdentityMixin, db.Model):
    __tablename__ = "purchase_order_lines"

    purchase_order_id = db.Column(db.String(36), db.ForeignKey("purchase_orders.id"), nullable=False, index=True)
    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False)
    position = db.Column(db.Integer, nullable=False)
    quantity_ordered = db.Column(db.Integer, nullable=False)
    quantity_received = db.Column(db.Integer, nullable=False, default=0)
    unit_cost_cents = db.Column(db.Integer, nullable=False)

    purchase_order = db.relationship("PurchaseOrder", back_populates="lines")
    product = db.relationship("Product")

    @property
    def quantity_pending(self) -> int:
        return self.quantity_ordered - self.quantity_received

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "position": self.position,
            "quantity_ordered": self.quantity_ordered,
            "quantity_received": self.quantity_received,
            "unit_cost_cents": self.unit_cost_cents,
        }
