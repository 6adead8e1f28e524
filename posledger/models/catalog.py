from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from .base import IdentityMixin


class MovementKind:
    PURCHASE = "PURCHASE"
    SALE = "SALE"
    ADJUSTMENT = "ADJUSTMENT"
    RETURN = "RETURN"
    TRANSFER = "TRANSFER"
    LOSS = "LOSS"
    INITIAL_STOCK = "INITIAL_STOCK"

    ALL = (PURCHASE, SALE, ADJUSTMENT, RETURN, TRANSFER, LOSS, INITIAL_STOCK)
    INFLOWS = (PURCHASE, RETURN, TRANSFER, INITIAL_STOCK)


class Product(IdentityMixin, db.Model):
    """
    Product master data plus the materialized stock total.

    quantity_on_hand is a cache of SUM(stock_movements.quantity_delta) for the
    product. It is only written by the stock ledger, in the same transaction
    as the movement it reflects.

    allow_backorder: explicit per-product flag permitting negative stock.
    """
    __tablename__ = "products"

    sku = db.Column(db.String(64), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    unit = db.Column(db.String(16), nullable=False, default="unit")

    price_cents = db.Column(db.Integer, nullable=False)
    cost_cents = db.Column(db.Integer, nullable=True)

    min_stock = db.Column(db.Integer, nullable=False, default=5)
    quantity_on_hand = db.Column(db.Integer, nullable=False, default=0)
    allow_backorder = db.Column(db.Boolean, nullable=False, default=False)
    expires_on = db.Column(db.Date, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} qty={self.quantity_on_hand}>"

    def is_low_stock(self) -> bool:
        return self.quantity_on_hand <= self.min_stock

    def to_dict(self) -> dict:
        return {
            **self.identity_dict(),
            "sku": self.sku,
            "name": self.name,
            "unit": self.unit,
            "price_cents": self.price_cents,
            "cost_cents": self.cost_cents,
            "min_stock": self.min_stock,
            "quantity_on_hand": self.quantity_on_hand,
            "allow_backorder": self.allow_backorder,
            "expires_on": self.expires_on.isoformat() if self.expires_on else None,
            "is_active": self.is_active,
            "version_id": self.version_id,
        }


class StockMovement(IdentityMixin, db.Model):
    """
    Append-only stock ledger row.

    Never updated or deleted. quantity_after records the running total
    immediately after this movement was applied.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.Index("ix_stock_movements_product_created", "product_id", "created_at"),
        db.Index("ix_stock_movements_reference", "reference_type", "reference_id"),
    )

    product_id = db.Column(db.String(36), db.ForeignKey("products.id"), nullable=False, index=True)
    kind = db.Column(db.String(16), nullable=False, index=True)
    quantity_delta = db.Column(db.Integer, nullable=False)
    quantity_after = db.Column(db.Integer, nullable=False)

    reference_type = db.Column(db.String(32), nullable=True)
    reference_id = db.Column(db.String(36), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    created_by_user_id = db.Column(db.String(36), nullable=True)

    product = db.relationship("Product", backref=db.backref("stock_movements", lazy="dynamic"))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "kind": self.kind,
            "quantity_delta": self.quantity_delta,
            "quantity_after": self.quantity_after,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "note": self.note,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
        }
