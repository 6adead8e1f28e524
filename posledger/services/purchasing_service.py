# Overview: Supplier purchase orders; receiving posts PURCHASE stock movements.

"""
Purchase Order Service

LIFECYCLE:
1. PENDING: created, nothing received yet
2. PARTIALLY_RECEIVED: some lines (or part of a line) received
3. RECEIVED: every line fully received
4. CANCELLED: cancelled while still outstanding

DESIGN:
- Receiving appends one PURCHASE StockMovement per received line through
  the StockLedger, referencing the order, in the same transaction as the
  line/status update and its audit entry
- A line can never receive more than its pending quantity
- Outstanding orders older than the SLA raise PENDING_PURCHASE_ORDER alerts
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from ..errors import NotFound, ValidationError
from ..models import MovementKind, PurchaseOrder, PurchaseOrderLine, PurchaseOrderStatus
from ..time_utils import utcnow
from .audit_service import ClientMeta
from .concurrency import begin_immediate, run_with_retry


@dataclass(frozen=True)
class PurchaseOrderLineRequest:
    product_id: str
    quantity: int
    unit_cost_cents: int


class PurchaseOrderService:
    def __init__(self, store, stock, audit, *, retry_attempts: int = 3, backoff_base: float = 0.1):
        self.store = store
        self.session = store.session
        self.stock = stock
        self.audit = audit
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    def get(self, order_id: str) -> PurchaseOrder:
        order = self.store.get(order_id)
        if order is None:
            raise NotFound("PurchaseOrder", order_id)
        return order

    def outstanding(self) -> list[PurchaseOrder]:
        return self.store.outstanding()

    def create(
        self,
        supplier_name: str,
        lines: list[PurchaseOrderLineRequest],
        *,
        expected_at: datetime | None = None,
        notes: str | None = None,
        meta: ClientMeta | None = None,
    ) -> PurchaseOrder:
        if not (supplier_name or "").strip():
            raise ValidationError("Supplier name is required")
        if not lines:
            raise ValidationError("Purchase order must have at least one line")
        for line in lines:
            if not isinstance(line.quantity, int) or line.quantity <= 0:
                raise ValidationError("Ordered quantity must be a positive integer",
                                      details={"product_id": line.product_id})
            if not isinstance(line.unit_cost_cents, int) or line.unit_cost_cents < 0:
                raise ValidationError("Unit cost cannot be negative",
                                      details={"product_id": line.product_id})
        meta = meta or ClientMeta()

        def _op():
            for line in lines:
                if self.stock.store.get_product(line.product_id) is None:
                    raise NotFound("Product", line.product_id)
            order = PurchaseOrder(
                supplier_name=supplier_name.strip(),
                status=PurchaseOrderStatus.PENDING,
                expected_at=expected_at,
                created_by_user_id=meta.user_id,
                notes=notes,
            )
            order.lines = [
                PurchaseOrderLine(
                    product_id=line.product_id,
                    position=position,
                    quantity_ordered=line.quantity,
                    quantity_received=0,
                    unit_cost_cents=line.unit_cost_cents,
                )
                for position, line in enumerate(lines)
            ]
            self.store.add(order)
            self.audit.record("PurchaseOrder", order.id, "purchase_order.created",
                              new_values=order.to_dict(), meta=meta)
            self.session.commit()
            return order

        return self._retrying(_op)

    def receive(
        self,
        order_id: str,
        quantities: dict[str, int] | None = None,
        *,
        meta: ClientMeta | None = None,
    ) -> PurchaseOrder:
        """
        Receive goods against an order.

        Args:
            quantities: product_id -> quantity received now. None receives
                everything still pending.

        Raises:
            NotFound: unknown order
            ValidationError: empty quantities, order not outstanding, unknown product on the
                order, or more than the pending quantity
        """
        if quantities is not None and not quantities:
            raise ValidationError("Nothing to receive", details={"purchase_order_id": order_id})
        meta = meta or ClientMeta()

        def _op():
            begin_immediate(self.session)
            order = self.store.lock(order_id)
            if order is None:
                raise NotFound("PurchaseOrder", order_id)
            if order.status not in PurchaseOrderStatus.OUTSTANDING:
                raise ValidationError(f"Purchase order is {order.status}; nothing to receive",
                                      details={"purchase_order_id": order_id})
            before = order.to_dict()

            by_product = {line.product_id: line for line in order.lines}
            wanted = quantities if quantities is not None else {
                line.product_id: line.quantity_pending for line in order.lines if line.quantity_pending > 0
            }
            for product_id, qty in wanted.items():
                line = by_product.get(product_id)
                if line is None:
                    raise ValidationError("Product is not on this purchase order",
                                          details={"product_id": product_id})
                if not isinstance(qty, int) or qty <= 0 or qty > line.quantity_pending:
                    raise ValidationError(
                        "Received quantity must be positive and not exceed the pending quantity",
                        details={"product_id": product_id, "pending": line.quantity_pending},
                    )

            for product_id in sorted(wanted):
                qty = wanted[product_id]
                product = self.stock.lock_product(product_id)
                self.stock.append(
                    product, qty, MovementKind.PURCHASE,
                    reference_type="PurchaseOrder", reference_id=order.id,
                    user_id=meta.user_id,
                )
                line = by_product[product_id]
                line.quantity_received = line.quantity_received + qty
                line.touch()

            if all(line.quantity_pending == 0 for line in order.lines):
                order.status = PurchaseOrderStatus.RECEIVED
                order.received_at = utcnow()
            else:
                order.status = PurchaseOrderStatus.PARTIALLY_RECEIVED
            order.touch()
            self.session.flush()

            self.audit.record("PurchaseOrder", order.id, "purchase_order.received",
                              old_values=before, new_values=order.to_dict(), meta=meta)
            self.session.commit()
            return order

        return self._retrying(_op)

    def cancel(self, order_id: str, *, reason: str | None = None, meta: ClientMeta | None = None) -> PurchaseOrder:
        """Cancel an outstanding order. Stock already received stays received."""
        meta = meta or ClientMeta()

        def _op():
            order = self.store.lock(order_id)
            if order is None:
                raise NotFound("PurchaseOrder", order_id)
            if order.status not in PurchaseOrderStatus.OUTSTANDING:
                raise ValidationError(f"Cannot cancel a {order.status} purchase order",
                                      details={"purchase_order_id": order_id})
            before = order.to_dict()
            order.status = PurchaseOrderStatus.CANCELLED
            if reason:
                order.notes = f"{order.notes}\n{reason}" if order.notes else reason
            order.touch()
            self.session.flush()
            self.audit.record("PurchaseOrder", order.id, "purchase_order.cancelled",
                              old_values=before, new_values=order.to_dict(), meta=meta)
            self.session.commit()
            return order

        return self._retrying(_op)

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )
