# Overview: Stock ledger; append-only movements with a materialized on-hand total.

"""
Stock Ledger Invariants (authoritative)

- StockMovement rows are append-only: never updated, never deleted.
- Product.quantity_on_hand == SUM(quantity_delta) over the product's
  movements. The cached total is written in the same transaction as the
  movement that changes it; verify() recomputes the fold to prove it.
- A movement may not drive quantity_on_hand below zero unless the product
  has allow_backorder set.
- append() must be called with the product row locked (lock_product), so
  the check-then-append sequence is single-writer per product.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import InsufficientStock, NotFound, ValidationError
from ..models import MovementKind, Product, StockMovement
from .audit_service import ClientMeta
from .concurrency import begin_immediate, run_with_retry


@dataclass(frozen=True)
class StockDiscrepancy:
    product_id: str
    materialized: int
    folded: int


class StockLedger:
    def __init__(self, store, *, audit=None, retry_attempts: int = 3, backoff_base: float = 0.1):
        self.store = store
        self.session = store.session
        self.audit = audit
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def current_quantity(self, product_id: str) -> int:
        product = self.store.get_product(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        return product.quantity_on_hand

    def recomputed_quantity(self, product_id: str) -> int:
        """Full replay of the movement log."""
        return self.store.sum_deltas(product_id)

    def movements(self, product_id: str) -> list[StockMovement]:
        return self.store.movements_for(product_id)

    def verify(self) -> list[StockDiscrepancy]:
        """Products whose cached total disagrees with the fold of their movements."""
        return [
            StockDiscrepancy(product.id, product.quantity_on_hand, folded)
            for product, folded in self.store.folded_quantities()
            if product.quantity_on_hand != folded
        ]

    # ------------------------------------------------------------------
    # Write path (caller owns the transaction)
    # ------------------------------------------------------------------

    def lock_product(self, product_id: str) -> Product:
        product = self.store.lock_product(product_id)
        if product is None:
            raise NotFound("Product", product_id)
        return product

    def check_available(self, product: Product, quantity: int) -> None:
        """
        Reservation check: quantity may be taken from the locked product.

        No reservation state is persisted; the lock held by the caller keeps
        the answer true until the movement is appended.
        """
        if product.allow_backorder:
            return
        if quantity > product.quantity_on_hand:
            raise InsufficientStock(product.id, quantity, max(product.quantity_on_hand, 0))

    def append(
        self,
        product: Product,
        delta: int,
        kind: str,
        *,
        reference_type: str | None = None,
        reference_id: str | None = None,
        note: str | None = None,
        user_id: str | None = None,
    ) -> StockMovement:
        if kind not in MovementKind.ALL:
            raise ValidationError(f"Unknown stock movement kind {kind!r}")
        if delta == 0:
            raise ValidationError("Stock movement quantity must be non-zero")
        if delta < 0:
            self.check_available(product, -delta)

        product.quantity_on_hand = product.quantity_on_hand + delta
        product.touch()

        movement = StockMovement(
            product_id=product.id,
            kind=kind,
            quantity_delta=delta,
            quantity_after=product.quantity_on_hand,
            reference_type=reference_type,
            reference_id=reference_id,
            note=note,
            created_by_user_id=user_id,
        )
        self.store.add(movement)
        return movement

    # ------------------------------------------------------------------
    # Standalone operations (own their transaction)
    # ------------------------------------------------------------------

    def receive(
        self,
        product_id: str,
        quantity: int,
        *,
        kind: str = MovementKind.PURCHASE,
        reference_type: str | None = None,
        reference_id: str | None = None,
        note: str | None = None,
        user_id: str | None = None,
    ) -> StockMovement:
        """Inbound stock (purchase, return, transfer in, initial stock)."""
        if kind not in MovementKind.INFLOWS:
            raise ValidationError(f"{kind} is not an inbound movement kind")
        _require_positive(quantity)

        def _op():
            begin_immediate(self.session)
            product = self.lock_product(product_id)
            movement = self.append(
                product, quantity, kind,
                reference_type=reference_type, reference_id=reference_id,
                note=note, user_id=user_id,
            )
            self._audit(movement, "stock.received", user_id)
            self.session.commit()
            return movement

        return self._retrying(_op)

    def record_loss(self, product_id: str, quantity: int, *, note: str | None = None,
                    user_id: str | None = None) -> StockMovement:
        """Shrinkage, breakage, theft. Cannot take stock below zero."""
        _require_positive(quantity)

        def _op():
            begin_immediate(self.session)
            product = self.lock_product(product_id)
            movement = self.append(product, -quantity, MovementKind.LOSS, note=note, user_id=user_id)
            self._audit(movement, "stock.loss_recorded", user_id)
            self.session.commit()
            return movement

        return self._retrying(_op)

    def adjust_to(self, product_id: str, counted: int, *, note: str | None = None,
                  user_id: str | None = None) -> StockMovement | None:
        """
        Physical count: append an ADJUSTMENT so on-hand equals ``counted``.

        Returns None when the count already matches.
        """
        if not isinstance(counted, int) or isinstance(counted, bool) or counted < 0:
            raise ValidationError("Counted quantity must be a non-negative integer")

        def _op():
            begin_immediate(self.session)
            product = self.lock_product(product_id)
            difference = counted - product.quantity_on_hand
            if difference == 0:
                self.session.rollback()
                return None
            movement = self.append(
                product, difference, MovementKind.ADJUSTMENT,
                note=note or f"Count adjustment ({difference:+d})", user_id=user_id,
            )
            self._audit(movement, "stock.adjusted", user_id, old_values={"quantity_on_hand": counted - difference})
            self.session.commit()
            return movement

        return self._retrying(_op)

    def _audit(self, movement: StockMovement, action: str, user_id: str | None, old_values: dict | None = None) -> None:
        if self.audit is None:
            return
        self.audit.record("Product", movement.product_id, action, old_values=old_values,
                          new_values=movement.to_dict(), meta=ClientMeta(user_id=user_id))

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )


def _require_positive(quantity: int) -> None:
    if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity <= 0:
        raise ValidationError("Quantity must be a positive integer")
