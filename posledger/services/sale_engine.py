# Overview: Sale commit and reversal; the one place that writes several ledgers at once.

"""
Sale Transaction Engine

LIFECYCLE:
1. DRAFT: request received, nothing checked yet
2. VALIDATED: stock, credit and register checks passed under row locks
3. COMMITTED: movements, audit entry, sync item and idempotency result
   written in ONE transaction
4. REVERSED: only from COMMITTED, through reverse(); compensating
   movements are appended, original movements are never edited

Only COMMITTED and REVERSED sales are ever persisted. A failed check rolls
the whole transaction back, so no movement is written for a rejected sale.

LOCK ORDER: sale row (reversal only) -> products in ascending id ->
customer -> register session. Every writer takes locks in this order.

IDEMPOTENCY:
- Malformed requests (ValidationError raised before any state is read) are
  terminal: the error is cached and replayed for the key
- Every other failure marks the claim FAILED; a retry with the same key
  re-evaluates against current state
"""

from __future__ import annotations

import hashlib
import json
from collections import Counter
from dataclasses import asdict, dataclass, field

from flask import current_app, has_app_context

from ..errors import IdempotencyInProgress, NotFound, PosError, ValidationError
from ..models import (
    AlertType,
    CashMovementKind,
    MovementKind,
    PaymentMethod,
    Sale,
    SaleLine,
    SaleStatus,
    SyncOperation,
)
from ..time_utils import to_utc_z, utcnow
from .alert_rules import AlertTrigger
from .audit_service import ClientMeta
from .concurrency import begin_immediate, run_with_retry
from .idempotency_service import ClaimState

OPERATION = "sale.commit"


@dataclass(frozen=True)
class SaleLineRequest:
    product_id: str
    quantity: int
    # None means "use the product's list price"
    unit_price_cents: int | None = None
    discount_cents: int = 0


@dataclass(frozen=True)
class SaleRequest:
    lines: tuple[SaleLineRequest, ...]
    payment_method: str
    customer_id: str | None = None
    register_id: str | None = None
    discount_cents: int = 0
    notes: str | None = None
    meta: ClientMeta = field(default_factory=ClientMeta)

    def fingerprint(self) -> str:
        """Stable hash of the business content; client metadata is excluded."""
        body = {
            "lines": [asdict(line) for line in self.lines],
            "payment_method": self.payment_method,
            "customer_id": self.customer_id,
            "register_id": self.register_id,
            "discount_cents": self.discount_cents,
            "notes": self.notes,
        }
        canonical = json.dumps(body, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class SaleResult:
    sale_id: str
    status: str
    payment_method: str
    subtotal_cents: int
    discount_cents: int
    total_cents: int
    customer_id: str | None = None
    register_session_id: str | None = None
    committed_at: str | None = None
    reversed_at: str | None = None
    lines: tuple[dict, ...] = ()
    # Set when the result was read back from an idempotency record.
    replayed: bool = field(default=False, compare=False)

    @classmethod
    def from_sale(cls, sale: Sale) -> "SaleResult":
        return cls(
            sale_id=sale.id,
            status=sale.status,
            payment_method=sale.payment_method,
            subtotal_cents=sale.subtotal_cents,
            discount_cents=sale.discount_cents,
            total_cents=sale.total_cents,
            customer_id=sale.customer_id,
            register_session_id=sale.register_session_id,
            committed_at=to_utc_z(sale.committed_at),
            reversed_at=to_utc_z(sale.reversed_at),
            lines=tuple(line.to_dict() for line in sale.lines),
        )

    def to_dict(self) -> dict:
        data = asdict(self)
        data.pop("replayed")
        data["lines"] = [dict(line) for line in self.lines]
        return data

    @classmethod
    def from_dict(cls, data: dict, *, replayed: bool = False) -> "SaleResult":
        values = dict(data)
        values["replayed"] = replayed
        values["lines"] = tuple(dict(line) for line in values.get("lines") or ())
        return cls(**values)


def validate_request(request: SaleRequest) -> None:
    """
    Shape checks that need no database state.

    Raises:
        ValidationError: the request itself is malformed
    """
    if request.payment_method not in PaymentMethod.ALL:
        raise ValidationError(f"Unknown payment method {request.payment_method!r}")
    if not request.lines:
        raise ValidationError("A sale needs at least one line")
    for position, line in enumerate(request.lines):
        details = {"position": position, "product_id": line.product_id}
        if not line.product_id:
            raise ValidationError("Line is missing its product", details=details)
        if not _is_int(line.quantity) or line.quantity <= 0:
            raise ValidationError("Quantity must be a positive integer", details=details)
        if line.unit_price_cents is not None and (
            not _is_int(line.unit_price_cents) or line.unit_price_cents < 0
        ):
            raise ValidationError("Unit price cannot be negative", details=details)
        if not _is_int(line.discount_cents) or line.discount_cents < 0:
            raise ValidationError("Line discount cannot be negative", details=details)
        if line.unit_price_cents is not None and line.discount_cents > line.quantity * line.unit_price_cents:
            raise ValidationError("Line discount exceeds the line amount", details=details)
    if not _is_int(request.discount_cents) or request.discount_cents < 0:
        raise ValidationError("Sale discount cannot be negative")
    if request.payment_method == PaymentMethod.CREDIT:
        if not request.customer_id:
            raise ValidationError("Credit sales require a customer")
    elif not request.register_id:
        raise ValidationError("Non-credit sales require a register")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class SaleTransactionEngine:
    def __init__(
        self,
        sales,
        *,
        stock,
        credit,
        cash,
        audit,
        sync,
        guard,
        alerts=None,
        retry_attempts: int = 3,
        backoff_base: float = 0.1,
    ):
        self.sales = sales
        self.session = sales.session
        self.stock = stock
        self.credit = credit
        self.cash = cash
        self.audit = audit
        self.sync = sync
        self.guard = guard
        self.alerts = alerts
        self.retry_attempts = retry_attempts
        self.backoff_base = backoff_base

    # =========================================================================
    # COMMIT
    # =========================================================================

    def commit(self, request: SaleRequest, idempotency_key: str | None = None) -> SaleResult:
        """
        Commit a sale at most once per idempotency key.

        Returns:
            SaleResult; ``replayed`` results come back from the key's record

        Raises:
            ValidationError, NotFound, InsufficientStock, CreditLimitExceeded,
            RegisterClosed, IdempotencyInProgress, ConcurrencyConflict
        """
        claim = None
        if idempotency_key is not None:
            claim = self.guard.begin(idempotency_key, operation=OPERATION, request_hash=request.fingerprint())
            if claim.state == ClaimState.REPLAY:
                if claim.error is not None:
                    raise claim.error
                return SaleResult.from_dict(claim.payload, replayed=True)
            if claim.state == ClaimState.IN_PROGRESS:
                raise IdempotencyInProgress(idempotency_key)

        try:
            validate_request(request)
        except ValidationError as exc:
            if claim is not None:
                self.guard.complete_with_error(claim, exc)
            raise

        try:
            result, triggers = self._retrying(lambda: self._execute(request, idempotency_key, claim))
        except PosError as exc:
            if claim is not None:
                self.guard.fail(claim, exc)
            raise
        except Exception as exc:
            if has_app_context():
                current_app.logger.exception("Unexpected failure committing sale (key=%r)", idempotency_key)
            if claim is not None:
                self.guard.fail(claim, exc)
            raise

        if has_app_context():
            current_app.logger.info("Committed sale %s total=%d", result.sale_id, result.total_cents)
        self._evaluate_alerts(triggers)
        return result

    def _execute(self, request: SaleRequest, key: str | None, claim) -> tuple[SaleResult, list[AlertTrigger]]:
        begin_immediate(self.session)
        meta = request.meta
        now = utcnow()

        # Products first, ascending id.
        requested = Counter()
        for line in request.lines:
            requested[line.product_id] += line.quantity
        products = {}
        for product_id in sorted(requested):
            product = self.stock.lock_product(product_id)
            if not product.is_active:
                raise ValidationError(f"Product {product.sku} is inactive", details={"product_id": product_id})
            products[product_id] = product
        for product_id in sorted(requested):
            self.stock.check_available(products[product_id], requested[product_id])

        sale = Sale(
            status=SaleStatus.DRAFT,
            payment_method=request.payment_method,
            customer_id=request.customer_id,
            created_by_user_id=meta.user_id,
            idempotency_key=key,
            discount_cents=request.discount_cents,
            notes=request.notes,
        )
        subtotal = 0
        line_discounts = 0
        for position, line in enumerate(request.lines):
            product = products[line.product_id]
            unit_price = line.unit_price_cents if line.unit_price_cents is not None else product.price_cents
            gross = line.quantity * unit_price
            if line.discount_cents > gross:
                raise ValidationError("Line discount exceeds the line amount",
                                      details={"position": position, "product_id": product.id})
            subtotal += gross
            line_discounts += line.discount_cents
            sale.lines.append(SaleLine(
                product_id=product.id,
                position=position,
                quantity=line.quantity,
                unit_price_cents=unit_price,
                discount_cents=line.discount_cents,
                line_total_cents=gross - line.discount_cents,
            ))
        total = subtotal - line_discounts - request.discount_cents
        if total < 0:
            raise ValidationError("Discounts exceed the sale subtotal",
                                  details={"subtotal_cents": subtotal, "discount_cents": line_discounts + request.discount_cents})
        sale.subtotal_cents = subtotal
        sale.discount_cents = line_discounts + request.discount_cents
        sale.total_cents = total

        customer = None
        if request.payment_method == PaymentMethod.CREDIT:
            customer = self.credit.lock_customer(request.customer_id)
            if total > 0:
                self.credit.check_charge(customer, total)
        elif request.customer_id is not None:
            if self.credit.store.get_customer(request.customer_id) is None:
                raise NotFound("Customer", request.customer_id)

        reg_session = None
        if request.payment_method != PaymentMethod.CREDIT:
            reg_session = self.cash.lock_open_session(request.register_id)
        elif request.register_id:
            if self.cash.store.get_register(request.register_id) is None:
                raise NotFound("Register", request.register_id)
            reg_session = self.cash.get_open_session(request.register_id)
        sale.register_session_id = reg_session.id if reg_session is not None else None

        sale.status = SaleStatus.VALIDATED
        self.sales.add(sale)

        for sale_line in sale.lines:
            self.stock.append(
                products[sale_line.product_id], -sale_line.quantity, MovementKind.SALE,
                reference_type="Sale", reference_id=sale.id, user_id=meta.user_id,
            )
        if request.payment_method == PaymentMethod.CREDIT:
            if total > 0:
                self.credit.charge(customer, total, reference_type="Sale", reference_id=sale.id,
                                   user_id=meta.user_id)
        elif total > 0:
            self.cash.append(reg_session, CashMovementKind.SALE, total,
                             reference_type="Sale", reference_id=sale.id, user_id=meta.user_id)

        sale.status = SaleStatus.COMMITTED
        sale.committed_at = now
        self.session.flush()

        snapshot = sale.to_dict()
        self.audit.record("Sale", sale.id, "sale.committed", new_values=snapshot, meta=meta)
        self.sync.enqueue("Sale", sale.id, SyncOperation.INSERT, snapshot)

        result = SaleResult.from_sale(sale)
        if claim is not None:
            self.guard.complete(claim, result.to_dict())
        self.session.commit()

        triggers = [t for product_id in sorted(products) for t in AlertTrigger.stock_changed(product_id)]
        if customer is not None:
            triggers.append(AlertTrigger(AlertType.CUSTOMER_DEBT, customer.id))
        if reg_session is not None:
            triggers.append(AlertTrigger(AlertType.CASH_REGISTER_OPEN, reg_session.id))
        triggers.append(AlertTrigger.sync_pending())
        return result, triggers

    # =========================================================================
    # REVERSAL
    # =========================================================================

    def reverse(self, sale_id: str, reason: str, meta: ClientMeta | None = None) -> SaleResult:
        """
        Reverse a COMMITTED sale with compensating movements.

        Stock comes back as RETURN movements. Cash is paid out of the
        sale's session, or the register's current session if that one is
        closed. Credit sales release the charge from the customer's debt
        (never below zero).

        Raises:
            NotFound: unknown sale
            ValidationError: sale not COMMITTED, missing reason, or not
                enough cash in the drawer for the refund
            RegisterClosed: cash refund needed but the register has no
                open session
        """
        if not (reason or "").strip():
            raise ValidationError("A reversal reason is required")
        meta = meta or ClientMeta()

        def _op():
            begin_immediate(self.session)
            sale = self.sales.lock(sale_id)
            if sale is None:
                raise NotFound("Sale", sale_id)
            if sale.status != SaleStatus.COMMITTED:
                raise ValidationError(f"Only committed sales can be reversed (sale is {sale.status})",
                                      details={"sale_id": sale_id})
            before = sale.to_dict()

            products = {}
            for product_id in sorted({line.product_id for line in sale.lines}):
                products[product_id] = self.stock.lock_product(product_id)
            for line in sale.lines:
                self.stock.append(
                    products[line.product_id], line.quantity, MovementKind.RETURN,
                    reference_type="Sale", reference_id=sale.id,
                    note=f"Reversal: {reason}", user_id=meta.user_id,
                )

            customer = None
            reg_session = None
            if sale.payment_method == PaymentMethod.CREDIT:
                if sale.customer_id and sale.total_cents > 0:
                    customer = self.credit.lock_customer(sale.customer_id)
                    release = min(sale.total_cents, customer.outstanding_cents)
                    if release > 0:
                        self.credit.release(customer, release, reference_type="Sale",
                                            reference_id=sale.id, user_id=meta.user_id,
                                            note=f"Reversal: {reason}")
            elif sale.total_cents > 0:
                reg_session = self._refund_session(sale)
                self.cash.append(
                    reg_session, CashMovementKind.SALE, sale.total_cents, sign=-1,
                    reference_type="Sale", reference_id=sale.id,
                    note=f"Reversal: {reason}", user_id=meta.user_id,
                )

            sale.status = SaleStatus.REVERSED
            sale.reversed_at = utcnow()
            sale.reversed_by_user_id = meta.user_id
            sale.reversal_reason = reason.strip()
            sale.touch()
            self.session.flush()

            snapshot = sale.to_dict()
            self.audit.record("Sale", sale.id, "sale.reversed", old_values=before, new_values=snapshot, meta=meta)
            self.sync.enqueue("Sale", sale.id, SyncOperation.UPDATE, snapshot)
            result = SaleResult.from_sale(sale)
            self.session.commit()

            triggers = [t for product_id in sorted(products) for t in AlertTrigger.stock_changed(product_id)]
            if customer is not None:
                triggers.append(AlertTrigger(AlertType.CUSTOMER_DEBT, customer.id))
            triggers.append(AlertTrigger.sync_pending())
            return result, triggers

        result, triggers = self._retrying(_op)
        if has_app_context():
            current_app.logger.info("Reversed sale %s: %s", sale_id, reason)
        self._evaluate_alerts(triggers)
        return result

    def _refund_session(self, sale: Sale):
        original = self.cash.store.lock_session(sale.register_session_id) if sale.register_session_id else None
        if original is not None and original.is_open:
            return original
        if original is None:
            raise ValidationError("Sale has no register session to refund from", details={"sale_id": sale.id})
        return self.cash.lock_open_session(original.register_id)

    def _evaluate_alerts(self, triggers: list[AlertTrigger]) -> None:
        # The sale is already committed; alert problems are logged, never raised.
        if self.alerts is None:
            return
        try:
            self.alerts.evaluate_many(triggers)
        except Exception:
            if has_app_context():
                current_app.logger.exception("Alert evaluation after sale commit failed")

    def _retrying(self, func):
        return run_with_retry(
            func,
            session=self.session,
            attempts=self.retry_attempts,
            backoff_base=self.backoff_base,
        )

