# Overview: Composition root and the in-process API consumed by the service layer.

"""
PosCore: the operations a surrounding service layer calls.

Services raise typed PosError subclasses; this boundary turns them into
Outcome values so callers branch on ``outcome.ok`` / ``outcome.error.code``
instead of catching. Unexpected exceptions are not converted: they are
logged where they happen and propagate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app, has_app_context

from .config import CoreSettings
from .errors import PosError
from .extensions import db
from .models import AlertType, MovementKind, PaymentMethod
from .outcomes import Outcome
from .stores import (
    AlertStore,
    AuditStore,
    CashLedgerStore,
    CreditLedgerStore,
    IdempotencyStore,
    PurchaseOrderStore,
    SaleStore,
    StockLedgerStore,
    SyncQueueStore,
)
from .services.alert_rules import AlertTrigger
from .services.alert_service import AlertEngine
from .services.audit_service import AuditRecorder, ClientMeta
from .services.credit_ledger import CreditLedger
from .services.idempotency_service import IdempotencyGuard
from .services.purchasing_service import PurchaseOrderService
from .services.register_service import CashRegisterLedger
from .services.sale_engine import SaleRequest, SaleTransactionEngine
from .services.stock_ledger import StockLedger
from .services.sync_service import SyncQueue


@dataclass(frozen=True)
class LedgerReport:
    """Reconciliation of every materialized balance against its movement fold."""
    stock: list = field(default_factory=list)
    credit: list = field(default_factory=list)
    cash: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.stock or self.credit or self.cash)


class PosCore:
    def __init__(self, *, settings, stock, credit, cash, audit, alerts, guard, sales, purchasing, sync):
        self.settings = settings
        self.stock = stock
        self.credit = credit
        self.cash = cash
        self.audit = audit
        self.alerts = alerts
        self.guard = guard
        self.sales = sales
        self.purchasing = purchasing
        self.sync = sync

    def _run(self, func, *args, **kwargs) -> Outcome:
        try:
            value = func(*args, **kwargs)
        except PosError as exc:
            if has_app_context():
                current_app.logger.warning("%s failed: %s %s", func.__name__, exc.code, exc.message)
            return Outcome.failure(exc, replayed=exc.replayed)
        return Outcome.success(value, replayed=getattr(value, "replayed", False))

    def _after(self, *triggers: AlertTrigger) -> None:
        self.alerts.evaluate_many(triggers)

    # =========================================================================
    # SALES
    # =========================================================================

    def create_sale(self, request: SaleRequest, idempotency_key: str | None) -> Outcome:
        return self._run(self.sales.commit, request, idempotency_key)

    def reverse_sale(self, sale_id: str, reason: str, user_id: str | None = None) -> Outcome:
        return self._run(self.sales.reverse, sale_id, reason, ClientMeta(user_id=user_id))

    # =========================================================================
    # REGISTERS
    # =========================================================================

    def create_register(self, code: str, name: str, location: str | None = None) -> Outcome:
        return self._run(self.cash.create_register, code, name, location)

    def open_register(self, register_id: str, opening_balance_cents: int, user_id: str | None = None) -> Outcome:
        def _open():
            reg_session = self.cash.open(register_id, opening_balance_cents, user_id=user_id)
            return reg_session.id

        return self._run(_open)

    def close_register(self, session_id: str, counted_cash_cents: int | None = None,
                       user_id: str | None = None) -> Outcome:
        def _close():
            summary = self.cash.close(session_id, counted_cash_cents, user_id=user_id)
            self._after(AlertTrigger(AlertType.CASH_REGISTER_OPEN, session_id))
            return summary

        return self._run(_close)

    def record_cash_movement(self, session_id: str, kind: str, amount_cents: int, *,
                             user_id: str | None = None, note: str | None = None) -> Outcome:
        return self._run(self.cash.record_movement, session_id, kind, amount_cents, user_id=user_id, note=note)

    # =========================================================================
    # STOCK
    # =========================================================================

    def receive_stock(self, product_id: str, quantity: int, *, kind: str = MovementKind.PURCHASE,
                      note: str | None = None, user_id: str | None = None) -> Outcome:
        def _receive():
            movement = self.stock.receive(product_id, quantity, kind=kind, note=note, user_id=user_id)
            self._after_stock_change(product_id)
            return movement

        return self._run(_receive)

    def adjust_stock(self, product_id: str, counted: int, *, note: str | None = None,
                     user_id: str | None = None) -> Outcome:
        def _adjust():
            movement = self.stock.adjust_to(product_id, counted, note=note, user_id=user_id)
            self._after_stock_change(product_id)
            return movement

        return self._run(_adjust)

    def record_stock_loss(self, product_id: str, quantity: int, *, note: str | None = None,
                          user_id: str | None = None) -> Outcome:
        def _loss():
            movement = self.stock.record_loss(product_id, quantity, note=note, user_id=user_id)
            self._after_stock_change(product_id)
            return movement

        return self._run(_loss)

    def _after_stock_change(self, product_id: str) -> None:
        self._after(*AlertTrigger.stock_changed(product_id))

    # =========================================================================
    # CREDIT
    # =========================================================================

    def pay_credit(self, customer_id: str, amount_cents: int, method: str = PaymentMethod.CASH,
                   register_id: str | None = None, user_id: str | None = None) -> Outcome:
        def _pay():
            movement = self.credit.pay(customer_id, amount_cents, method=method,
                                       register_id=register_id, user_id=user_id)
            self._after(AlertTrigger(AlertType.CUSTOMER_DEBT, customer_id))
            return movement

        return self._run(_pay)

    # =========================================================================
    # PURCHASE ORDERS
    # =========================================================================

    def create_purchase_order(self, supplier_name: str, lines, *, expected_at: datetime | None = None,
                              notes: str | None = None, user_id: str | None = None) -> Outcome:
        return self._run(self.purchasing.create, supplier_name, lines, expected_at=expected_at,
                         notes=notes, meta=ClientMeta(user_id=user_id))

    def receive_purchase_order(self, order_id: str, quantities: dict[str, int] | None = None,
                               user_id: str | None = None) -> Outcome:
        def _receive():
            order = self.purchasing.receive(order_id, quantities, meta=ClientMeta(user_id=user_id))
            triggers = [AlertTrigger(AlertType.PENDING_PURCHASE_ORDER, order.id)]
            triggers += [t for line in order.lines for t in AlertTrigger.stock_changed(line.product_id)]
            self._after(*triggers)
            return order

        return self._run(_receive)

    def cancel_purchase_order(self, order_id: str, reason: str | None = None,
                              user_id: str | None = None) -> Outcome:
        def _cancel():
            order = self.purchasing.cancel(order_id, reason=reason, meta=ClientMeta(user_id=user_id))
            self._after(AlertTrigger(AlertType.PENDING_PURCHASE_ORDER, order.id))
            return order

        return self._run(_cancel)

    # =========================================================================
    # ALERTS
    # =========================================================================

    def acknowledge_alert(self, alert_id: str, user_id: str | None = None) -> Outcome:
        return self._run(self.alerts.acknowledge, alert_id, user_id)

    def resolve_alert(self, alert_id: str) -> Outcome:
        return self._run(self.alerts.resolve, alert_id)

    def dismiss_alert(self, alert_id: str) -> Outcome:
        return self._run(self.alerts.dismiss, alert_id)

    def list_active_alerts(self, alert_type: str | None = None, severity: str | None = None,
                           subject_type: str | None = None):
        return self.alerts.list_active(alert_type=alert_type, severity=severity, subject_type=subject_type)

    def run_alert_checks(self) -> int:
        return self.alerts.run_all_checks()

    # =========================================================================
    # AUDIT
    # =========================================================================

    def audit_trail_for_subject(self, subject_type: str, subject_id: str):
        return self.audit.for_subject(subject_type, subject_id)

    def audit_trail_for_user(self, user_id: str, limit: int = 100):
        return self.audit.for_user(user_id, limit)

    def audit_trail_between(self, start: datetime, end: datetime):
        return self.audit.between(start, end)

    def purge_audit_older_than(self, cutoff: datetime) -> int:
        return self.audit.purge_older_than(cutoff)

    # =========================================================================
    # SYNC QUEUE
    # =========================================================================

    def pending_sync_items(self, limit: int = 100):
        return self.sync.pending(limit)

    def mark_synced(self, item_id: str) -> Outcome:
        def _mark():
            item = self.sync.mark_synced(item_id)
            self._after(AlertTrigger.sync_pending())
            return item

        return self._run(_mark)

    def mark_sync_failed(self, item_id: str, error_message: str) -> Outcome:
        return self._run(self.sync.mark_failed, item_id, error_message)

    def retry_failed_sync(self) -> int:
        return self.sync.retry_failed()

    def cleanup_synced(self, retention_days: int | None = None) -> int:
        days = self.settings.sync_retention_days if retention_days is None else retention_days
        return self.sync.cleanup_synced(days)

    # =========================================================================
    # MAINTENANCE
    # =========================================================================

    def purge_expired_idempotency_records(self) -> int:
        return self.guard.purge_expired()

    def verify_ledgers(self) -> LedgerReport:
        report = LedgerReport(
            stock=self.stock.verify(),
            credit=self.credit.verify(),
            cash=self.cash.verify(),
        )
        if not report.ok and has_app_context():
            current_app.logger.error(
                "Ledger verification found %d stock, %d credit, %d cash discrepancies",
                len(report.stock), len(report.credit), len(report.cash),
            )
        return report


def build_core(session=None, settings: CoreSettings | None = None) -> PosCore:
    """
    Wire every component over one SQLAlchemy session.

    Defaults to the Flask-SQLAlchemy scoped session and the settings read
    from the current app's config.
    """
    if session is None:
        session = db.session
    if settings is None:
        settings = CoreSettings.from_mapping(current_app.config)
    retry = {"retry_attempts": settings.retry_attempts, "backoff_base": settings.backoff_base}

    audit = AuditRecorder(AuditStore(session), **retry)
    cash = CashRegisterLedger(CashLedgerStore(session), audit=audit, **retry)
    stock = StockLedger(StockLedgerStore(session), audit=audit, **retry)
    credit = CreditLedger(CreditLedgerStore(session), cash_ledger=cash, audit=audit, **retry)
    sync = SyncQueue(SyncQueueStore(session), max_retries=settings.sync_max_retries, **retry)
    guard = IdempotencyGuard(
        IdempotencyStore(session),
        ttl=timedelta(hours=settings.idempotency_ttl_hours),
        pending_ttl=timedelta(seconds=settings.idempotency_pending_ttl_seconds),
        **retry,
    )
    purchase_store = PurchaseOrderStore(session)
    alerts = AlertEngine(
        AlertStore(session),
        stock_store=stock.store,
        credit_store=credit.store,
        cash_store=cash.store,
        purchase_store=purchase_store,
        sync_store=sync.store,
        settings=settings,
    )
    sales = SaleTransactionEngine(
        SaleStore(session),
        stock=stock,
        credit=credit,
        cash=cash,
        audit=audit,
        sync=sync,
        guard=guard,
        alerts=alerts,
        **retry,
    )
    purchasing = PurchaseOrderService(purchase_store, stock, audit, **retry)

    return PosCore(
        settings=settings,
        stock=stock,
        credit=credit,
        cash=cash,
        audit=audit,
        alerts=alerts,
        guard=guard,
        sales=sales,
        purchasing=purchasing,
        sync=sync,
    )
