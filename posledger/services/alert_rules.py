"""
Alert conditions.

Each rule looks at current state for one subject and answers whether its
condition holds, and at which severity. Rules never write; AlertEngine
turns their answers into alert rows.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from ..models import AlertSeverity, AlertType, PurchaseOrderStatus

SYNC_SUBJECT_ID = "global"


class Subject:
    PRODUCT = "Product"
    CUSTOMER = "Customer"
    PURCHASE_ORDER = "PurchaseOrder"
    REGISTER_SESSION = "RegisterSession"
    SYNC_QUEUE = "SyncQueue"


# Subject type every alert type is raised against.
SUBJECT_FOR = {
    AlertType.LOW_STOCK: Subject.PRODUCT,
    AlertType.EXPIRING_PRODUCT: Subject.PRODUCT,
    AlertType.CUSTOMER_DEBT: Subject.CUSTOMER,
    AlertType.PENDING_PURCHASE_ORDER: Subject.PURCHASE_ORDER,
    AlertType.CASH_REGISTER_OPEN: Subject.REGISTER_SESSION,
    AlertType.SYNC_PENDING: Subject.SYNC_QUEUE,
}


@dataclass(frozen=True)
class AlertTrigger:
    alert_type: str
    subject_id: str

    @property
    def subject_type(self) -> str:
        return SUBJECT_FOR[self.alert_type]

    @classmethod
    def sync_pending(cls) -> "AlertTrigger":
        return cls(AlertType.SYNC_PENDING, SYNC_SUBJECT_ID)

    @classmethod
    def stock_changed(cls, product_id: str) -> list["AlertTrigger"]:
        """Every rule that reads a product's quantity on hand."""
        return [cls(AlertType.LOW_STOCK, product_id), cls(AlertType.EXPIRING_PRODUCT, product_id)]


@dataclass(frozen=True)
class Condition:
    holds: bool
    severity: str = AlertSeverity.INFO
    title: str = ""
    message: str = ""


NOT_HOLDING = Condition(holds=False)


@dataclass
class RuleContext:
    """Stores, thresholds and the evaluation instant shared by every rule."""
    stock_store: object
    credit_store: object
    cash_store: object
    purchase_store: object
    sync_store: object
    settings: object
    now: datetime


def low_stock(ctx: RuleContext, product_id: str) -> Condition:
    product = ctx.stock_store.get_product(product_id)
    if product is None or not product.is_active or not product.is_low_stock():
        return NOT_HOLDING
    severity = AlertSeverity.CRITICAL if product.quantity_on_hand <= 0 else AlertSeverity.WARNING
    return Condition(
        True,
        severity,
        f"Low stock: {product.name}",
        f"Product '{product.name}' has {product.quantity_on_hand} {product.unit} on hand "
        f"(minimum {product.min_stock})",
    )


def expiring_product(ctx: RuleContext, product_id: str) -> Condition:
    product = ctx.stock_store.get_product(product_id)
    if product is None or not product.is_active or product.expires_on is None:
        return NOT_HOLDING
    if product.quantity_on_hand <= 0:
        return NOT_HOLDING
    today = ctx.now.date()
    if product.expires_on > today + timedelta(days=ctx.settings.expiry_window_days):
        return NOT_HOLDING
    if product.expires_on < today:
        return Condition(
            True,
            AlertSeverity.CRITICAL,
            f"Expired product: {product.name}",
            f"Product '{product.name}' expired on {product.expires_on.isoformat()} "
            f"with {product.quantity_on_hand} {product.unit} still on hand",
        )
    days_left = (product.expires_on - today).days
    return Condition(
        True,
        AlertSeverity.WARNING,
        f"Product expiring: {product.name}",
        f"Product '{product.name}' expires on {product.expires_on.isoformat()} ({days_left} days)",
    )


def customer_debt(ctx: RuleContext, customer_id: str) -> Condition:
    customer = ctx.credit_store.get_customer(customer_id)
    if customer is None:
        return NOT_HOLDING
    debt, limit = customer.outstanding_cents, customer.credit_limit_cents
    if debt <= 0 or debt < ctx.settings.customer_debt_threshold_cents:
        return NOT_HOLDING
    if debt >= limit:
        severity = AlertSeverity.CRITICAL
    elif debt * 10 >= limit * 8:
        severity = AlertSeverity.WARNING
    else:
        severity = AlertSeverity.INFO
    return Condition(
        True,
        severity,
        f"Customer debt: {customer.name}",
        f"Customer '{customer.name}' owes {debt} cents (limit {limit} cents)",
    )


def pending_purchase_order(ctx: RuleContext, order_id: str) -> Condition:
    order = ctx.purchase_store.get(order_id)
    if order is None or order.status not in PurchaseOrderStatus.OUTSTANDING:
        return NOT_HOLDING
    age = ctx.now - order.created_at
    sla = timedelta(days=ctx.settings.purchase_order_sla_days)
    if age < sla:
        return NOT_HOLDING
    severity = AlertSeverity.CRITICAL if age >= 2 * sla else AlertSeverity.WARNING
    return Condition(
        True,
        severity,
        f"Purchase order pending: {order.supplier_name}",
        f"Purchase order from '{order.supplier_name}' is {order.status} after {age.days} days",
    )


def cash_register_open(ctx: RuleContext, session_id: str) -> Condition:
    reg_session = ctx.cash_store.get_session(session_id)
    if reg_session is None or not reg_session.is_open:
        return NOT_HOLDING
    open_for = ctx.now - reg_session.opened_at
    if open_for < timedelta(hours=ctx.settings.register_open_hours):
        return NOT_HOLDING
    hours = int(open_for.total_seconds() // 3600)
    return Condition(
        True,
        AlertSeverity.WARNING,
        "Register session left open",
        f"Session {reg_session.id} on register {reg_session.register_id} has been open for {hours} hours",
    )


def sync_pending(ctx: RuleContext, _subject_id: str) -> Condition:
    count = ctx.sync_store.pending_count()
    threshold = ctx.settings.sync_pending_threshold
    if count == 0 or count < threshold:
        return NOT_HOLDING
    severity = AlertSeverity.CRITICAL if count >= 2 * threshold else AlertSeverity.WARNING
    return Condition(
        True,
        severity,
        "Sync backlog",
        f"{count} changes are waiting to be synced (threshold {threshold})",
    )


RULES = {
    AlertType.LOW_STOCK: low_stock,
    AlertType.EXPIRING_PRODUCT: expiring_product,
    AlertType.CUSTOMER_DEBT: customer_debt,
    AlertType.PENDING_PURCHASE_ORDER: pending_purchase_order,
    AlertType.CASH_REGISTER_OPEN: cash_register_open,
    AlertType.SYNC_PENDING: sync_pending,
}
