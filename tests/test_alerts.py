from dataclasses import replace
from datetime import timedelta

import pytest

from posledger.core import build_core
from posledger.errors import NotFound, ValidationError
from posledger.models import Alert, AlertSeverity, AlertStatus, AlertType, RegisterSession
from posledger.services.alert_rules import AlertTrigger
from posledger.services.purchasing_service import PurchaseOrderLineRequest
from posledger.time_utils import utcnow, utctoday

from .helpers import credit_sale, hours_ago, make_product, sale_request


@pytest.fixture
def strict_core(db_session, settings):
    """Core with low thresholds so small fixtures cross them."""
    return build_core(db_session, replace(
        settings,
        customer_debt_threshold_cents=1_000,
        sync_pending_threshold=2,
    ))


def _open_alerts(db_session, alert_type):
    return db_session.query(Alert).filter(
        Alert.alert_type == alert_type,
        Alert.status.in_(AlertStatus.OPEN),
    ).all()


def test_low_stock_alert_lifecycle(core, db_session, product):
    core.record_stock_loss(product.id, 6).unwrap()

    alerts = _open_alerts(db_session, AlertType.LOW_STOCK)
    assert len(alerts) == 1
    assert alerts[0].severity == AlertSeverity.WARNING
    assert alerts[0].subject_id == product.id
    alert_id = alerts[0].id

    # Escalates in place rather than opening a second alert.
    core.record_stock_loss(product.id, 4).unwrap()
    alerts = _open_alerts(db_session, AlertType.LOW_STOCK)
    assert [a.id for a in alerts] == [alert_id]
    assert alerts[0].severity == AlertSeverity.CRITICAL

    core.receive_stock(product.id, 20).unwrap()
    assert _open_alerts(db_session, AlertType.LOW_STOCK) == []
    resolved = db_session.get(Alert, alert_id)
    assert resolved.status == AlertStatus.RESOLVED
    assert resolved.resolved_at is not None


def test_repeated_evaluation_does_not_duplicate(core, db_session, product):
    product.min_stock = 20
    db_session.commit()
    trigger = AlertTrigger(AlertType.LOW_STOCK, product.id)

    first = core.alerts.evaluate(trigger)
    second = core.alerts.evaluate(trigger)

    assert first.id == second.id
    assert db_session.query(Alert).count() == 1


def test_condition_not_holding_creates_nothing(core, db_session, product):
    assert core.alerts.evaluate(AlertTrigger(AlertType.LOW_STOCK, product.id)) is None
    assert db_session.query(Alert).count() == 0


def test_unknown_alert_type(core):
    with pytest.raises(ValidationError):
        core.alerts.evaluate(AlertTrigger("NOT_A_TYPE", "x"))


def test_acknowledge_then_resolve(core, db_session, product):
    core.record_stock_loss(product.id, 8).unwrap()
    alert = _open_alerts(db_session, AlertType.LOW_STOCK)[0]

    acked = core.acknowledge_alert(alert.id, user_id="u-1").unwrap()
    assert acked.status == AlertStatus.ACKNOWLEDGED
    assert acked.acknowledged_by_user_id == "u-1"
    assert [a.id for a in core.list_active_alerts()] == [alert.id]

    resolved = core.resolve_alert(alert.id).unwrap()
    assert resolved.status == AlertStatus.RESOLVED
    assert core.list_active_alerts() == []


def test_transitions_on_terminal_alerts_are_noops(core, db_session, product):
    core.record_stock_loss(product.id, 8).unwrap()
    alert = _open_alerts(db_session, AlertType.LOW_STOCK)[0]
    core.dismiss_alert(alert.id).unwrap()

    assert core.acknowledge_alert(alert.id).unwrap().status == AlertStatus.DISMISSED
    assert core.resolve_alert(alert.id).unwrap().status == AlertStatus.DISMISSED
    assert core.dismiss_alert(alert.id).unwrap().status == AlertStatus.DISMISSED


def test_unknown_alert_id(core):
    assert isinstance(core.acknowledge_alert("missing").error, NotFound)


def test_list_orders_by_severity_then_recency(core, db_session, product):
    other = make_product(db_session, sku="SKU-2", stock=3, core=core)
    core.alerts.evaluate(AlertTrigger(AlertType.LOW_STOCK, other.id))
    core.record_stock_loss(product.id, 10).unwrap()

    alerts = core.list_active_alerts(alert_type=AlertType.LOW_STOCK)

    assert [a.subject_id for a in alerts] == [product.id, other.id]
    assert [a.severity for a in alerts] == [AlertSeverity.CRITICAL, AlertSeverity.WARNING]
    assert core.list_active_alerts(severity=AlertSeverity.WARNING)[0].subject_id == other.id


def test_customer_debt_severity(strict_core, db_session, customer):
    item = make_product(db_session, sku="CR-1", price_cents=1_000, stock=50, core=strict_core)

    strict_core.create_sale(credit_sale(item.id, customer.id, quantity=5), "K1").unwrap()
    alert = _open_alerts(db_session, AlertType.CUSTOMER_DEBT)[0]
    assert alert.severity == AlertSeverity.INFO

    strict_core.create_sale(credit_sale(item.id, customer.id, quantity=3), "K2").unwrap()
    db_session.refresh(alert)
    assert alert.severity == AlertSeverity.WARNING

    strict_core.create_sale(credit_sale(item.id, customer.id, quantity=2), "K3").unwrap()
    db_session.refresh(alert)
    assert alert.severity == AlertSeverity.CRITICAL

    strict_core.pay_credit(customer.id, 10_000, method="TRANSFER").unwrap()
    db_session.refresh(alert)
    assert alert.status == AlertStatus.RESOLVED


def test_register_left_open(core, db_session, open_session_id):
    trigger = AlertTrigger(AlertType.CASH_REGISTER_OPEN, open_session_id)
    assert core.alerts.evaluate(trigger) is None

    reg_session = db_session.get(RegisterSession, open_session_id)
    reg_session.opened_at = hours_ago(13)
    db_session.commit()

    alert = core.alerts.evaluate(trigger)
    assert alert.severity == AlertSeverity.WARNING
    assert alert.subject_type == "RegisterSession"

    core.close_register(open_session_id).unwrap()
    assert _open_alerts(db_session, AlertType.CASH_REGISTER_OPEN) == []


def test_sync_backlog(strict_core, db_session):
    trigger = AlertTrigger.sync_pending()
    strict_core.sync.enqueue("Sale", "s-1", "INSERT", {})
    db_session.commit()
    assert strict_core.alerts.evaluate(trigger) is None

    strict_core.sync.enqueue("Sale", "s-2", "INSERT", {})
    db_session.commit()
    assert strict_core.alerts.evaluate(trigger).severity == AlertSeverity.WARNING

    for n in range(3, 5):
        strict_core.sync.enqueue("Sale", f"s-{n}", "INSERT", {})
    db_session.commit()
    assert strict_core.alerts.evaluate(trigger).severity == AlertSeverity.CRITICAL

    for item in strict_core.pending_sync_items():
        strict_core.mark_synced(item.id).unwrap()
    assert _open_alerts(db_session, AlertType.SYNC_PENDING) == []


def test_expiring_and_expired_products(core, db_session):
    soon = make_product(db_session, sku="EXP-1", stock=10, expires_on=utctoday() + timedelta(days=3), core=core)
    gone = make_product(db_session, sku="EXP-2", stock=10, expires_on=utctoday() - timedelta(days=1), core=core)
    later = make_product(db_session, sku="EXP-3", stock=10, expires_on=utctoday() + timedelta(days=90), core=core)

    core.run_alert_checks()

    by_subject = {a.subject_id: a for a in _open_alerts(db_session, AlertType.EXPIRING_PRODUCT)}
    assert by_subject[soon.id].severity == AlertSeverity.WARNING
    assert by_subject[gone.id].severity == AlertSeverity.CRITICAL
    assert later.id not in by_subject


def test_expiring_alert_follows_sales_reversals_and_receipts(core, db_session, register, open_session_id):
    item = make_product(db_session, sku="EXP-4", stock=10, expires_on=utctoday() + timedelta(days=5), core=core)
    core.alerts.evaluate(AlertTrigger(AlertType.EXPIRING_PRODUCT, item.id))
    [alert] = _open_alerts(db_session, AlertType.EXPIRING_PRODUCT)

    sale = core.create_sale(sale_request(item.id, 10, register_id=register.id), "K-EXP").unwrap()

    assert _open_alerts(db_session, AlertType.EXPIRING_PRODUCT) == []
    assert db_session.get(Alert, alert.id).status == AlertStatus.RESOLVED

    core.reverse_sale(sale.sale_id, "Wrong item scanned").unwrap()
    assert [a.subject_id for a in _open_alerts(db_session, AlertType.EXPIRING_PRODUCT)] == [item.id]

    # Receiving expiring goods against an order opens the alert too.
    fresh = make_product(db_session, sku="EXP-5", expires_on=utctoday() + timedelta(days=5), core=core)
    order = core.create_purchase_order("Lacteos Sur", [PurchaseOrderLineRequest(fresh.id, 4, 200)]).unwrap()
    core.receive_purchase_order(order.id).unwrap()

    subjects = {a.subject_id for a in _open_alerts(db_session, AlertType.EXPIRING_PRODUCT)}
    assert subjects == {item.id, fresh.id}


def test_pending_purchase_order(core, db_session, product):
    order = core.create_purchase_order(
        "Distribuidora Norte", [PurchaseOrderLineRequest(product.id, 5, 300)]
    ).unwrap()
    trigger = AlertTrigger(AlertType.PENDING_PURCHASE_ORDER, order.id)
    assert core.alerts.evaluate(trigger) is None

    order.created_at = utcnow() - timedelta(days=8)
    db_session.commit()
    assert core.alerts.evaluate(trigger).severity == AlertSeverity.WARNING

    order.created_at = utcnow() - timedelta(days=15)
    db_session.commit()
    assert core.alerts.evaluate(trigger).severity == AlertSeverity.CRITICAL

    core.cancel_purchase_order(order.id, reason="Supplier out of stock").unwrap()
    assert _open_alerts(db_session, AlertType.PENDING_PURCHASE_ORDER) == []


def test_run_all_checks_resolves_stale_alerts(core, db_session):
    item = make_product(db_session, sku="LOW-1", stock=2, core=core)

    core.run_alert_checks()
    assert len(_open_alerts(db_session, AlertType.LOW_STOCK)) == 1

    # Restock without going through the alert-aware entry point.
    core.stock.receive(item.id, 50)
    core.run_alert_checks()
    assert _open_alerts(db_session, AlertType.LOW_STOCK) == []
