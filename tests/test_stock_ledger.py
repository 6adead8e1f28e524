import pytest

from posledger.errors import InsufficientStock, NotFound, ValidationError
from posledger.models import AuditLog, MovementKind, StockMovement

from .helpers import make_product


def test_receive_appends_movement_and_updates_total(core, product):
    movement = core.stock.receive(product.id, 5, kind=MovementKind.PURCHASE, note="Supplier delivery")

    assert movement.quantity_delta == 5
    assert movement.quantity_after == 15
    assert core.stock.current_quantity(product.id) == 15
    assert core.stock.recomputed_quantity(product.id) == 15


def test_receive_rejects_outbound_kinds(core, product):
    with pytest.raises(ValidationError):
        core.stock.receive(product.id, 5, kind=MovementKind.LOSS)


@pytest.mark.parametrize("quantity", [0, -3, True])
def test_receive_rejects_non_positive_quantities(core, product, quantity):
    with pytest.raises(ValidationError):
        core.stock.receive(product.id, quantity)


def test_loss_cannot_drive_stock_negative(core, product, db_session):
    with pytest.raises(InsufficientStock) as excinfo:
        core.stock.record_loss(product.id, 11)

    assert excinfo.value.requested == 11
    assert excinfo.value.available == 10
    assert core.stock.current_quantity(product.id) == 10
    assert db_session.query(StockMovement).filter_by(kind=MovementKind.LOSS).count() == 0


def test_backorder_products_may_go_negative(core, db_session):
    item = make_product(db_session, sku="BO-1", stock=2, allow_backorder=True, core=core)

    core.stock.record_loss(item.id, 5)

    assert core.stock.current_quantity(item.id) == -3
    assert core.stock.recomputed_quantity(item.id) == -3


def test_adjust_to_count_appends_difference(core, product):
    movement = core.stock.adjust_to(product.id, 7, note="Shelf count")

    assert movement.kind == MovementKind.ADJUSTMENT
    assert movement.quantity_delta == -3
    assert core.stock.current_quantity(product.id) == 7


def test_adjust_to_same_count_is_noop(core, product, db_session):
    before = db_session.query(StockMovement).count()

    assert core.stock.adjust_to(product.id, 10) is None
    assert db_session.query(StockMovement).count() == before


def test_unknown_product_is_not_found(core):
    with pytest.raises(NotFound):
        core.stock.receive("missing", 1)


def test_quantity_equals_fold_after_mixed_movements(core, product):
    core.stock.receive(product.id, 4)
    core.stock.record_loss(product.id, 2)
    core.stock.adjust_to(product.id, 20)
    core.stock.record_loss(product.id, 1)

    history = core.stock.movements(product.id)
    assert sum(m.quantity_delta for m in history) == core.stock.current_quantity(product.id) == 19
    assert core.stock.verify() == []


def test_verify_reports_drift(core, product, db_session):
    product.quantity_on_hand = 99
    db_session.commit()

    drift = core.stock.verify()

    assert len(drift) == 1
    assert drift[0].product_id == product.id
    assert drift[0].materialized == 99
    assert drift[0].folded == 10


def test_stock_operations_are_audited(core, product, db_session):
    core.stock.record_loss(product.id, 1, user_id="u-1")

    entries = db_session.query(AuditLog).filter_by(subject_id=product.id, action="stock.loss_recorded").all()
    assert len(entries) == 1
    assert entries[0].user_id == "u-1"
