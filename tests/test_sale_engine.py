import pytest

from posledger.errors import (
    CreditLimitExceeded,
    IdempotencyInProgress,
    InsufficientStock,
    NotFound,
    RegisterClosed,
    ValidationError,
)
from posledger.models import (
    AuditLog,
    CashMovement,
    CashMovementKind,
    CreditMovement,
    IdempotencyRecord,
    IdempotencyStatus,
    MovementKind,
    Sale,
    SaleStatus,
    StockMovement,
    SyncQueueItem,
)
from posledger.services.sale_engine import SaleLineRequest, SaleRequest

from .helpers import credit_sale, make_product, sale_request


def _sale_movements(db_session):
    return db_session.query(StockMovement).filter_by(kind=MovementKind.SALE).all()


def test_sale_decrements_stock_once_and_replays(core, db_session, product, register, open_session_id):
    request = sale_request(product.id, 4, register_id=register.id)

    first = core.create_sale(request, "K1")
    replay = core.create_sale(request, "K1")

    assert first.ok and not first.replayed
    assert replay.ok and replay.replayed
    assert replay.value == first.value
    assert core.stock.current_quantity(product.id) == 6
    movements = _sale_movements(db_session)
    assert len(movements) == 1
    assert movements[0].quantity_delta == -4
    assert db_session.query(Sale).count() == 1


def test_committed_sale_writes_every_side_effect(core, db_session, product, register, open_session_id):
    result = core.create_sale(sale_request(product.id, 2, register_id=register.id), "K1").unwrap()

    sale = db_session.get(Sale, result.sale_id)
    assert sale.status == SaleStatus.COMMITTED
    assert sale.total_cents == 1_000
    assert sale.register_session_id == open_session_id
    assert result.lines[0]["line_total_cents"] == 1_000

    cash = db_session.query(CashMovement).filter_by(kind=CashMovementKind.SALE).one()
    assert cash.amount_cents == 1_000
    assert cash.reference_id == sale.id

    audit = db_session.query(AuditLog).filter_by(subject_id=sale.id).one()
    assert audit.action == "sale.committed"
    assert db_session.query(SyncQueueItem).filter_by(entity_id=sale.id).count() == 1

    record = db_session.query(IdempotencyRecord).filter_by(key="K1").one()
    assert record.status == IdempotencyStatus.COMPLETED


def test_insufficient_stock_writes_nothing(core, db_session, product, register, open_session_id):
    outcome = core.create_sale(sale_request(product.id, 11, register_id=register.id), "K1")

    assert isinstance(outcome.error, InsufficientStock)
    assert outcome.error.details == {"product_id": product.id, "requested": 11, "available": 10}
    assert _sale_movements(db_session) == []
    assert db_session.query(Sale).count() == 0
    assert core.stock.current_quantity(product.id) == 10
    assert core.cash.balance(open_session_id) == 5_000


def test_requested_quantity_is_summed_across_lines(core, db_session, product, register, open_session_id):
    request = SaleRequest(
        lines=(
            SaleLineRequest(product_id=product.id, quantity=6),
            SaleLineRequest(product_id=product.id, quantity=6),
        ),
        payment_method="CASH",
        register_id=register.id,
    )

    outcome = core.create_sale(request, "K1")

    assert isinstance(outcome.error, InsufficientStock)
    assert outcome.error.requested == 12


def test_business_failure_is_not_cached(core, db_session, product, register, open_session_id):
    request = sale_request(product.id, 12, register_id=register.id)
    assert isinstance(core.create_sale(request, "K1").error, InsufficientStock)

    core.stock.receive(product.id, 5)
    retried = core.create_sale(request, "K1")

    assert retried.ok
    assert core.stock.current_quantity(product.id) == 3


def test_failed_key_can_be_retried_with_corrected_request(core, product, register, open_session_id):
    too_many = core.create_sale(sale_request(product.id, 50, register_id=register.id), "K1")
    assert isinstance(too_many.error, InsufficientStock)

    corrected = core.create_sale(sale_request(product.id, 5, register_id=register.id), "K1")

    assert corrected.ok and not corrected.replayed
    assert core.stock.current_quantity(product.id) == 5


def test_malformed_request_error_is_replayed(core, db_session, register):
    request = SaleRequest(lines=(), payment_method="CASH", register_id=register.id)

    first = core.create_sale(request, "K1")
    replay = core.create_sale(request, "K1")

    assert isinstance(first.error, ValidationError)
    assert isinstance(replay.error, ValidationError)
    assert replay.replayed
    assert replay.error.message == first.error.message


def test_pending_key_reports_in_progress(core, product, register, open_session_id):
    request = sale_request(product.id, 1, register_id=register.id)
    core.guard.begin("K1", operation="sale.commit", request_hash=request.fingerprint())

    outcome = core.create_sale(request, "K1")

    assert isinstance(outcome.error, IdempotencyInProgress)
    assert outcome.error.retryable


def test_key_reused_for_other_request(core, product, register, open_session_id):
    core.create_sale(sale_request(product.id, 1, register_id=register.id), "K1").unwrap()

    outcome = core.create_sale(sale_request(product.id, 2, register_id=register.id), "K1")

    assert isinstance(outcome.error, ValidationError)
    assert core.stock.current_quantity(product.id) == 9


def test_credit_limit_exceeded_leaves_debt_unchanged(core, db_session, customer):
    item = make_product(db_session, sku="CR-1", price_cents=1_000, stock=50, core=core)
    core.create_sale(credit_sale(item.id, customer.id, quantity=9), "K0").unwrap()
    assert core.credit.outstanding(customer.id) == 9_000

    outcome = core.create_sale(credit_sale(item.id, customer.id, quantity=2), "K1")

    assert isinstance(outcome.error, CreditLimitExceeded)
    assert outcome.error.requested == 2_000
    assert outcome.error.available == 1_000
    assert core.credit.outstanding(customer.id) == 9_000
    assert core.stock.current_quantity(item.id) == 41


def test_credit_sale_charges_customer_without_cash(core, db_session, customer, product):
    result = core.create_sale(credit_sale(product.id, customer.id, quantity=2), "K1").unwrap()

    assert core.credit.outstanding(customer.id) == 1_000
    charge = db_session.query(CreditMovement).one()
    assert charge.reference_id == result.sale_id
    assert db_session.query(CashMovement).filter_by(kind=CashMovementKind.SALE).count() == 0
    assert core.credit.outstanding(customer.id) <= customer.credit_limit_cents


def test_credit_sale_requires_customer(core, product):
    outcome = core.create_sale(SaleRequest(
        lines=(SaleLineRequest(product_id=product.id, quantity=1),),
        payment_method="CREDIT",
    ), "K1")

    assert isinstance(outcome.error, ValidationError)


def test_credit_sale_at_unknown_register(core, db_session, customer, product):
    outcome = core.create_sale(SaleRequest(
        lines=(SaleLineRequest(product_id=product.id, quantity=1),),
        payment_method="CREDIT",
        customer_id=customer.id,
        register_id="missing",
    ), "K1")

    assert isinstance(outcome.error, NotFound)
    assert core.stock.current_quantity(product.id) == 10
    assert core.credit.outstanding(customer.id) == 0
    assert db_session.query(Sale).count() == 0


def test_cash_sale_needs_open_register(core, product, register):
    outcome = core.create_sale(sale_request(product.id, 1, register_id=register.id), "K1")

    assert isinstance(outcome.error, RegisterClosed)
    assert core.stock.current_quantity(product.id) == 10


def test_unknown_product(core, register, open_session_id):
    outcome = core.create_sale(sale_request("missing", 1, register_id=register.id), "K1")

    assert isinstance(outcome.error, NotFound)


@pytest.mark.parametrize("line", [
    SaleLineRequest(product_id="p", quantity=0),
    SaleLineRequest(product_id="p", quantity=1, unit_price_cents=-1),
    SaleLineRequest(product_id="p", quantity=1, discount_cents=-5),
    SaleLineRequest(product_id="p", quantity=1, unit_price_cents=100, discount_cents=101),
])
def test_malformed_lines(core, register, line):
    request = SaleRequest(lines=(line,), payment_method="CASH", register_id=register.id)

    assert isinstance(core.create_sale(request, None).error, ValidationError)


def test_discounts_and_explicit_prices(core, product, register, open_session_id):
    request = SaleRequest(
        lines=(SaleLineRequest(product_id=product.id, quantity=3, unit_price_cents=400, discount_cents=200),),
        payment_method="CARD",
        register_id=register.id,
        discount_cents=100,
    )

    result = core.create_sale(request, "K1").unwrap()

    assert result.subtotal_cents == 1_200
    assert result.discount_cents == 300
    assert result.total_cents == 900
    assert core.cash.balance(open_session_id) == 5_900


def test_cash_sale_then_close_balance(core, db_session, register, open_session_id):
    item = make_product(db_session, sku="CS-1", price_cents=3_000, stock=5, core=core)
    core.create_sale(sale_request(item.id, 1, register_id=register.id), "K1").unwrap()

    summary = core.close_register(open_session_id).unwrap()

    assert summary.closing_balance_cents == 8_000


def test_quantity_matches_fold_after_sales(core, product, register, open_session_id):
    for n in range(3):
        core.create_sale(sale_request(product.id, 2, register_id=register.id), f"K{n}").unwrap()

    assert core.stock.current_quantity(product.id) == core.stock.recomputed_quantity(product.id) == 4
    assert core.verify_ledgers().ok


def test_reverse_cash_sale(core, db_session, product, register, open_session_id):
    sale = core.create_sale(sale_request(product.id, 4, register_id=register.id), "K1").unwrap()

    reversed_sale = core.reverse_sale(sale.sale_id, "Customer returned goods", user_id="u-1").unwrap()

    assert reversed_sale.status == SaleStatus.REVERSED
    assert core.stock.current_quantity(product.id) == 10
    assert core.cash.balance(open_session_id) == 5_000
    returns = db_session.query(StockMovement).filter_by(kind=MovementKind.RETURN).all()
    assert [m.quantity_delta for m in returns] == [4]
    # the original movement is untouched
    assert _sale_movements(db_session)[0].quantity_delta == -4
    actions = {e.action for e in core.audit_trail_for_subject("Sale", sale.sale_id)}
    assert actions == {"sale.committed", "sale.reversed"}


def test_reverse_credit_sale_releases_debt(core, customer, product):
    sale = core.create_sale(credit_sale(product.id, customer.id, quantity=2), "K1").unwrap()

    core.reverse_sale(sale.sale_id, "Wrong customer").unwrap()

    assert core.credit.outstanding(customer.id) == 0
    assert core.credit.verify() == []


def test_sale_can_only_be_reversed_once(core, product, register, open_session_id):
    sale = core.create_sale(sale_request(product.id, 1, register_id=register.id), "K1").unwrap()
    core.reverse_sale(sale.sale_id, "Mistake").unwrap()

    outcome = core.reverse_sale(sale.sale_id, "Mistake again")

    assert isinstance(outcome.error, ValidationError)
    assert core.stock.current_quantity(product.id) == 10


def test_reverse_requires_reason(core):
    assert isinstance(core.reverse_sale("anything", " ").error, ValidationError)


def test_fingerprint_ignores_client_metadata(product):
    from posledger.services.audit_service import ClientMeta

    a = sale_request(product.id, 1, register_id="r", meta=ClientMeta(user_id="u-1", ip_address="10.0.0.1"))
    b = sale_request(product.id, 1, register_id="r", meta=ClientMeta(user_id="u-1", ip_address="10.0.0.2"))
    c = sale_request(product.id, 2, register_id="r")

    assert a.fingerprint() == b.fingerprint()
    assert a.fingerprint() != c.fingerprint()
