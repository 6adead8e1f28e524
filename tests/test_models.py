from posledger.errors import (
    CreditLimitExceeded,
    InsufficientStock,
    NotFound,
    PosError,
    ValidationError,
    error_from_dict,
)
from posledger.models import Customer, Product, same_entity
from posledger.outcomes import Outcome
from posledger.time_utils import parse_iso_datetime, to_utc_z


def test_identity_is_assigned_on_flush(db_session):
    product = Product(sku="A-1", name="Sugar", price_cents=300)
    db_session.add(product)
    db_session.flush()

    assert product.id is not None
    assert len(product.id) == 36
    assert product.created_at is not None
    assert product.updated_at is None


def test_touch_sets_updated_at(db_session):
    product = Product(sku="A-1", name="Sugar", price_cents=300)
    db_session.add(product)
    db_session.commit()

    product.touch()

    assert product.updated_at is not None
    assert product.updated_at >= product.created_at


def test_same_entity_compares_kind_and_id(db_session):
    product = Product(sku="A-1", name="Sugar", price_cents=300)
    customer = Customer(name="Luis")
    db_session.add_all([product, customer])
    db_session.commit()

    same_row = db_session.get(Product, product.id)
    assert same_entity(product, same_row)
    assert not same_entity(product, customer)
    assert not same_entity(product, None)

    # same id, different kind
    assert not same_entity(product, Customer(id=product.id, name="Luis"))


def test_error_round_trips_through_dict():
    original = InsufficientStock("p-1", requested=5, available=2)

    rebuilt = error_from_dict(original.to_dict())

    assert isinstance(rebuilt, InsufficientStock)
    assert rebuilt.code == "INSUFFICIENT_STOCK"
    assert rebuilt.requested == 5
    assert rebuilt.available == 2
    assert rebuilt.replayed is True
    assert original.replayed is False


def test_unknown_error_code_rebuilds_as_base_error():
    rebuilt = error_from_dict({"code": "SOMETHING_NEW", "message": "boom"})

    assert type(rebuilt) is PosError
    assert rebuilt.message == "boom"


def test_error_metadata():
    assert NotFound("Product", "x").http_status == 404
    assert ValidationError("bad").http_status == 400
    err = CreditLimitExceeded("c-1", requested=20, available=10)
    assert err.details == {"customer_id": "c-1", "requested": 20, "available": 10}
    assert not err.retryable


def test_outcome_unwrap():
    assert Outcome.success(3).unwrap() == 3
    failed = Outcome.failure(ValidationError("nope"))
    assert not failed.ok
    try:
        failed.unwrap()
    except ValidationError as exc:
        assert exc.message == "nope"
    else:
        raise AssertionError("unwrap() should raise the stored error")


def test_iso_datetimes_normalize_to_utc():
    parsed = parse_iso_datetime("2024-03-01T10:00:00-05:00")

    assert parsed.tzinfo is None
    assert parsed.hour == 15
    assert to_utc_z(parsed) == "2024-03-01T15:00:00Z"
    assert parse_iso_datetime("  ") is None
