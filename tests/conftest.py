"""
Pytest fixtures for posledger tests.

Provides the application on an in-memory database, a per-test wipe, the
composed core, and a small catalog/customer/register setup.
"""

import pytest

from posledger import create_app
from posledger.config import CoreSettings
from posledger.core import build_core
from posledger.extensions import db
from posledger.models import Customer

from .helpers import make_product


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CONCURRENCY_BACKOFF_BASE': 0.0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def settings(app):
    return CoreSettings.from_mapping(app.config)


@pytest.fixture(scope='function')
def core(db_session, settings):
    return build_core(db_session, settings)


@pytest.fixture(scope='function')
def product(db_session, core):
    """Product with 10 units on hand, minimum stock 5."""
    return make_product(db_session, stock=10, core=core)


@pytest.fixture(scope='function')
def customer(db_session):
    """Customer with a 100.00 credit limit and no debt."""
    customer = Customer(name="Ana Quispe", document_number="40000001", credit_limit_cents=10_000)
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def register(core):
    return core.create_register("REG-01", "Front Counter").unwrap()


@pytest.fixture(scope='function')
def open_session_id(core, register):
    """Register session opened with 50.00 in the drawer."""
    return core.open_register(register.id, 5_000).unwrap()
