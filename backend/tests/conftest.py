"""
Pytest fixtures for edition ledger tests.

Provides test database setup, order payload builders, and test client.
"""

import pytest
from edition_ledger import create_app
from edition_ledger.extensions import db


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'CERTIFICATE_BASE_URL': 'https://certs.example.com',
        'LEDGER_API_TOKEN': None,
        'LEDGER_MAX_PASS_ATTEMPTS': 3,
        'LEDGER_RETRY_BACKOFF_SECONDS': 0,
        'LEDGER_LOCK_TIMEOUT_SECONDS': 0.2,
        'LEDGER_LOCK_LEASE_SECONDS': 60,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def file_app(app, tmp_path):
    """App on a file-backed database, for passes running on several threads."""
    from edition_ledger.services.ledger_service import ledger

    threaded = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
        'CERTIFICATE_BASE_URL': 'https://certs.example.com',
        'LEDGER_API_TOKEN': None,
        'LEDGER_MAX_PASS_ATTEMPTS': 10,
        'LEDGER_RETRY_BACKOFF_SECONDS': 0.05,
        'LEDGER_LOCK_TIMEOUT_SECONDS': 30,
        'LEDGER_LOCK_LEASE_SECONDS': 60,
    })
    with threaded.app_context():
        db.create_all()

    yield threaded

    with threaded.app_context():
        db.session.remove()
        db.engine.dispose()
    # The ledger is a module singleton; hand it back to the session app
    ledger.init_app(app)


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


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


def build_order(
    order_id,
    name=None,
    *,
    created_at="2026-03-01T10:00:00Z",
    updated_at=None,
    financial_status="paid",
    cancelled_at=None,
    line_items=None,
    refunds=None,
):
    """Platform-shaped order JSON."""
    order = {
        "id": order_id,
        "name": name or f"#{order_id}",
        "created_at": created_at,
        "financial_status": financial_status,
        "fulfillment_status": None,
        "cancelled_at": cancelled_at,
        "line_items": line_items if line_items is not None else [],
        "refunds": refunds or [],
    }
    if updated_at is not None:
        order["updated_at"] = updated_at
    return order


def build_line_item(line_item_id, product_id="P1", **extra):
    item = {
        "id": line_item_id,
        "product_id": product_id,
        "variant_id": extra.pop("variant_id", None),
        "title": extra.pop("title", "Limited print"),
        "price": extra.pop("price", "25.00"),
        "vendor": extra.pop("vendor", "Studio"),
        "fulfillment_status": extra.pop("fulfillment_status", None),
    }
    item.update(extra)
    return item


@pytest.fixture
def make_order():
    return build_order


@pytest.fixture
def make_line_item():
    return build_line_item
