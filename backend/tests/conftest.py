"""
Pytest fixtures for commerce ledger backend tests.

Provides test database setup, factories and a test client.
"""

import itertools

import pytest
from commerce_ledger import create_app
from commerce_ledger.extensions import db
from commerce_ledger.models import Customer, Product
from commerce_ledger.services import sales_service, store_credit_service
from commerce_ledger.services.alert_service import stock_alert


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'OVERSELL_POLICY': 'allow',
    'LOW_STOCK_THRESHOLD': 3,
    'STOCK_ALERTS_ENABLED': True,
    'RESERVATION_LEASE_SECONDS': 900,
    'RESERVATION_SWEEP_INTERVAL_SECONDS': 0,
    'CONCURRENCY_RETRY_ATTEMPTS': 3,
    'CONCURRENCY_BACKOFF_BASE': 0.0,
}

ACTOR_HEADERS = {"X-Actor-Id": "cashier-1", "X-Actor-Role": "cashier"}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(dict(TEST_CONFIG))

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Tests may flip policy/threshold; start every test from the defaults
    app.config.update(TEST_CONFIG)

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
def make_product(db_session):
    """Factory: make_product(on_hand=5, price_cents=1000, ...)."""
    counter = itertools.count(1)

    def _make(on_hand=0, price_cents=1000, sku=None, barcode=None, name=None, is_active=True):
        n = next(counter)
        product = Product(
            sku=sku or f"SKU-{n:04d}",
            barcode=barcode,
            name=name or f"Product {n}",
            price_cents=price_cents,
            on_hand=on_hand,
            reserved=0,
            is_active=is_active,
        )
        db_session.add(product)
        db_session.commit()
        return product

    return _make


@pytest.fixture(scope='function')
def make_customer(db_session):
    counter = itertools.count(1)

    def _make(name=None):
        n = next(counter)
        customer = Customer(name=name or f"Customer {n}", email=f"customer{n}@example.com", is_active=True)
        db_session.add(customer)
        db_session.commit()
        return customer

    return _make


@pytest.fixture(scope='function')
def make_sale(db_session):
    """Factory: make_sale([(product, qty), ...], customer=None, payment_method="cash")."""

    def _make(items, customer=None, payment_method="cash", discount=None, seller_id=None, actor="cashier-1"):
        lines = [{"product_id": product.id, "quantity": qty} for product, qty in items]
        return sales_service.create_sale(
            customer.id if customer else None,
            lines,
            discount,
            payment_method,
            actor,
            seller_id=seller_id,
        )

    return _make


@pytest.fixture(scope='function')
def fund_customer(db_session):
    """Grant store credit to a customer."""

    def _fund(customer, amount_cents, reference=None):
        return store_credit_service.credit(customer.id, amount_cents, reference, reason="Test funding")

    return _fund


@pytest.fixture(scope='function')
def captured_alerts(app):
    """Collect StockAlerts published on the stock-alert signal."""
    received = []

    def _receiver(sender, alert=None, **extra):
        received.append(alert)

    stock_alert.connect(_receiver)
    yield received
    stock_alert.disconnect(_receiver)


@pytest.fixture
def actor_headers():
    return dict(ACTOR_HEADERS)
