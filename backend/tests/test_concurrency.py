# Overview: Threaded contention tests against a file-backed SQLite database.

"""
Concurrency Tests

Each scenario starts N threads behind a barrier so they hit the same rows
at once. The in-memory test database cannot be shared across threads
safely, so these tests build their own app on a temporary SQLite file.

SCENARIOS:
- N reservations against N-1 units: exactly N-1 succeed
- Concurrent sales never oversell in reject mode
- Concurrent store-credit debits never overdraw
- The same import submitted concurrently is applied once
- A lost first-time insert is retried and reads the row that won
"""

import threading

import pytest
from sqlalchemy import false
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from commerce_ledger import create_app
from commerce_ledger.errors import (
    ConcurrentModification,
    DuplicateImport,
    InsufficientCredit,
    InsufficientStock,
    LedgerError,
)
from commerce_ledger.extensions import db
from commerce_ledger.models import Customer, ImportRecord, Product, Sale, StockReservation, StoreCreditAccount
from commerce_ledger.services import (
    import_service,
    inventory_service,
    sales_service,
    store_credit_service,
)
from commerce_ledger.services.concurrency import run_with_retry


THREADS = 5


@pytest.fixture
def file_app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'ledger.sqlite3'}",
        'OVERSELL_POLICY': 'reject',
        'STOCK_ALERTS_ENABLED': False,
        'RESERVATION_SWEEP_INTERVAL_SECONDS': 0,
        'CONCURRENCY_RETRY_ATTEMPTS': 20,
        'CONCURRENCY_BACKOFF_BASE': 0.01,
    })
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()
        db.engine.dispose()


def _seed_product(app, on_hand, sku="RACE-1", price_cents=1000):
    with app.app_context():
        product = Product(sku=sku, name=sku, price_cents=price_cents, on_hand=on_hand, reserved=0, is_active=True)
        db.session.add(product)
        db.session.commit()
        return product.id


def _run_concurrently(app, work, count=THREADS):
    """Run work(i) in `count` threads released together; collect results or LedgerErrors."""
    barrier = threading.Barrier(count)
    results = []
    lock = threading.Lock()

    def _worker(i):
        with app.app_context():
            barrier.wait()
            try:
                outcome = work(i)
            except LedgerError as exc:
                outcome = exc
            with lock:
                results.append(outcome)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=60)
    assert len(results) == count
    return results


@pytest.mark.concurrency
def test_reservations_never_exceed_available(file_app):
    product_id = _seed_product(file_app, on_hand=THREADS - 1)

    results = _run_concurrently(
        file_app, lambda i: inventory_service.reserve(product_id, 1, f"op-{i}").id
    )

    failures = [r for r in results if isinstance(r, LedgerError)]
    assert len(results) - len(failures) == THREADS - 1
    assert len(failures) == 1
    assert isinstance(failures[0], InsufficientStock)

    with file_app.app_context():
        product = db.session.get(Product, product_id)
        assert product.reserved == THREADS - 1
        assert product.available == 0
        assert db.session.query(StockReservation).filter_by(status="ACTIVE").count() == THREADS - 1


@pytest.mark.concurrency
def test_concurrent_sales_never_oversell(file_app):
    product_id = _seed_product(file_app, on_hand=3)

    def _sell(i):
        return sales_service.create_sale(
            None, [{"product_id": product_id, "quantity": 1}], None, "cash", f"cashier-{i}"
        ).id

    results = _run_concurrently(file_app, _sell)

    assert sum(1 for r in results if isinstance(r, InsufficientStock)) == THREADS - 3
    with file_app.app_context():
        product = db.session.get(Product, product_id)
        assert product.on_hand == 0
        assert product.reserved == 0
        assert db.session.query(Sale).count() == 3


@pytest.mark.concurrency
def test_concurrent_store_credit_debits_never_overdraw(file_app):
    with file_app.app_context():
        customer = Customer(name="Race", email="race@example.com", is_active=True)
        db.session.add(customer)
        db.session.commit()
        customer_id = customer.id
        store_credit_service.credit(customer_id, 5000, "seed")

    results = _run_concurrently(
        file_app, lambda i: store_credit_service.debit(customer_id, 2000, f"debit-{i}").id
    )

    assert sum(1 for r in results if isinstance(r, InsufficientCredit)) == THREADS - 2
    with file_app.app_context():
        assert store_credit_service.get_balance(customer_id) == 1000


@pytest.mark.concurrency
def test_same_import_applied_once(file_app):
    product_id = _seed_product(file_app, on_hand=0, sku="BOX-1")
    lines = [{"sku": "BOX-1", "quantity": 12}]

    results = _run_concurrently(file_app, lambda i: import_service.accept("fp-race", lines).id)

    assert sum(1 for r in results if isinstance(r, DuplicateImport)) == THREADS - 1
    with file_app.app_context():
        assert db.session.get(Product, product_id).on_hand == 12
        assert db.session.query(ImportRecord).count() == 1


def test_retry_gives_up_with_concurrent_modification(db_session):
    calls = []

    def _always_stale():
        calls.append(1)
        raise StaleDataError("row version changed")

    with pytest.raises(ConcurrentModification) as exc:
        run_with_retry(_always_stale, attempts=3, backoff_base=0)

    assert len(calls) == 3
    assert exc.value.details["attempts"] == 3


def test_retry_recovers_after_transient_lock(db_session):
    calls = []

    def _locked_once():
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE products", {}, Exception("database is locked"))
        return "ok"

    assert run_with_retry(_locked_once, attempts=3, backoff_base=0) == "ok"
    assert len(calls) == 2


def test_non_conflict_errors_are_not_retried(db_session):
    calls = []

    def _broken():
        calls.append(1)
        raise OperationalError("SELECT", {}, Exception("no such table: widgets"))

    with pytest.raises(OperationalError):
        run_with_retry(_broken, attempts=3, backoff_base=0)
    assert len(calls) == 1


def test_retry_recovers_after_duplicate_first_insert(db_session):
    calls = []

    def _lost_insert_once():
        calls.append(1)
        if len(calls) == 1:
            raise IntegrityError(
                "INSERT INTO store_credit_accounts", {},
                Exception("UNIQUE constraint failed: store_credit_accounts.customer_id"),
            )
        return "ok"

    assert run_with_retry(_lost_insert_once, attempts=3, backoff_base=0) == "ok"
    assert len(calls) == 2


def test_other_integrity_errors_are_not_retried(db_session):
    calls = []

    def _bad_row():
        calls.append(1)
        raise IntegrityError("INSERT INTO products", {}, Exception("NOT NULL constraint failed: products.name"))

    with pytest.raises(IntegrityError):
        run_with_retry(_bad_row, attempts=3, backoff_base=0)
    assert len(calls) == 1


def test_account_created_by_a_concurrent_first_credit(db_session, make_customer, monkeypatch):
    customer = make_customer()
    store_credit_service.credit(customer.id, 1000, "first")

    real_lock = store_credit_service.lock_for_update
    reads = []

    def _miss_first_read(query):
        # The first attempt reads before the twin's account row is visible
        reads.append(1)
        locked = real_lock(query)
        return locked.filter(false()) if len(reads) == 1 else locked

    monkeypatch.setattr(store_credit_service, "lock_for_update", _miss_first_read)

    store_credit_service.credit(customer.id, 500, "second")

    assert len(reads) == 2
    assert db_session.query(StoreCreditAccount).filter_by(customer_id=customer.id).count() == 1
    assert store_credit_service.get_balance(customer.id) == 1500
