# Overview: Locking, write serialization and bounded retry for ledger critical sections.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..errors import ConcurrentModification


# OperationalError messages that indicate a lost race rather than a broken query
_CONFLICT_MARKERS = (
    "database is locked",
    "deadlock",
    "could not serialize",
    "lock wait timeout",
)

# IntegrityError messages for a unique key another transaction inserted first
_DUPLICATE_MARKERS = (
    "unique constraint",
    "duplicate key",
    "duplicate entry",
    "unique violation",
)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    On SQLite the write lock comes from begin_write() instead.
    """
    return query.with_for_update().populate_existing()


def begin_write() -> None:
    """
    Open the current transaction as a write transaction.

    SQLite takes its write lock lazily, at the first INSERT/UPDATE, which lets
    two sessions read the same version and both try to write. BEGIN IMMEDIATE
    takes the lock up front so every critical section is serialized.
    No-op on other dialects and when the connection is already in a write
    transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    dbapi_connection = db.session.connection().connection.dbapi_connection
    if not dbapi_connection.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def is_conflict(exc: Exception) -> bool:
    if isinstance(exc, StaleDataError):
        return True
    if isinstance(exc, OperationalError):
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _CONFLICT_MARKERS)
    if isinstance(exc, IntegrityError):
        # Two first-time inserts of the same row; the retry re-reads the winner's row
        message = str(exc.orig if exc.orig is not None else exc).lower()
        return any(marker in message for marker in _DUPLICATE_MARKERS)
    return False


def retry_settings() -> tuple[int, float]:
    cfg = current_app.config
    return (
        int(cfg.get("CONCURRENCY_RETRY_ATTEMPTS", 5)),
        float(cfg.get("CONCURRENCY_BACKOFF_BASE", 0.05)),
    )


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float | None = None):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries optimistic version conflicts (StaleDataError) and lock contention
    (OperationalError). A unique-key IntegrityError from two transactions
    creating the same row is retried too; the next attempt finds the
    committed row. After the last attempt the conflict surfaces as
    ConcurrentModification.

    Any other exception rolls the session back and propagates unchanged.
    """
    default_attempts, default_backoff = retry_settings()
    attempts = attempts if attempts is not None else default_attempts
    backoff_base = backoff_base if backoff_base is not None else default_backoff

    last_exc = None
    for attempt in range(max(1, attempts)):
        try:
            return func()
        except (OperationalError, IntegrityError, StaleDataError) as exc:
            db.session.rollback()
            if not is_conflict(exc):
                raise
            last_exc = exc
            if attempt < attempts - 1:
                time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    raise ConcurrentModification(
        "Concurrent modification persisted after retries",
        details={"attempts": attempts, "cause": str(last_exc)},
    ) from last_exc
