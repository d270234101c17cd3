# Overview: Typed business failures raised by the ledger services.

"""
Failure taxonomy for the commerce ledger.

Every service raises a LedgerError subclass for business-rule failures.
Routes render them as JSON using `code`, `status_code` and `details`.

Only ConcurrentModification is ever retried (inside the services, see
services/concurrency.py). Everything else reaches the caller unchanged:
retrying insufficient stock, over-return or insufficient credit would not
change the outcome.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for typed ledger failures."""

    code = "ledger_error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {
            "error": self.message,
            "code": self.code,
            "details": self.details,
        }


class InvalidLine(LedgerError):
    """Caller input rejected before anything is written (bad line, amount or method). Never retried."""

    code = "invalid_line"
    status_code = 400


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class InsufficientStock(LedgerError):
    """Reject-mode reservation or debit found too little available stock."""

    code = "insufficient_stock"
    status_code = 409


class InsufficientCredit(LedgerError):
    """A store-credit debit would drive the balance negative."""

    code = "insufficient_credit"
    status_code = 409


class OverReturn(LedgerError):
    """Return quantity exceeds sold minus already returned."""

    code = "over_return"
    status_code = 409


class DuplicateImport(LedgerError):
    """The import fingerprint was already accepted."""

    code = "duplicate_import"
    status_code = 409


class InvalidReturnState(LedgerError):
    """Return state machine violation (e.g. completing a pending return)."""

    code = "invalid_return_state"
    status_code = 409


class ConcurrentModification(LedgerError):
    """Optimistic-version conflicts persisted past the retry bound."""

    code = "concurrent_modification"
    status_code = 409
