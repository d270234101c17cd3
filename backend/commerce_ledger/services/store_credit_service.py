# Overview: Store-credit ledger; balances are folded from the append-only transaction log.

"""
Store Credit Ledger

WHY: Customers receive store credit from returns and spend it on later
sales. The balance must never go negative and must never drift from the
history that produced it.

DESIGN:
- One StoreCreditAccount per customer, created on first use.
- Balance = SUM(credits) - SUM(debits), computed from the log on every read.
- A debit that would make the balance negative raises InsufficientCredit
  and writes nothing.
- Mutations lock the account row and bump its version_id, so two debits for
  the same customer cannot both pass the balance check.
- A non-null reference makes credit()/debit() idempotent: a retried call
  with the same (type, reference) returns the original transaction, and one
  whose amount or source differs raises InvalidLine. Callers outside the
  sale and return engines may not use their reference prefixes.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import case, func

from ..extensions import db
from ..errors import InsufficientCredit, InvalidLine, NotFound
from ..models import Customer, StoreCreditAccount, StoreCreditTransaction
from commerce_ledger.time_utils import utcnow
from .concurrency import begin_write, lock_for_update, run_with_retry


TXN_CREDIT = "credit"
TXN_DEBIT = "debit"

# References the sale and return engines build for themselves
SYSTEM_REFERENCE_PREFIXES = ("sale:", "return:", "exchange:")


def check_caller_reference(reference):
    """Reject a caller-chosen reference that could collide with a system one."""
    if reference is None:
        return None
    if not isinstance(reference, str):
        raise InvalidLine("reference must be a string", details={"reference": reference})
    if reference.strip().lower().startswith(SYSTEM_REFERENCE_PREFIXES):
        raise InvalidLine(
            "reference prefix is reserved for sales and returns",
            details={"reference": reference},
        )
    return reference


def _validate_amount(amount_cents) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents <= 0:
        raise InvalidLine("amount_cents must be a positive integer", details={"amount_cents": amount_cents})
    return amount_cents


def _ensure_customer(customer_id: int) -> Customer:
    customer = db.session.get(Customer, customer_id)
    if customer is None:
        raise NotFound("Customer not found", details={"customer_id": customer_id})
    return customer


def _fold(account_id: int) -> tuple[int, int]:
    T = StoreCreditTransaction
    credited = func.coalesce(func.sum(case((T.transaction_type == TXN_CREDIT, T.amount_cents), else_=0)), 0)
    debited = func.coalesce(func.sum(case((T.transaction_type == TXN_DEBIT, T.amount_cents), else_=0)), 0)
    row = db.session.query(credited, debited).filter(T.account_id == account_id).one()
    return int(row[0] or 0), int(row[1] or 0)


def _balance_for_account(account_id: int) -> int:
    credited, debited = _fold(account_id)
    return credited - debited


def lock_account(customer_id: int) -> StoreCreditAccount:
    """Load and lock the customer's account, creating it on first use."""
    _ensure_customer(customer_id)
    account = lock_for_update(
        db.session.query(StoreCreditAccount).filter_by(customer_id=customer_id)
    ).first()
    if account is None:
        account = StoreCreditAccount(customer_id=customer_id)
        db.session.add(account)
        db.session.flush()
    return account


def _append_locked(
    account: StoreCreditAccount,
    transaction_type: str,
    amount_cents: int,
    *,
    reference: str | None = None,
    reason: str | None = None,
    sale_id: int | None = None,
    return_id: int | None = None,
    actor_id: str | None = None,
) -> StoreCreditTransaction:
    amount_cents = _validate_amount(amount_cents)

    if reference:
        existing = db.session.query(StoreCreditTransaction).filter_by(
            account_id=account.id,
            transaction_type=transaction_type,
            reference=reference,
        ).first()
        if existing:
            if (existing.amount_cents, existing.sale_id, existing.return_id) != (amount_cents, sale_id, return_id):
                raise InvalidLine(
                    "Reference already used by a different store credit transaction",
                    details={
                        "reference": reference,
                        "transaction_id": existing.id,
                        "amount_cents": existing.amount_cents,
                    },
                )
            return existing

    if transaction_type == TXN_DEBIT:
        balance = _balance_for_account(account.id)
        if balance < amount_cents:
            raise InsufficientCredit(
                "Insufficient store credit",
                details={
                    "customer_id": account.customer_id,
                    "balance_cents": balance,
                    "requested_cents": amount_cents,
                },
            )

    now = utcnow()
    txn = StoreCreditTransaction(
        account_id=account.id,
        transaction_type=transaction_type,
        amount_cents=amount_cents,
        reason=reason,
        reference=reference,
        sale_id=sale_id,
        return_id=return_id,
        actor_id=actor_id,
        occurred_at=now,
    )
    db.session.add(txn)
    # Forces the versioned UPDATE on the account row
    account.last_transaction_at = now
    db.session.flush()
    return txn


def credit_locked(customer_id: int, amount_cents: int, **kwargs) -> StoreCreditTransaction:
    account = lock_account(customer_id)
    return _append_locked(account, TXN_CREDIT, amount_cents, **kwargs)


def debit_locked(customer_id: int, amount_cents: int, **kwargs) -> StoreCreditTransaction:
    account = lock_account(customer_id)
    return _append_locked(account, TXN_DEBIT, amount_cents, **kwargs)


def credit(
    customer_id: int,
    amount_cents: int,
    reference: str | None = None,
    *,
    reason: str | None = None,
    sale_id: int | None = None,
    return_id: int | None = None,
    actor_id: str | None = None,
) -> StoreCreditTransaction:
    """Add store credit. Always succeeds for a positive amount."""
    def _op():
        begin_write()
        txn = credit_locked(
            customer_id,
            amount_cents,
            reference=reference,
            reason=reason,
            sale_id=sale_id,
            return_id=return_id,
            actor_id=actor_id,
        )
        db.session.commit()
        return txn

    txn = run_with_retry(_op)
    current_app.logger.info(
        "Store credit granted: customer_id=%s amount_cents=%s reference=%s",
        customer_id, amount_cents, reference,
    )
    return txn


def debit(
    customer_id: int,
    amount_cents: int,
    reference: str | None = None,
    *,
    reason: str | None = None,
    sale_id: int | None = None,
    return_id: int | None = None,
    actor_id: str | None = None,
) -> StoreCreditTransaction:
    """Spend store credit. Raises InsufficientCredit when the balance is too low."""
    def _op():
        begin_write()
        txn = debit_locked(
            customer_id,
            amount_cents,
            reference=reference,
            reason=reason,
            sale_id=sale_id,
            return_id=return_id,
            actor_id=actor_id,
        )
        db.session.commit()
        return txn

    txn = run_with_retry(_op)
    current_app.logger.info(
        "Store credit spent: customer_id=%s amount_cents=%s reference=%s",
        customer_id, amount_cents, reference,
    )
    return txn


def get_balance(customer_id: int) -> int:
    _ensure_customer(customer_id)
    account = db.session.query(StoreCreditAccount).filter_by(customer_id=customer_id).first()
    if account is None:
        return 0
    return _balance_for_account(account.id)


def list_transactions(customer_id: int, limit: int = 100) -> list[StoreCreditTransaction]:
    _ensure_customer(customer_id)
    account = db.session.query(StoreCreditAccount).filter_by(customer_id=customer_id).first()
    if account is None:
        return []
    limit = max(1, min(int(limit), 500))
    return (
        db.session.query(StoreCreditTransaction)
        .filter_by(account_id=account.id)
        .order_by(StoreCreditTransaction.occurred_at.desc(), StoreCreditTransaction.id.desc())
        .limit(limit)
        .all()
    )


def get_account_summary(customer_id: int) -> dict:
    _ensure_customer(customer_id)
    account = db.session.query(StoreCreditAccount).filter_by(customer_id=customer_id).first()
    if account is None:
        return {
            "customer_id": customer_id,
            "balance_cents": 0,
            "total_credited_cents": 0,
            "total_debited_cents": 0,
            "transaction_count": 0,
            "last_transaction_at": None,
        }

    credited, debited = _fold(account.id)
    count = db.session.query(func.count(StoreCreditTransaction.id)).filter_by(account_id=account.id).scalar()
    data = account.to_dict()
    return {
        "customer_id": customer_id,
        "balance_cents": credited - debited,
        "total_credited_cents": credited,
        "total_debited_cents": debited,
        "transaction_count": int(count or 0),
        "last_transaction_at": data["last_transaction_at"],
    }
