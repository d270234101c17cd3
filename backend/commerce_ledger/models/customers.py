from __future__ import annotations

from ..extensions import db
from commerce_ledger.time_utils import to_utc_z


class Customer(db.Model):
    """Customer master data (maintained by the catalog/CRM side)."""
    __tablename__ = "customers"
    __table_args__ = (
        db.Index("ix_customers_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), nullable=True, unique=True)
    phone = db.Column(db.String(32), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class StoreCreditAccount(db.Model):
    """
    Store-credit account for a customer.

    WHY no balance column: the balance is ALWAYS the fold over
    StoreCreditTransaction rows, so a cached value can never drift from
    its ledger. The account row exists to be locked and version-bumped,
    which serializes concurrent writers for one customer.
    """
    __tablename__ = "store_credit_accounts"
    __table_args__ = (
        db.UniqueConstraint("customer_id", name="uq_store_credit_accounts_customer"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=False, index=True)

    # Touched on every append so the versioned UPDATE runs
    last_transaction_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    customer = db.relationship("Customer", backref=db.backref("store_credit_account", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "customer_id": self.customer_id,
            "last_transaction_at": to_utc_z(self.last_transaction_at) if self.last_transaction_at else None,
            "created_at": to_utc_z(self.created_at),
            "version_id": self.version_id,
        }


class StoreCreditTransaction(db.Model):
    """
    Append-only ledger of store-credit events.

    TRANSACTION TYPES:
    - credit: funded by a return, an exchange refund or a manual grant
    - debit: spent on a sale or an exchange price difference

    amount_cents is always positive; direction comes from transaction_type.
    (account_id, transaction_type, reference) is unique so a retried call
    with the same reference is applied once.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "store_credit_transactions"
    __table_args__ = (
        db.UniqueConstraint("account_id", "transaction_type", "reference", name="uq_store_credit_txn_reference"),
        db.CheckConstraint("amount_cents > 0", name="ck_store_credit_txn_amount_positive"),
        db.Index("ix_store_credit_txns_account_occurred", "account_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey("store_credit_accounts.id"), nullable=False, index=True)

    transaction_type = db.Column(db.String(8), nullable=False, index=True)  # credit, debit
    amount_cents = db.Column(db.Integer, nullable=False)

    reason = db.Column(db.String(255), nullable=True)
    reference = db.Column(db.String(128), nullable=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=True, index=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=True, index=True)

    actor_id = db.Column(db.String(64), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    account = db.relationship("StoreCreditAccount", backref=db.backref("transactions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "account_id": self.account_id,
            "transaction_type": self.transaction_type,
            "amount_cents": self.amount_cents,
            "reason": self.reason,
            "reference": self.reference,
            "sale_id": self.sale_id,
            "return_id": self.return_id,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
