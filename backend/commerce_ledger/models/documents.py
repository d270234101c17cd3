from __future__ import annotations

from ..extensions import db
from commerce_ledger.time_utils import to_utc_z


class Return(db.Model):
    """
    Return / exchange document against a prior sale.

    LIFECYCLE:
    1. pending: created with proposed lines, no stock or credit effect
    2. approved: quantities validated against what is still returnable
    3. completed: stock credited, refund or exchange executed (terminal)
    4. rejected: declined from pending (terminal)

    TYPES:
    - return: ReturnLines, refund_method same_payment or store_credit
    - exchange: ExchangeLines, refund_method exchange; the net price
      difference is settled per settlement_method
    """
    __tablename__ = "returns"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_returns_docnum"),
        db.Index("ix_returns_status_created", "status", "created_at"),
        db.Index("ix_returns_customer_created", "customer_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "R-001234")
    document_number = db.Column(db.String(64), nullable=True)

    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    return_type = db.Column(db.String(16), nullable=False, index=True)  # return, exchange
    reason = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(16), nullable=False, default="pending", index=True)

    refund_method = db.Column(db.String(16), nullable=False)  # same_payment, store_credit, exchange
    settlement_method = db.Column(db.String(16), nullable=True)  # exchanges: same_payment, store_credit

    # All amounts in cents
    restocking_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    refund_amount_cents = db.Column(db.Integer, nullable=False, default=0)
    # Exchanges: sum of ExchangeLine.price_difference_cents (positive = customer owes)
    price_difference_cents = db.Column(db.Integer, nullable=False, default=0)

    notes = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    # Actor attribution (identity collaborator ids)
    created_by = db.Column(db.String(64), nullable=False)
    approved_by = db.Column(db.String(64), nullable=True)
    completed_by = db.Column(db.String(64), nullable=True)
    rejected_by = db.Column(db.String(64), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    rejected_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    sale = db.relationship("Sale", backref=db.backref("returns", lazy=True))
    customer = db.relationship("Customer")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "sale_id": self.sale_id,
            "customer_id": self.customer_id,
            "return_type": self.return_type,
            "reason": self.reason,
            "status": self.status,
            "refund_method": self.refund_method,
            "settlement_method": self.settlement_method,
            "restocking_fee_cents": self.restocking_fee_cents,
            "refund_amount_cents": self.refund_amount_cents,
            "price_difference_cents": self.price_difference_cents,
            "notes": self.notes,
            "rejection_reason": self.rejection_reason,
            "created_by": self.created_by,
            "approved_by": self.approved_by,
            "completed_by": self.completed_by,
            "rejected_by": self.rejected_by,
            "created_at": to_utc_z(self.created_at),
            "approved_at": to_utc_z(self.approved_at) if self.approved_at else None,
            "completed_at": to_utc_z(self.completed_at) if self.completed_at else None,
            "rejected_at": to_utc_z(self.rejected_at) if self.rejected_at else None,
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
            data["exchange_lines"] = [line.to_dict() for line in self.exchange_lines]
        return data


class ReturnLine(db.Model):
    """
    A returned quantity of one original sale line.

    refund_price_cents defaults to the sale line's unit price; a lower value
    models a partial refund (e.g. damaged item).
    """
    __tablename__ = "return_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_return_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_line_id = db.Column(db.Integer, db.ForeignKey("sale_lines.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    original_price_cents = db.Column(db.Integer, nullable=False)
    refund_price_cents = db.Column(db.Integer, nullable=False)

    condition_description = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_doc = db.relationship("Return", backref=db.backref("lines", lazy=True))
    sale_line = db.relationship("SaleLine", backref=db.backref("return_lines", lazy=True))
    product = db.relationship("Product")

    @property
    def line_refund_cents(self) -> int:
        return self.refund_price_cents * self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_line_id": self.sale_line_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "original_price_cents": self.original_price_cents,
            "refund_price_cents": self.refund_price_cents,
            "line_refund_cents": self.line_refund_cents,
            "condition_description": self.condition_description,
            "created_at": to_utc_z(self.created_at),
        }


class ExchangeLine(db.Model):
    """
    One exchanged quantity: original product back in, replacement out.

    sale_line_id ties the original units to the sale so they count against
    the returnable quantity like a ReturnLine does.

    price_difference_cents is the line total (not per unit). Positive means
    the customer owes the store, negative means the store owes the customer.
    """
    __tablename__ = "exchange_lines"
    __table_args__ = (
        db.CheckConstraint("quantity > 0", name="ck_exchange_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    return_id = db.Column(db.Integer, db.ForeignKey("returns.id"), nullable=False, index=True)
    sale_line_id = db.Column(db.Integer, db.ForeignKey("sale_lines.id"), nullable=False, index=True)

    original_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    replacement_product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    price_difference_cents = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    return_doc = db.relationship("Return", backref=db.backref("exchange_lines", lazy=True))
    sale_line = db.relationship("SaleLine")
    original_product = db.relationship("Product", foreign_keys=[original_product_id])
    replacement_product = db.relationship("Product", foreign_keys=[replacement_product_id])

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "return_id": self.return_id,
            "sale_line_id": self.sale_line_id,
            "original_product_id": self.original_product_id,
            "replacement_product_id": self.replacement_product_id,
            "quantity": self.quantity,
            "price_difference_cents": self.price_difference_cents,
            "created_at": to_utc_z(self.created_at),
        }
