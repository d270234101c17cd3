from __future__ import annotations

from ..extensions import db
from commerce_ledger.time_utils import to_utc_z


class Sale(db.Model):
    """
    Sale document.

    WHY immutable: a sale is created atomically together with the stock
    debits of every line. Corrections happen through a Return, never by
    editing the sale. The only later linkage is Return.sale_id.

    operation_id is the caller's idempotency key: creating a sale twice
    with the same operation_id returns the first sale.
    """
    __tablename__ = "sales"
    __table_args__ = (
        db.UniqueConstraint("document_number", name="uq_sales_docnum"),
        db.UniqueConstraint("operation_id", name="uq_sales_operation"),
        db.Index("ix_sales_customer_created", "customer_id", "created_at"),
        db.Index("ix_sales_seller_created", "seller_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    # Human-readable document number (e.g., "S-001234")
    document_number = db.Column(db.String(64), nullable=True)
    operation_id = db.Column(db.String(128), nullable=False)

    customer_id = db.Column(db.Integer, db.ForeignKey("customers.id"), nullable=True, index=True)

    # All amounts in cents
    subtotal_cents = db.Column(db.Integer, nullable=False)
    discount_type = db.Column(db.String(16), nullable=True)  # percentage, absolute
    discount_value = db.Column(db.Integer, nullable=False, default=0)  # percent or cents
    discount_cents = db.Column(db.Integer, nullable=False, default=0)
    total_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=False, index=True)

    # Audit fields supplied by the identity collaborator
    seller_id = db.Column(db.String(64), nullable=True)
    cashier_id = db.Column(db.String(64), nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    customer = db.relationship("Customer", backref=db.backref("sales", lazy=True))

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "document_number": self.document_number,
            "operation_id": self.operation_id,
            "customer_id": self.customer_id,
            "subtotal_cents": self.subtotal_cents,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "discount_cents": self.discount_cents,
            "total_cents": self.total_cents,
            "payment_method": self.payment_method,
            "seller_id": self.seller_id,
            "cashier_id": self.cashier_id,
            "created_at": to_utc_z(self.created_at),
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in sorted(self.lines, key=lambda l: l.line_number)]
        return data


class SaleLine(db.Model):
    """Individual line items on a sale document."""
    __tablename__ = "sale_lines"
    __table_args__ = (
        db.UniqueConstraint("sale_id", "line_number", name="uq_sale_lines_sale_number"),
        db.CheckConstraint("quantity > 0", name="ck_sale_lines_quantity_positive"),
        db.CheckConstraint("unit_price_cents >= 0", name="ck_sale_lines_price_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sale_id = db.Column(db.Integer, db.ForeignKey("sales.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    sale = db.relationship("Sale", backref=db.backref("lines", lazy=True))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sale_id": self.sale_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "created_at": to_utc_z(self.created_at),
        }
