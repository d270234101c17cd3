from __future__ import annotations

from ..extensions import db
from commerce_ledger.time_utils import to_utc_z


class Product(db.Model):
    """
    Product master data plus its stock position.

    STOCK MODEL:
    - on_hand is signed. Negative on_hand means units were oversold.
    - reserved is never negative. It holds stock for in-flight sales.
    - debt and available are derived, never stored:
        debt      = max(0, -on_hand)
        available = on_hand - reserved

    on_hand/reserved are mutated ONLY by services/inventory_service.py.
    version_id is the optimistic concurrency counter: every UPDATE is
    conditional on it and bumps it.

    Products are never hard-deleted while a sale or return references them;
    is_active=False is the soft removal.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.CheckConstraint("reserved >= 0", name="ck_products_reserved_non_negative"),
        db.Index("ix_products_active_name", "is_active", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    sku = db.Column(db.String(64), nullable=False, unique=True)
    barcode = db.Column(db.String(64), nullable=True, unique=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in cents
    price_cents = db.Column(db.Integer, nullable=True)

    on_hand = db.Column(db.Integer, nullable=False, default=0)
    reserved = db.Column(db.Integer, nullable=False, default=0)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # Created by a sale that scanned an unknown barcode; needs catalog review
    is_placeholder = db.Column(db.Boolean, nullable=False, default=False, index=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    __mapper_args__ = {"version_id_col": version_id}

    @property
    def debt(self) -> int:
        return max(0, -(self.on_hand or 0))

    @property
    def available(self) -> int:
        return (self.on_hand or 0) - (self.reserved or 0)

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} on_hand={self.on_hand} reserved={self.reserved}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "barcode": self.barcode,
            "name": self.name,
            "description": self.description,
            "price_cents": self.price_cents,
            "on_hand": self.on_hand,
            "reserved": self.reserved,
            "available": self.available,
            "debt": self.debt,
            "is_active": self.is_active,
            "is_placeholder": self.is_placeholder,
            "version_id": self.version_id,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class StockReservation(db.Model):
    """
    Stock provisionally held for an in-flight operation (usually a sale).

    LIFECYCLE:
    - ACTIVE: counted in Product.reserved
    - COMMITTED: converted into a DEBIT movement
    - RELEASED: abandoned by the caller (compensating release)
    - EXPIRED: released by the lease sweeper

    One row per (operation_id, product_id).
    """
    __tablename__ = "stock_reservations"
    __table_args__ = (
        db.UniqueConstraint("operation_id", "product_id", name="uq_reservation_operation_product"),
        db.Index("ix_reservations_status_expires", "status", "expires_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    operation_id = db.Column(db.String(128), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    quantity = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default="ACTIVE", index=True)

    # Product.available right before this reservation; alert evaluation baseline
    available_before = db.Column(db.Integer, nullable=False)

    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation_id": self.operation_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "status": self.status,
            "available_before": self.available_before,
            "expires_at": to_utc_z(self.expires_at),
            "created_at": to_utc_z(self.created_at),
            "resolved_at": to_utc_z(self.resolved_at) if self.resolved_at else None,
        }


class StockMovement(db.Model):
    """
    Append-only log of every on_hand change.

    MOVEMENT TYPES:
    - DEBIT: on_hand decreased (SALE, EXCHANGE_OUT)
    - CREDIT: on_hand increased (RETURN, EXCHANGE_IN, RESTOCK)

    (product_id, operation_id, movement_type) is unique: it is the idempotency
    key of commit_debit() and credit(), so a retried call is a no-op.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "stock_movements"
    __table_args__ = (
        db.UniqueConstraint("product_id", "operation_id", "movement_type", name="uq_movement_product_operation_type"),
        db.Index("ix_movements_product_occurred", "product_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    operation_id = db.Column(db.String(128), nullable=False)

    movement_type = db.Column(db.String(16), nullable=False, index=True)  # DEBIT, CREDIT
    reason = db.Column(db.String(32), nullable=False)  # SALE, RETURN, EXCHANGE_IN, EXCHANGE_OUT, RESTOCK

    # Always positive; direction comes from movement_type
    quantity = db.Column(db.Integer, nullable=False)

    # Snapshot after applying the movement
    on_hand_after = db.Column(db.Integer, nullable=False)
    reserved_after = db.Column(db.Integer, nullable=False)

    actor_id = db.Column(db.String(64), nullable=True)
    note = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    product = db.relationship("Product", backref=db.backref("movements", lazy="dynamic"))

    @property
    def quantity_delta(self) -> int:
        return -self.quantity if self.movement_type == "DEBIT" else self.quantity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "operation_id": self.operation_id,
            "movement_type": self.movement_type,
            "reason": self.reason,
            "quantity": self.quantity,
            "quantity_delta": self.quantity_delta,
            "on_hand_after": self.on_hand_after,
            "reserved_after": self.reserved_after,
            "actor_id": self.actor_id,
            "note": self.note,
            "occurred_at": to_utc_z(self.occurred_at),
        }
