# Overview: Stock ledger operations; the only code that mutates Product.on_hand / Product.reserved.

# backend/commerce_ledger/services/inventory_service.py

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app

from ..extensions import db
from ..errors import InsufficientStock, InvalidLine, NotFound
from ..models import Product, StockMovement, StockReservation
from commerce_ledger.time_utils import utcnow
from .alert_service import publish_changes
from .concurrency import begin_write, lock_for_update, run_with_retry
"""
Stock Ledger Invariants (authoritative)

Stock model:
- on_hand is signed; negative on_hand is debt (oversold units).
- reserved >= 0 always; available = on_hand - reserved; debt = max(0, -on_hand).
- A credit raises on_hand, so outstanding debt is paid down before any unit
  becomes available again.

Oversell policy:
- "reject": reserve/debit fails with InsufficientStock when available < quantity.
- "allow": reserve/debit always succeeds; on_hand may go negative.
- Default comes from OVERSELL_POLICY; every operation accepts an override.

Reservation lifecycle:
- reserve() -> ACTIVE, counted in Product.reserved
- commit_debit() -> COMMITTED (reserved decremented, on_hand decremented)
- release_reservation()/release_operation() -> RELEASED
- sweep_expired_reservations() -> EXPIRED once the lease ran out

Idempotency:
- reserve(): one row per (operation_id, product_id); a repeat returns it.
- commit_debit()/credit(): one StockMovement per (product_id, operation_id,
  movement_type); a repeat is a no-op that returns the existing movement.

Concurrency:
- Every mutation locks the product row (FOR UPDATE; BEGIN IMMEDIATE on
  SQLite) and writes through version_id. Conflicts are retried by
  run_with_retry() and surface as ConcurrentModification.

The *_locked functions flush but never commit. They are the building
blocks that sale/return/import transactions compose under one commit.
"""


OVERSELL_ALLOW = "allow"
OVERSELL_REJECT = "reject"
OVERSELL_POLICIES = (OVERSELL_ALLOW, OVERSELL_REJECT)

RESERVATION_ACTIVE = "ACTIVE"
RESERVATION_COMMITTED = "COMMITTED"
RESERVATION_RELEASED = "RELEASED"
RESERVATION_EXPIRED = "EXPIRED"

MOVEMENT_DEBIT = "DEBIT"
MOVEMENT_CREDIT = "CREDIT"

DEBIT_REASONS = ("SALE", "EXCHANGE_OUT")
CREDIT_REASONS = ("RETURN", "EXCHANGE_IN", "RESTOCK")


def resolve_oversell(oversell: str | None) -> str:
    policy = (oversell or current_app.config.get("OVERSELL_POLICY") or OVERSELL_ALLOW).lower()
    if policy not in OVERSELL_POLICIES:
        raise InvalidLine(f"Unknown oversell policy: {policy}", details={"oversell": policy})
    return policy


def _validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidLine("quantity must be a positive integer", details={"quantity": quantity})
    return quantity


def lock_product(product_id: int) -> Product:
    """Load and lock one product row for the current transaction."""
    product = lock_for_update(db.session.query(Product).filter_by(id=product_id)).first()
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    return product


def _find_reservation(product_id: int, operation_id: str) -> StockReservation | None:
    return db.session.query(StockReservation).filter_by(
        operation_id=operation_id,
        product_id=product_id,
    ).first()


def _find_movement(product_id: int, operation_id: str, movement_type: str) -> StockMovement | None:
    return db.session.query(StockMovement).filter_by(
        product_id=product_id,
        operation_id=operation_id,
        movement_type=movement_type,
    ).first()


# =============================================================================
# Locked building blocks (flush, never commit)
# =============================================================================

def reserve_locked(
    product: Product,
    quantity: int,
    operation_id: str,
    *,
    oversell: str | None = None,
    lease_seconds: int | None = None,
) -> StockReservation:
    quantity = _validate_quantity(quantity)
    policy = resolve_oversell(oversell)
    if lease_seconds is None:
        lease_seconds = int(current_app.config.get("RESERVATION_LEASE_SECONDS", 900))

    reservation = _find_reservation(product.id, operation_id)
    if reservation and reservation.status in (RESERVATION_ACTIVE, RESERVATION_COMMITTED):
        return reservation

    if policy == OVERSELL_REJECT and product.available < quantity:
        raise InsufficientStock(
            "Insufficient stock",
            details={
                "product_id": product.id,
                "requested_quantity": quantity,
                "available": product.available,
            },
        )

    now = utcnow()
    available_before = product.available

    if reservation is None:
        reservation = StockReservation(operation_id=operation_id, product_id=product.id)
        db.session.add(reservation)

    # A released/expired reservation is re-armed so a retried operation can proceed
    reservation.quantity = quantity
    reservation.status = RESERVATION_ACTIVE
    reservation.available_before = available_before
    reservation.expires_at = now + timedelta(seconds=lease_seconds)
    reservation.resolved_at = None

    product.reserved = product.reserved + quantity
    db.session.flush()
    return reservation


def commit_debit_locked(
    product: Product,
    quantity: int,
    operation_id: str,
    *,
    reason: str = "SALE",
    actor_id: str | None = None,
    note: str | None = None,
    oversell: str | None = None,
) -> tuple[StockMovement, int | None]:
    """
    Debit on_hand for an operation, consuming its reservation when present.

    Returns (movement, available_before). available_before is None when the
    debit had already been applied (idempotent repeat).
    """
    quantity = _validate_quantity(quantity)
    if reason not in DEBIT_REASONS:
        raise InvalidLine(f"Invalid debit reason: {reason}", details={"reason": reason})

    existing = _find_movement(product.id, operation_id, MOVEMENT_DEBIT)
    if existing:
        return existing, None

    policy = resolve_oversell(oversell)
    reservation = _find_reservation(product.id, operation_id)
    if reservation is not None and reservation.status != RESERVATION_ACTIVE:
        reservation = None

    if reservation is not None:
        available_before = reservation.available_before
        covered = reservation.quantity
    else:
        available_before = product.available
        covered = 0

    if policy == OVERSELL_REJECT and quantity > covered and product.available + covered < quantity:
        raise InsufficientStock(
            "Insufficient stock",
            details={
                "product_id": product.id,
                "requested_quantity": quantity,
                "available": product.available + covered,
            },
        )

    now = utcnow()
    if reservation is not None:
        product.reserved = product.reserved - covered
        reservation.status = RESERVATION_COMMITTED
        reservation.resolved_at = now

    product.on_hand = product.on_hand - quantity

    movement = StockMovement(
        product_id=product.id,
        operation_id=operation_id,
        movement_type=MOVEMENT_DEBIT,
        reason=reason,
        quantity=quantity,
        on_hand_after=product.on_hand,
        reserved_after=product.reserved,
        actor_id=actor_id,
        note=note,
        occurred_at=now,
    )
    db.session.add(movement)
    db.session.flush()
    return movement, available_before


def credit_locked(
    product: Product,
    quantity: int,
    operation_id: str,
    *,
    reason: str = "RESTOCK",
    actor_id: str | None = None,
    note: str | None = None,
) -> tuple[StockMovement, int | None]:
    quantity = _validate_quantity(quantity)
    if reason not in CREDIT_REASONS:
        raise InvalidLine(f"Invalid credit reason: {reason}", details={"reason": reason})

    existing = _find_movement(product.id, operation_id, MOVEMENT_CREDIT)
    if existing:
        return existing, None

    available_before = product.available
    product.on_hand = product.on_hand + quantity

    movement = StockMovement(
        product_id=product.id,
        operation_id=operation_id,
        movement_type=MOVEMENT_CREDIT,
        reason=reason,
        quantity=quantity,
        on_hand_after=product.on_hand,
        reserved_after=product.reserved,
        actor_id=actor_id,
        note=note,
        occurred_at=utcnow(),
    )
    db.session.add(movement)
    db.session.flush()
    return movement, available_before


def release_locked(
    product: Product,
    operation_id: str,
    *,
    quantity: int | None = None,
    status: str = RESERVATION_RELEASED,
) -> StockReservation | None:
    """Release (fully, or partially when quantity is given) an ACTIVE reservation."""
    reservation = _find_reservation(product.id, operation_id)
    if reservation is None or reservation.status != RESERVATION_ACTIVE:
        return None

    if quantity is not None:
        quantity = _validate_quantity(quantity)

    if quantity is not None and quantity < reservation.quantity:
        reservation.quantity = reservation.quantity - quantity
        product.reserved = product.reserved - quantity
    else:
        product.reserved = product.reserved - reservation.quantity
        reservation.status = status
        reservation.resolved_at = utcnow()

    db.session.flush()
    return reservation


# =============================================================================
# Public operations (own transaction, retried)
# =============================================================================

def reserve(
    product_id: int,
    quantity: int,
    operation_id: str,
    *,
    oversell: str | None = None,
    lease_seconds: int | None = None,
) -> StockReservation:
    """
    Hold stock for an in-flight operation.

    Reject mode raises InsufficientStock when available < quantity.
    Allow mode always succeeds (the shortfall becomes debt on commit).
    """
    def _op():
        begin_write()
        product = lock_product(product_id)
        reservation = reserve_locked(
            product,
            quantity,
            operation_id,
            oversell=oversell,
            lease_seconds=lease_seconds,
        )
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def commit_debit(
    product_id: int,
    quantity: int,
    operation_id: str,
    *,
    reason: str = "SALE",
    actor_id: str | None = None,
    note: str | None = None,
    oversell: str | None = None,
) -> StockMovement:
    def _op():
        begin_write()
        product = lock_product(product_id)
        movement, before = commit_debit_locked(
            product,
            quantity,
            operation_id,
            reason=reason,
            actor_id=actor_id,
            note=note,
            oversell=oversell,
        )
        db.session.commit()
        return movement, before

    movement, before = run_with_retry(_op)
    if before is not None:
        publish_changes([(product_id, before)])
    return movement


def credit(
    product_id: int,
    quantity: int,
    operation_id: str,
    *,
    reason: str = "RESTOCK",
    actor_id: str | None = None,
    note: str | None = None,
) -> StockMovement:
    def _op():
        begin_write()
        product = lock_product(product_id)
        movement, before = credit_locked(
            product,
            quantity,
            operation_id,
            reason=reason,
            actor_id=actor_id,
            note=note,
        )
        db.session.commit()
        return movement, before

    movement, before = run_with_retry(_op)
    if before is not None:
        publish_changes([(product_id, before)])
    return movement


def release_reservation(product_id: int, quantity: int | None, operation_id: str) -> StockReservation | None:
    """Release an ACTIVE reservation. No-op (returns None) when nothing is active."""
    def _op():
        begin_write()
        product = lock_product(product_id)
        reservation = release_locked(product, operation_id, quantity=quantity)
        db.session.commit()
        return reservation

    return run_with_retry(_op)


def _release_many(reservations: list[StockReservation], status: str) -> int:
    released = 0
    # Lock products in id order so two releasers never wait on each other
    for reservation in sorted(reservations, key=lambda r: (r.product_id, r.id)):
        product = lock_product(reservation.product_id)
        if release_locked(product, reservation.operation_id, status=status):
            released += 1
    return released


def release_operation(operation_id: str) -> int:
    """
    Release every ACTIVE reservation of an operation (compensating action).

    Returns the number of reservations released.
    """
    def _op():
        begin_write()
        reservations = db.session.query(StockReservation).filter_by(
            operation_id=operation_id,
            status=RESERVATION_ACTIVE,
        ).all()
        released = _release_many(reservations, RESERVATION_RELEASED)
        db.session.commit()
        return released

    return run_with_retry(_op)


def sweep_expired_reservations(now: datetime | None = None) -> int:
    """
    Expire ACTIVE reservations whose lease ran out.

    Called by the background sweeper and by `flask ledger sweep-reservations`.
    """
    now = now or utcnow()

    def _op():
        begin_write()
        reservations = db.session.query(StockReservation).filter(
            StockReservation.status == RESERVATION_ACTIVE,
            StockReservation.expires_at <= now,
        ).all()
        expired = _release_many(reservations, RESERVATION_EXPIRED)
        db.session.commit()
        return expired

    expired = run_with_retry(_op)
    if expired:
        current_app.logger.info("Expired %s stale stock reservations", expired)
    return expired


# =============================================================================
# Queries
# =============================================================================

def get_stock_summary(product_id: int) -> dict:
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    return {
        "product_id": product.id,
        "sku": product.sku,
        "on_hand": product.on_hand,
        "reserved": product.reserved,
        "available": product.available,
        "debt": product.debt,
        "version_id": product.version_id,
    }


def list_movements(product_id: int, limit: int = 100) -> list[StockMovement]:
    if db.session.get(Product, product_id) is None:
        raise NotFound("Product not found", details={"product_id": product_id})
    limit = max(1, min(int(limit), 500))
    return (
        db.session.query(StockMovement)
        .filter_by(product_id=product_id)
        .order_by(StockMovement.occurred_at.desc(), StockMovement.id.desc())
        .limit(limit)
        .all()
    )


def list_negative_stock() -> list[Product]:
    """Products currently carrying debt (on_hand < 0), worst first."""
    return (
        db.session.query(Product)
        .filter(Product.on_hand < 0)
        .order_by(Product.on_hand.asc(), Product.id.asc())
        .all()
    )


def list_active_reservations(operation_id: str | None = None) -> list[StockReservation]:
    query = db.session.query(StockReservation).filter_by(status=RESERVATION_ACTIVE)
    if operation_id:
        query = query.filter_by(operation_id=operation_id)
    return query.order_by(StockReservation.id.asc()).all()
