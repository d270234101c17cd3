"""
Sale Engine - atomic multi-line sales over the stock ledger

WHY: A sale touches several products. Either every line is debited or none
is. Stock is never written directly here; all stock effects go through
inventory_service.

FLOW:
1. Validate lines (quantity, price, product exists and is active, or a
   barcode placeholder is requested).
2. Reserve each product (aggregated over lines). Any InsufficientStock
   releases every reservation of the operation and names the failing line.
3. One transaction: create missing placeholder products, insert Sale +
   SaleLines, commit every reservation into a debit, and
   (payment_method=store_credit) debit the customer's credit.
   Any failure rolls back and releases the reservations.
4. Stock alerts are evaluated after commit.

operation_id is the client's retry key: repeating create_sale() with the
same operation_id returns the first Sale.
"""

from __future__ import annotations

import uuid
from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InsufficientStock, InvalidLine, NotFound
from ..models import Customer, Product, Return, ReturnLine, ExchangeLine, Sale, SaleLine
from . import inventory_service, store_credit_service
from .alert_service import publish_changes
from .concurrency import begin_write, run_with_retry


PAYMENT_METHODS = ("cash", "pix", "debit", "credit", "store_credit")
DISCOUNT_TYPES = ("percentage", "absolute")

# Returns in these states count against the returnable quantity
RETURN_COUNTED_STATUSES = ("approved", "completed")


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _normalize_lines(lines) -> list[dict]:
    if not lines:
        raise InvalidLine("A sale needs at least one line")

    normalized = []
    for index, raw in enumerate(lines, start=1):
        if not isinstance(raw, dict):
            raise InvalidLine(f"Line {index}: must be an object", details={"line_number": index})

        quantity = raw.get("quantity")
        if not _is_int(quantity) or quantity <= 0:
            raise InvalidLine(
                f"Line {index}: quantity must be a positive integer",
                details={"line_number": index, "quantity": quantity},
            )

        price = raw.get("unit_price_cents")
        if price is not None and (not _is_int(price) or price < 0):
            raise InvalidLine(
                f"Line {index}: unit_price_cents must be a non-negative integer",
                details={"line_number": index, "unit_price_cents": price},
            )

        placeholder = bool(raw.get("placeholder"))
        product_id = raw.get("product_id")
        barcode = (raw.get("barcode") or "").strip() or None

        if placeholder:
            if not barcode:
                raise InvalidLine(
                    f"Line {index}: placeholder lines need a barcode",
                    details={"line_number": index},
                )
            if price is None:
                raise InvalidLine(
                    f"Line {index}: placeholder lines need unit_price_cents",
                    details={"line_number": index},
                )
        elif not _is_int(product_id):
            raise InvalidLine(
                f"Line {index}: product_id is required",
                details={"line_number": index, "product_id": product_id},
            )

        normalized.append({
            "line_number": index,
            "product_id": product_id if not placeholder else None,
            "quantity": quantity,
            "unit_price_cents": price,
            "placeholder": placeholder,
            "barcode": barcode,
            "name": raw.get("name"),
        })
    return normalized


def _match_placeholders(lines: list[dict]) -> None:
    """Point placeholder lines at the product already registered for their barcode."""
    for line in lines:
        if line["placeholder"]:
            product = db.session.query(Product).filter_by(barcode=line["barcode"]).first()
            line["product_id"] = product.id if product else None


def _create_placeholders_locked(lines: list[dict]) -> dict[str, int]:
    """
    Create the placeholder products still missing, inside the sale's transaction.

    Returns {barcode: product_id}. A rolled-back sale leaves no product behind.
    """
    resolved = {}
    for line in lines:
        barcode = line["barcode"]
        if line["product_id"] is not None or barcode in resolved:
            continue
        product = db.session.query(Product).filter_by(barcode=barcode).first()
        if product is None:
            product = Product(
                sku=f"PLACEHOLDER-{barcode}",
                barcode=barcode,
                name=line["name"] or f"Unregistered item {barcode}",
                price_cents=line["unit_price_cents"],
                on_hand=0,
                reserved=0,
                is_active=True,
                is_placeholder=True,
            )
            db.session.add(product)
            db.session.flush()
            current_app.logger.warning(
                "Placeholder product created for barcode %s (product_id=%s)", barcode, product.id
            )
        resolved[barcode] = product.id
    return resolved


def _price_lines(lines: list[dict]) -> None:
    for line in lines:
        if line["product_id"] is None:
            # New placeholder, priced from the line itself
            line["line_total_cents"] = line["unit_price_cents"] * line["quantity"]
            continue
        product = db.session.get(Product, line["product_id"])
        if product is None:
            raise InvalidLine(
                f"Line {line['line_number']}: product not found",
                details={"line_number": line["line_number"], "product_id": line["product_id"]},
            )
        if not product.is_active:
            raise InvalidLine(
                f"Line {line['line_number']}: product is inactive",
                details={"line_number": line["line_number"], "product_id": product.id},
            )
        if line["unit_price_cents"] is None:
            if product.price_cents is None:
                raise InvalidLine(
                    f"Line {line['line_number']}: product has no price",
                    details={"line_number": line["line_number"], "product_id": product.id},
                )
            line["unit_price_cents"] = product.price_cents
        line["line_total_cents"] = line["unit_price_cents"] * line["quantity"]


def compute_discount(subtotal_cents: int, discount: dict | None) -> tuple[str | None, int, int]:
    """
    Returns (discount_type, discount_value, discount_cents).

    percentage: value is a whole percent (0..100), rounded half-up to cents.
    absolute: value is cents.
    The applied discount never exceeds the subtotal, so total >= 0.
    """
    if not discount:
        return None, 0, 0

    discount_type = discount.get("type")
    value = discount.get("value", 0)
    if discount_type not in DISCOUNT_TYPES:
        raise InvalidLine(f"Invalid discount type: {discount_type}", details={"discount_type": discount_type})
    if not _is_int(value) or value < 0:
        raise InvalidLine("Discount value must be a non-negative integer", details={"discount_value": value})

    if discount_type == "percentage":
        if value > 100:
            raise InvalidLine("Percentage discount cannot exceed 100", details={"discount_value": value})
        raw = (subtotal_cents * value + 50) // 100
    else:
        raw = value

    return discount_type, value, min(raw, subtotal_cents)


def _aggregate(lines: list[dict]) -> dict[int, dict]:
    per_product: dict[int, dict] = {}
    for line in lines:
        entry = per_product.setdefault(line["product_id"], {"quantity": 0, "line_number": line["line_number"]})
        entry["quantity"] += line["quantity"]
    return per_product


def _find_by_operation(operation_id: str) -> Sale | None:
    return db.session.query(Sale).filter_by(operation_id=operation_id).first()


def create_sale(
    customer_id: int | None,
    lines: list[dict],
    discount: dict | None,
    payment_method: str,
    actor: str,
    *,
    seller_id: str | None = None,
    operation_id: str | None = None,
    oversell: str | None = None,
) -> Sale:
    """
    Create a sale and debit stock for every line atomically.

    lines: [{"product_id", "quantity", "unit_price_cents"?}] or, for an
    unknown barcode, [{"placeholder": True, "barcode", "quantity",
    "unit_price_cents", "name"?}].
    discount: None or {"type": "percentage"|"absolute", "value": int}.
    """
    operation_id = operation_id or f"sale:{uuid.uuid4().hex}"

    existing = _find_by_operation(operation_id)
    if existing:
        return existing

    if payment_method not in PAYMENT_METHODS:
        raise InvalidLine(f"Invalid payment method: {payment_method}", details={"payment_method": payment_method})
    if not actor:
        raise InvalidLine("actor is required")
    if customer_id is not None and db.session.get(Customer, customer_id) is None:
        raise NotFound("Customer not found", details={"customer_id": customer_id})
    if payment_method == "store_credit" and customer_id is None:
        raise InvalidLine("store_credit payment requires a customer")

    normalized = _normalize_lines(lines)
    _match_placeholders(normalized)
    _price_lines(normalized)

    subtotal = sum(line["line_total_cents"] for line in normalized)
    discount_type, discount_value, discount_cents = compute_discount(subtotal, discount)
    total = subtotal - discount_cents

    policy = inventory_service.resolve_oversell(oversell)

    # Unregistered barcodes have no stock to reserve
    unregistered = [line for line in normalized if line["product_id"] is None]
    if unregistered and policy == inventory_service.OVERSELL_REJECT:
        line = unregistered[0]
        current_app.logger.warning(
            "Sale rejected: unregistered barcode on line %s (operation_id=%s)", line["line_number"], operation_id
        )
        raise InsufficientStock(
            f"Insufficient stock for line {line['line_number']}",
            details={
                "line_number": line["line_number"],
                "barcode": line["barcode"],
                "requested_quantity": line["quantity"],
                "available": 0,
            },
        )

    per_product = _aggregate([line for line in normalized if line["product_id"] is not None])

    try:
        for product_id, entry in per_product.items():
            inventory_service.reserve(product_id, entry["quantity"], operation_id, oversell=policy)
    except InsufficientStock as exc:
        inventory_service.release_operation(operation_id)
        product_id = exc.details.get("product_id")
        line_number = per_product[product_id]["line_number"] if product_id in per_product else None
        current_app.logger.warning(
            "Sale rejected: insufficient stock on line %s (operation_id=%s)", line_number, operation_id
        )
        raise InsufficientStock(
            f"Insufficient stock for line {line_number}",
            details={**exc.details, "line_number": line_number},
        ) from exc
    except Exception:
        inventory_service.release_operation(operation_id)
        raise

    def _op():
        begin_write()
        already = _find_by_operation(operation_id)
        if already:
            return already, []

        sale = Sale(
            operation_id=operation_id,
            customer_id=customer_id,
            subtotal_cents=subtotal,
            discount_type=discount_type,
            discount_value=discount_value,
            discount_cents=discount_cents,
            total_cents=total,
            payment_method=payment_method,
            seller_id=seller_id,
            cashier_id=actor,
        )
        db.session.add(sale)
        db.session.flush()
        sale.document_number = f"S-{sale.id:06d}"

        placeholder_ids = _create_placeholders_locked(normalized)

        for line in normalized:
            db.session.add(SaleLine(
                sale_id=sale.id,
                line_number=line["line_number"],
                product_id=line["product_id"] or placeholder_ids[line["barcode"]],
                quantity=line["quantity"],
                unit_price_cents=line["unit_price_cents"],
                line_total_cents=line["line_total_cents"],
            ))
        db.session.flush()

        debits = {product_id: entry["quantity"] for product_id, entry in per_product.items()}
        for line in unregistered:
            product_id = placeholder_ids[line["barcode"]]
            debits[product_id] = debits.get(product_id, 0) + line["quantity"]

        changes = []
        # Sorted lock order keeps concurrent multi-line sales deadlock-free
        for product_id in sorted(debits):
            product = inventory_service.lock_product(product_id)
            _, before = inventory_service.commit_debit_locked(
                product,
                debits[product_id],
                operation_id,
                reason="SALE",
                actor_id=actor,
                note=f"Sale {sale.document_number}",
                oversell=policy,
            )
            if before is not None:
                changes.append((product_id, before))

        if payment_method == "store_credit" and total > 0:
            store_credit_service.debit_locked(
                customer_id,
                total,
                reference=f"sale:{operation_id}",
                reason=f"Payment for sale {sale.document_number}",
                sale_id=sale.id,
                actor_id=actor,
            )

        db.session.commit()
        return sale, changes

    try:
        sale, changes = run_with_retry(_op)
    except Exception:
        inventory_service.release_operation(operation_id)
        raise

    publish_changes(changes)
    current_app.logger.info(
        "Sale %s created: total_cents=%s lines=%s payment=%s cashier=%s",
        sale.document_number, sale.total_cents, len(normalized), payment_method, actor,
    )
    return sale


def get_sale(sale_id: int) -> Sale:
    sale = db.session.get(Sale, sale_id)
    if sale is None:
        raise NotFound("Sale not found", details={"sale_id": sale_id})
    return sale


def returned_quantities_by_line(sale_id: int, *, exclude_return_id: int | None = None) -> dict[int, int]:
    """
    Quantities already returned or exchanged per sale line.

    Counts approved and completed returns only; pending returns have not
    been validated yet and rejected ones never will be.
    """
    totals: dict[int, int] = {}

    for model in (ReturnLine, ExchangeLine):
        query = (
            db.session.query(model.sale_line_id, func.coalesce(func.sum(model.quantity), 0))
            .join(Return, Return.id == model.return_id)
            .filter(
                Return.sale_id == sale_id,
                Return.status.in_(RETURN_COUNTED_STATUSES),
            )
        )
        if exclude_return_id is not None:
            query = query.filter(Return.id != exclude_return_id)
        for sale_line_id, qty in query.group_by(model.sale_line_id).all():
            totals[sale_line_id] = totals.get(sale_line_id, 0) + int(qty or 0)

    return totals


def get_returnable_quantities(sale_id: int) -> list[dict]:
    sale = get_sale(sale_id)
    returned = returned_quantities_by_line(sale.id)
    rows = []
    for line in sorted(sale.lines, key=lambda l: l.line_number):
        already = returned.get(line.id, 0)
        rows.append({
            "sale_line_id": line.id,
            "line_number": line.line_number,
            "product_id": line.product_id,
            "sold_quantity": line.quantity,
            "returned_quantity": already,
            "returnable_quantity": max(0, line.quantity - already),
            "unit_price_cents": line.unit_price_cents,
        })
    return rows


def list_sales(
    *,
    customer_id: int | None = None,
    seller_id: str | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Sale], int]:
    query = db.session.query(Sale)
    if customer_id is not None:
        query = query.filter(Sale.customer_id == customer_id)
    if seller_id:
        query = query.filter(Sale.seller_id == seller_id)
    if date_from:
        query = query.filter(Sale.created_at >= date_from)
    if date_to:
        query = query.filter(Sale.created_at <= date_to)

    total = query.count()
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))
    sales = query.order_by(Sale.id.desc()).offset(offset).limit(limit).all()
    return sales, total


def get_seller_ranking(date_from: datetime | None = None, date_to: datetime | None = None) -> list[dict]:
    """Sellers ranked by revenue (total_cents) in the period."""
    query = db.session.query(
        Sale.seller_id,
        func.count(Sale.id),
        func.coalesce(func.sum(Sale.total_cents), 0),
    ).filter(Sale.seller_id.isnot(None))
    if date_from:
        query = query.filter(Sale.created_at >= date_from)
    if date_to:
        query = query.filter(Sale.created_at <= date_to)

    rows = query.group_by(Sale.seller_id).all()
    ranking = [
        {
            "seller_id": seller_id,
            "sale_count": int(count or 0),
            "total_cents": int(total or 0),
            "average_ticket_cents": int(total or 0) // int(count) if count else 0,
        }
        for seller_id, count, total in rows
    ]
    ranking.sort(key=lambda r: (-r["total_cents"], r["seller_id"]))
    for position, row in enumerate(ranking, start=1):
        row["position"] = position
    return ranking
