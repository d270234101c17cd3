"""
Return Engine - returns and exchanges against prior sales

WHY: A customer brings items back, either for a refund or for different
items. Stock and store credit must move exactly once, and no sale line can
be returned more times than it was sold.

DESIGN PRINCIPLES:
- Returns reference the original Sale; every line references a SaleLine
- Returnable quantity = sold - (approved + completed returns), per sale line
- Approval revalidates quantities while holding a lock on the sale row,
  so two approvals for the same sale are serialized
- Stock is credited through inventory_service; refunds go through
  store_credit_service; nothing here writes on_hand or balances directly
- Restocking fees are deducted from the refund, floored at zero

TYPES:
- return: ReturnLines; refund_method same_payment (recorded only) or
  store_credit (credited to the customer)
- exchange: ExchangeLines, refund_method exchange. Originals come back in,
  replacements go out, and the net price difference is settled per
  settlement_method.

LIFECYCLE:
1. create_return() -> pending (no stock or credit effect)
2. approve_return() -> approved, or reject_return() -> rejected (terminal)
3. complete_return() -> completed (terminal; repeating it is a no-op)
"""

from __future__ import annotations

from datetime import datetime

from flask import current_app
from sqlalchemy import func

from ..extensions import db
from ..errors import InvalidLine, InvalidReturnState, NotFound, OverReturn
from ..models import ExchangeLine, Product, Return, ReturnLine, Sale, SaleLine, StoreCreditTransaction
from commerce_ledger.time_utils import utcnow
from . import inventory_service, store_credit_service
from .alert_service import publish_changes
from .concurrency import begin_write, lock_for_update, run_with_retry
from .sales_service import returned_quantities_by_line


# =============================================================================
# CONSTANTS
# =============================================================================

RETURN_STATUS_PENDING = "pending"
RETURN_STATUS_APPROVED = "approved"
RETURN_STATUS_COMPLETED = "completed"
RETURN_STATUS_REJECTED = "rejected"

RETURN_TYPE_RETURN = "return"
RETURN_TYPE_EXCHANGE = "exchange"
RETURN_TYPES = (RETURN_TYPE_RETURN, RETURN_TYPE_EXCHANGE)

RETURN_REASONS = ("defective", "wrong_size", "wrong_color", "not_liked", "other")

REFUND_SAME_PAYMENT = "same_payment"
REFUND_STORE_CREDIT = "store_credit"
REFUND_EXCHANGE = "exchange"
REFUND_METHODS = (REFUND_SAME_PAYMENT, REFUND_STORE_CREDIT, REFUND_EXCHANGE)
SETTLEMENT_METHODS = (REFUND_SAME_PAYMENT, REFUND_STORE_CREDIT)


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _lock_return(return_id: int) -> Return:
    return_doc = lock_for_update(db.session.query(Return).filter_by(id=return_id)).first()
    if return_doc is None:
        raise NotFound("Return not found", details={"return_id": return_id})
    return return_doc


def _lock_sale(sale_id: int) -> Sale:
    sale = lock_for_update(db.session.query(Sale).filter_by(id=sale_id)).first()
    if sale is None:
        raise NotFound("Sale not found", details={"sale_id": sale_id})
    return sale


def _check_returnable(sale: Sale, requested: dict[int, int], *, exclude_return_id: int | None = None) -> None:
    """Raise OverReturn when any sale line would be returned beyond what was sold."""
    sold = {line.id: line for line in sale.lines}
    already = returned_quantities_by_line(sale.id, exclude_return_id=exclude_return_id)

    for sale_line_id, quantity in sorted(requested.items()):
        line = sold[sale_line_id]
        returnable = line.quantity - already.get(sale_line_id, 0)
        if quantity > returnable:
            raise OverReturn(
                f"Cannot return {quantity} of sale line {line.line_number}: only {max(0, returnable)} returnable",
                details={
                    "sale_line_id": sale_line_id,
                    "line_number": line.line_number,
                    "sold_quantity": line.quantity,
                    "already_returned": already.get(sale_line_id, 0),
                    "requested_quantity": quantity,
                },
            )


def _requested_by_line(return_doc: Return) -> dict[int, int]:
    requested: dict[int, int] = {}
    for line in list(return_doc.lines) + list(return_doc.exchange_lines):
        requested[line.sale_line_id] = requested.get(line.sale_line_id, 0) + line.quantity
    return requested


def refund_from_lines(lines, restocking_fee_cents: int) -> int:
    """Sum of refund_price x quantity minus the restocking fee, never below zero."""
    gross = sum(line.refund_price_cents * line.quantity for line in lines)
    return max(0, gross - (restocking_fee_cents or 0))


def calculate_refund_amount(return_doc: Return) -> int:
    return refund_from_lines(return_doc.lines, return_doc.restocking_fee_cents)


def exchange_net_cents(return_doc: Return) -> int:
    """Positive: the customer owes the store. Negative: the store owes the customer."""
    return (return_doc.price_difference_cents or 0) + (return_doc.restocking_fee_cents or 0)


# =============================================================================
# RETURN CREATION
# =============================================================================

def _validate_header(return_type, reason, refund_method, settlement_method, restocking_fee_cents) -> str | None:
    if return_type not in RETURN_TYPES:
        raise InvalidLine(f"Invalid return type: {return_type}", details={"return_type": return_type})
    if reason not in RETURN_REASONS:
        raise InvalidLine(f"Invalid return reason: {reason}", details={"reason": reason})
    if refund_method not in REFUND_METHODS:
        raise InvalidLine(f"Invalid refund method: {refund_method}", details={"refund_method": refund_method})
    if not _is_int(restocking_fee_cents) or restocking_fee_cents < 0:
        raise InvalidLine(
            "restocking_fee_cents must be a non-negative integer",
            details={"restocking_fee_cents": restocking_fee_cents},
        )

    if return_type == RETURN_TYPE_RETURN:
        if refund_method == REFUND_EXCHANGE:
            raise InvalidLine("Refund method 'exchange' requires return type 'exchange'")
        if settlement_method is not None:
            raise InvalidLine("settlement_method only applies to exchanges")
        return None

    if refund_method != REFUND_EXCHANGE:
        raise InvalidLine("Exchanges must use refund method 'exchange'", details={"refund_method": refund_method})
    settlement_method = settlement_method or REFUND_SAME_PAYMENT
    if settlement_method not in SETTLEMENT_METHODS:
        raise InvalidLine(
            f"Invalid settlement method: {settlement_method}",
            details={"settlement_method": settlement_method},
        )
    return settlement_method


def _sale_line_for(sale_lines: dict[int, SaleLine], raw: dict, index: int, kind: str) -> SaleLine:
    sale_line_id = raw.get("sale_line_id")
    if not _is_int(sale_line_id) or sale_line_id not in sale_lines:
        raise InvalidLine(
            f"{kind} line {index}: sale_line_id does not belong to the sale",
            details={"line_index": index, "sale_line_id": sale_line_id},
        )
    quantity = raw.get("quantity")
    if not _is_int(quantity) or quantity <= 0:
        raise InvalidLine(
            f"{kind} line {index}: quantity must be a positive integer",
            details={"line_index": index, "quantity": quantity},
        )
    return sale_lines[sale_line_id]


def _build_return_lines(sale_lines: dict[int, SaleLine], lines) -> list[ReturnLine]:
    built = []
    for index, raw in enumerate(lines, start=1):
        sale_line = _sale_line_for(sale_lines, raw, index, "Return")
        refund_price = raw.get("refund_price_cents", sale_line.unit_price_cents)
        if not _is_int(refund_price) or refund_price < 0 or refund_price > sale_line.unit_price_cents:
            raise InvalidLine(
                f"Return line {index}: refund_price_cents must be between 0 and the sold price",
                details={
                    "line_index": index,
                    "refund_price_cents": refund_price,
                    "unit_price_cents": sale_line.unit_price_cents,
                },
            )
        built.append(ReturnLine(
            sale_line_id=sale_line.id,
            product_id=sale_line.product_id,
            quantity=raw["quantity"],
            original_price_cents=sale_line.unit_price_cents,
            refund_price_cents=refund_price,
            condition_description=raw.get("condition_description"),
        ))
    return built


def _build_exchange_lines(sale_lines: dict[int, SaleLine], lines) -> list[ExchangeLine]:
    built = []
    for index, raw in enumerate(lines, start=1):
        sale_line = _sale_line_for(sale_lines, raw, index, "Exchange")
        quantity = raw["quantity"]

        replacement_id = raw.get("replacement_product_id")
        replacement = db.session.get(Product, replacement_id) if _is_int(replacement_id) else None
        if replacement is None or not replacement.is_active:
            raise InvalidLine(
                f"Exchange line {index}: replacement product not found or inactive",
                details={"line_index": index, "replacement_product_id": replacement_id},
            )

        difference = raw.get("price_difference_cents")
        if difference is None:
            if replacement.price_cents is None:
                raise InvalidLine(
                    f"Exchange line {index}: replacement has no price; give price_difference_cents",
                    details={"line_index": index, "replacement_product_id": replacement.id},
                )
            difference = (replacement.price_cents - sale_line.unit_price_cents) * quantity
        elif not _is_int(difference):
            raise InvalidLine(
                f"Exchange line {index}: price_difference_cents must be an integer",
                details={"line_index": index, "price_difference_cents": difference},
            )

        built.append(ExchangeLine(
            sale_line_id=sale_line.id,
            original_product_id=sale_line.product_id,
            replacement_product_id=replacement.id,
            quantity=quantity,
            price_difference_cents=difference,
        ))
    return built


def create_return(
    sale_id: int,
    return_type: str,
    reason: str,
    refund_method: str,
    lines: list[dict] | None,
    actor: str,
    *,
    exchange_lines: list[dict] | None = None,
    settlement_method: str | None = None,
    restocking_fee_cents: int = 0,
    notes: str | None = None,
) -> Return:
    """
    Create a pending return or exchange against a sale.

    lines (return type): [{"sale_line_id", "quantity", "refund_price_cents"?,
    "condition_description"?}]
    exchange_lines (exchange type): [{"sale_line_id", "quantity",
    "replacement_product_id", "price_difference_cents"?}]

    Raises OverReturn when a line exceeds sold - already returned.
    """
    if not actor:
        raise InvalidLine("actor is required")
    settlement_method = _validate_header(
        return_type, reason, refund_method, settlement_method, restocking_fee_cents
    )

    lines = lines or []
    exchange_lines = exchange_lines or []
    if return_type == RETURN_TYPE_RETURN:
        if not lines:
            raise InvalidLine("A return needs at least one line")
        if exchange_lines:
            raise InvalidLine("exchange_lines only apply to exchanges")
    else:
        if not exchange_lines:
            raise InvalidLine("An exchange needs at least one exchange line")
        if lines:
            raise InvalidLine("Exchanges carry exchange_lines, not return lines")

    def _op():
        begin_write()
        sale = _lock_sale(sale_id)
        if refund_method == REFUND_STORE_CREDIT or settlement_method == REFUND_STORE_CREDIT:
            if sale.customer_id is None:
                raise InvalidLine("Store credit needs a sale with a customer", details={"sale_id": sale.id})

        sale_lines = {line.id: line for line in sale.lines}
        return_lines = _build_return_lines(sale_lines, lines)
        swap_lines = _build_exchange_lines(sale_lines, exchange_lines)

        requested: dict[int, int] = {}
        for line in return_lines + swap_lines:
            requested[line.sale_line_id] = requested.get(line.sale_line_id, 0) + line.quantity
        _check_returnable(sale, requested)

        return_doc = Return(
            sale_id=sale.id,
            customer_id=sale.customer_id,
            return_type=return_type,
            reason=reason,
            status=RETURN_STATUS_PENDING,
            refund_method=refund_method,
            settlement_method=settlement_method,
            restocking_fee_cents=restocking_fee_cents,
            notes=notes,
            created_by=actor,
            created_at=utcnow(),
        )
        db.session.add(return_doc)
        db.session.flush()
        return_doc.document_number = f"R-{return_doc.id:06d}"

        for line in return_lines + swap_lines:
            line.return_id = return_doc.id
            db.session.add(line)
        db.session.flush()

        if return_type == RETURN_TYPE_RETURN:
            return_doc.refund_amount_cents = refund_from_lines(return_lines, restocking_fee_cents)
        else:
            return_doc.price_difference_cents = sum(line.price_difference_cents for line in swap_lines)
            return_doc.refund_amount_cents = max(0, -exchange_net_cents(return_doc))

        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    current_app.logger.info(
        "Return %s created for sale_id=%s type=%s by %s",
        return_doc.document_number, sale_id, return_type, actor,
    )
    return return_doc


# =============================================================================
# APPROVAL / REJECTION
# =============================================================================

def approve_return(return_id: int, actor: str) -> Return:
    """
    Approve a pending return after revalidating every line.

    Serialized per sale: the sale row is locked while the already-returned
    quantities are read, so two approvals cannot oversubscribe a line.
    """
    def _op():
        begin_write()
        return_doc = _lock_return(return_id)
        if return_doc.status != RETURN_STATUS_PENDING:
            raise InvalidReturnState(
                f"Cannot approve return with status {return_doc.status}",
                details={"return_id": return_id, "status": return_doc.status},
            )

        sale = _lock_sale(return_doc.sale_id)
        _check_returnable(sale, _requested_by_line(return_doc), exclude_return_id=return_doc.id)

        return_doc.status = RETURN_STATUS_APPROVED
        return_doc.approved_by = actor
        return_doc.approved_at = utcnow()
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    current_app.logger.info("Return %s approved by %s", return_doc.document_number, actor)
    return return_doc


def reject_return(return_id: int, actor: str, rejection_reason: str | None = None) -> Return:
    def _op():
        begin_write()
        return_doc = _lock_return(return_id)
        if return_doc.status != RETURN_STATUS_PENDING:
            raise InvalidReturnState(
                f"Cannot reject return with status {return_doc.status}",
                details={"return_id": return_id, "status": return_doc.status},
            )

        return_doc.status = RETURN_STATUS_REJECTED
        return_doc.rejected_by = actor
        return_doc.rejected_at = utcnow()
        return_doc.rejection_reason = rejection_reason
        db.session.commit()
        return return_doc

    return_doc = run_with_retry(_op)
    current_app.logger.info("Return %s rejected by %s", return_doc.document_number, actor)
    return return_doc


# =============================================================================
# COMPLETION
# =============================================================================

def _check_completable(return_doc: Return) -> bool:
    """True when the return is already completed (caller returns it unchanged)."""
    if return_doc.status == RETURN_STATUS_COMPLETED:
        return True
    if return_doc.status != RETURN_STATUS_APPROVED:
        raise InvalidReturnState(
            f"Cannot complete return with status {return_doc.status}",
            details={"return_id": return_doc.id, "status": return_doc.status},
        )
    return False


def _mark_completed(return_doc: Return, actor: str) -> None:
    return_doc.status = RETURN_STATUS_COMPLETED
    return_doc.completed_by = actor
    return_doc.completed_at = utcnow()


def _complete_plain_return(return_id: int, actor: str) -> tuple[Return, list]:
    def _op():
        begin_write()
        return_doc = _lock_return(return_id)
        if _check_completable(return_doc):
            return return_doc, []

        changes = []
        for line in sorted(return_doc.lines, key=lambda l: (l.product_id, l.id)):
            product = inventory_service.lock_product(line.product_id)
            _, before = inventory_service.credit_locked(
                product,
                line.quantity,
                f"return:{return_doc.id}:line:{line.id}",
                reason="RETURN",
                actor_id=actor,
                note=f"Return {return_doc.document_number}",
            )
            if before is not None:
                changes.append((product.id, before))

        return_doc.refund_amount_cents = calculate_refund_amount(return_doc)
        if return_doc.refund_method == REFUND_STORE_CREDIT and return_doc.refund_amount_cents > 0:
            store_credit_service.credit_locked(
                return_doc.customer_id,
                return_doc.refund_amount_cents,
                reference=f"return:{return_doc.id}",
                reason=f"Refund for return {return_doc.document_number}",
                return_id=return_doc.id,
                actor_id=actor,
            )
        # same_payment: the refund is paid out by the payment collaborator

        _mark_completed(return_doc, actor)
        db.session.commit()
        return return_doc, changes

    return run_with_retry(_op)


def _complete_exchange(return_id: int, actor: str) -> tuple[Return, list]:
    """
    Originals are credited back before the replacements are reserved, so a
    returned unit can cover its own replacement. Everything is one commit.
    """
    def _op():
        begin_write()
        doc = _lock_return(return_id)
        if _check_completable(doc):
            return doc, []

        operation_id = f"exchange:{doc.id}"
        outgoing: dict[int, int] = {}
        for line in doc.exchange_lines:
            outgoing[line.replacement_product_id] = outgoing.get(line.replacement_product_id, 0) + line.quantity

        changes = {}
        for line in sorted(doc.exchange_lines, key=lambda l: (l.original_product_id, l.id)):
            product = inventory_service.lock_product(line.original_product_id)
            _, before = inventory_service.credit_locked(
                product,
                line.quantity,
                f"exchange:{doc.id}:in:{line.id}",
                reason="EXCHANGE_IN",
                actor_id=actor,
                note=f"Exchange {doc.document_number}",
            )
            if before is not None:
                changes.setdefault(product.id, before)

        for product_id in sorted(outgoing):
            product = inventory_service.lock_product(product_id)
            inventory_service.reserve_locked(product, outgoing[product_id], operation_id)
            _, before = inventory_service.commit_debit_locked(
                product,
                outgoing[product_id],
                operation_id,
                reason="EXCHANGE_OUT",
                actor_id=actor,
                note=f"Exchange {doc.document_number}",
            )
            if before is not None:
                changes.setdefault(product_id, before)

        net = exchange_net_cents(doc)
        if doc.settlement_method == REFUND_STORE_CREDIT and net != 0:
            reference = f"exchange:{doc.id}:settlement"
            if net > 0:
                # May raise InsufficientCredit; the whole completion rolls back
                store_credit_service.debit_locked(
                    doc.customer_id,
                    net,
                    reference=reference,
                    reason=f"Price difference for exchange {doc.document_number}",
                    return_id=doc.id,
                    actor_id=actor,
                )
            else:
                store_credit_service.credit_locked(
                    doc.customer_id,
                    -net,
                    reference=reference,
                    reason=f"Price difference for exchange {doc.document_number}",
                    return_id=doc.id,
                    actor_id=actor,
                )

        _mark_completed(doc, actor)
        db.session.commit()
        return doc, list(changes.items())

    return run_with_retry(_op)


def complete_return(return_id: int, actor: str) -> Return:
    """
    Complete an approved return: credit stock, then issue the refund.

    Completing an already-completed return returns it unchanged, so a
    retried request never double-credits stock or store credit.
    """
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise NotFound("Return not found", details={"return_id": return_id})
    if _check_completable(return_doc):
        return return_doc

    if return_doc.return_type == RETURN_TYPE_EXCHANGE:
        return_doc, changes = _complete_exchange(return_id, actor)
    else:
        return_doc, changes = _complete_plain_return(return_id, actor)

    publish_changes(changes)
    current_app.logger.info(
        "Return %s completed by %s: refund_cents=%s method=%s",
        return_doc.document_number, actor, return_doc.refund_amount_cents, return_doc.refund_method,
    )
    return return_doc


# =============================================================================
# QUERIES
# =============================================================================

def get_return(return_id: int) -> Return:
    return_doc = db.session.get(Return, return_id)
    if return_doc is None:
        raise NotFound("Return not found", details={"return_id": return_id})
    return return_doc


def list_returns(
    *,
    status: str | None = None,
    return_type: str | None = None,
    customer_id: int | None = None,
    sale_id: int | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    limit: int = 100,
    offset: int = 0,
) -> tuple[list[Return], int]:
    query = db.session.query(Return)
    if status:
        query = query.filter(Return.status == status)
    if return_type:
        query = query.filter(Return.return_type == return_type)
    if customer_id is not None:
        query = query.filter(Return.customer_id == customer_id)
    if sale_id is not None:
        query = query.filter(Return.sale_id == sale_id)
    if date_from:
        query = query.filter(Return.created_at >= date_from)
    if date_to:
        query = query.filter(Return.created_at <= date_to)

    total = query.count()
    limit = max(1, min(int(limit), 500))
    offset = max(0, int(offset))
    returns = query.order_by(Return.id.desc()).offset(offset).limit(limit).all()
    return returns, total


def get_return_stats(date_from: datetime | None = None, date_to: datetime | None = None) -> dict:
    """Counts by type, reason and status; refund and store-credit totals."""
    def _filtered(query):
        if date_from:
            query = query.filter(Return.created_at >= date_from)
        if date_to:
            query = query.filter(Return.created_at <= date_to)
        return query

    def _counts(column) -> dict:
        rows = _filtered(db.session.query(column, func.count(Return.id))).group_by(column).all()
        return {key: int(count) for key, count in rows}

    total = _filtered(db.session.query(func.count(Return.id))).scalar() or 0

    refunded = _filtered(
        db.session.query(func.coalesce(func.sum(Return.refund_amount_cents), 0)).filter(
            Return.status == RETURN_STATUS_COMPLETED,
            Return.return_type == RETURN_TYPE_RETURN,
        )
    ).scalar()

    store_credit_issued = _filtered(
        db.session.query(func.coalesce(func.sum(StoreCreditTransaction.amount_cents), 0))
        .join(Return, Return.id == StoreCreditTransaction.return_id)
        .filter(StoreCreditTransaction.transaction_type == store_credit_service.TXN_CREDIT)
    ).scalar()

    return {
        "total_returns": int(total),
        "by_type": _counts(Return.return_type),
        "by_reason": _counts(Return.reason),
        "by_status": _counts(Return.status),
        "total_refunded_cents": int(refunded or 0),
        "total_store_credit_issued_cents": int(store_credit_issued or 0),
    }
