# Overview: Flask API routes for sales; parses input and returns JSON responses.

# backend/commerce_ledger/routes/sales.py
"""Sales API routes"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import sales_service
from ..decorators import require_actor
from ..validation import ValidationError, get_json_body, int_arg, optional_int_arg, date_arg


sales_bp = Blueprint("sales", __name__, url_prefix="/api/sales")


@sales_bp.post("/")
@require_actor
def create_sale_route():
    """
    Create a sale and debit stock for every line atomically.

    Request body:
    {
        "customer_id": 7,  (optional; required for store_credit payment)
        "lines": [
            {"product_id": 1, "quantity": 2, "unit_price_cents": 1500},
            {"placeholder": true, "barcode": "789...", "quantity": 1, "unit_price_cents": 990}
        ],
        "discount": {"type": "percentage", "value": 10},  (optional)
        "payment_method": "cash",
        "seller_id": "seller-3",  (optional)
        "operation_id": "client-generated-key",  (optional; or Idempotency-Key header)
        "oversell": "reject"  (optional override of OVERSELL_POLICY)
    }

    Returns:
        201: Sale created (or the existing sale for a repeated operation_id)
        400: Invalid input
        404: Customer not found
        409: Insufficient stock / insufficient credit / concurrent modification
    """
    try:
        data = get_json_body()
        operation_id = data.get("operation_id") or request.headers.get("Idempotency-Key")

        sale = sales_service.create_sale(
            data.get("customer_id"),
            data.get("lines") or [],
            data.get("discount"),
            data.get("payment_method"),
            g.actor_id,
            seller_id=data.get("seller_id"),
            operation_id=operation_id,
            oversell=data.get("oversell"),
        )
        return jsonify({"sale": sale.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create sale")
        return jsonify({"error": "Internal server error"}), 500


@sales_bp.get("/")
def list_sales_route():
    """List sales, newest first. Filters: customer_id, seller_id, from, to."""
    sales, total = sales_service.list_sales(
        customer_id=optional_int_arg("customer_id"),
        seller_id=request.args.get("seller_id"),
        date_from=date_arg("from"),
        date_to=date_arg("to"),
        limit=int_arg("limit", 100),
        offset=int_arg("offset", 0, minimum=0, maximum=1_000_000),
    )
    return jsonify({
        "sales": [s.to_dict(include_lines=False) for s in sales],
        "total": total,
    }), 200


@sales_bp.get("/seller-ranking")
def seller_ranking_route():
    ranking = sales_service.get_seller_ranking(date_arg("from"), date_arg("to"))
    return jsonify({"ranking": ranking}), 200


@sales_bp.get("/<int:sale_id>")
def get_sale_route(sale_id: int):
    sale = sales_service.get_sale(sale_id)
    return jsonify({"sale": sale.to_dict()}), 200


@sales_bp.get("/<int:sale_id>/returnable")
def returnable_route(sale_id: int):
    """Per sale line: sold, already returned (approved + completed) and still returnable."""
    return jsonify({
        "sale_id": sale_id,
        "lines": sales_service.get_returnable_quantities(sale_id),
    }), 200
