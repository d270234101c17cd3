# Overview: Flask API routes for returns and exchanges; parses input and returns JSON responses.

# backend/commerce_ledger/routes/returns.py
"""
Return Processing API Routes

DESIGN:
- Create returns/exchanges referencing the original sale (status: pending)
- Approve or reject pending returns
- Complete approved returns to restore stock and issue the refund
- Role policy lives in the identity gateway; every mutation records g.actor_id
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import return_service
from ..decorators import require_actor
from ..validation import ValidationError, get_json_body, require_fields, coerce_int, int_arg, optional_int_arg, date_arg


returns_bp = Blueprint("returns", __name__, url_prefix="/api/returns")


def _ledger_error(e: LedgerError):
    current_app.logger.warning("Return operation rejected: %s (%s)", e.message, e.code)
    return jsonify(e.to_dict()), e.status_code


# =============================================================================
# RETURN CREATION
# =============================================================================

@returns_bp.post("/")
@require_actor
def create_return_route():
    """
    Create a new return or exchange (status: pending).

    Request body:
    {
        "sale_id": 123,
        "return_type": "return",  (return | exchange)
        "reason": "defective",  (defective | wrong_size | wrong_color | not_liked | other)
        "refund_method": "store_credit",  (same_payment | store_credit | exchange)
        "lines": [{"sale_line_id": 5, "quantity": 1, "refund_price_cents": 4000}],
        "exchange_lines": [{"sale_line_id": 5, "quantity": 1, "replacement_product_id": 9}],
        "settlement_method": "store_credit",  (exchanges only, optional)
        "restocking_fee_cents": 500,  (optional, default: 0)
        "notes": "..."  (optional)
    }

    Returns:
        201: Return created with pending status
        400: Invalid input
        404: Sale not found
        409: Over-return
    """
    try:
        data = get_json_body()
        require_fields(data, "sale_id", "return_type", "reason", "refund_method")

        return_doc = return_service.create_return(
            coerce_int(data.get("sale_id"), "sale_id"),
            data.get("return_type"),
            data.get("reason"),
            data.get("refund_method"),
            data.get("lines"),
            g.actor_id,
            exchange_lines=data.get("exchange_lines"),
            settlement_method=data.get("settlement_method"),
            restocking_fee_cents=coerce_int(data.get("restocking_fee_cents", 0), "restocking_fee_cents"),
            notes=data.get("notes"),
        )
        return jsonify({"return": return_doc.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to create return")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# WORKFLOW
# =============================================================================

@returns_bp.post("/<int:return_id>/approve")
@require_actor
def approve_return_route(return_id: int):
    try:
        return_doc = return_service.approve_return(return_id, g.actor_id)
        return jsonify({"return": return_doc.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to approve return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/reject")
@require_actor
def reject_return_route(return_id: int):
    """Request body (optional): {"rejection_reason": "Outside return window"}"""
    try:
        data = request.get_json(silent=True) or {}
        return_doc = return_service.reject_return(return_id, g.actor_id, data.get("rejection_reason"))
        return jsonify({"return": return_doc.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to reject return")
        return jsonify({"error": "Internal server error"}), 500


@returns_bp.post("/<int:return_id>/complete")
@require_actor
def complete_return_route(return_id: int):
    """
    Complete an approved return: credit stock, then refund.

    Safe to retry: a completed return is returned unchanged.
    """
    try:
        return_doc = return_service.complete_return(return_id, g.actor_id)
        return jsonify({"return": return_doc.to_dict()}), 200
    except LedgerError as e:
        return _ledger_error(e)
    except Exception:
        current_app.logger.exception("Failed to complete return")
        return jsonify({"error": "Internal server error"}), 500


# =============================================================================
# QUERIES
# =============================================================================

@returns_bp.get("/")
def list_returns_route():
    returns, total = return_service.list_returns(
        status=request.args.get("status"),
        return_type=request.args.get("type"),
        customer_id=optional_int_arg("customer_id"),
        sale_id=optional_int_arg("sale_id"),
        date_from=date_arg("from"),
        date_to=date_arg("to"),
        limit=int_arg("limit", 100),
        offset=int_arg("offset", 0, minimum=0, maximum=1_000_000),
    )
    return jsonify({
        "returns": [r.to_dict(include_lines=False) for r in returns],
        "total": total,
    }), 200


@returns_bp.get("/stats")
def return_stats_route():
    return jsonify(return_service.get_return_stats(date_arg("from"), date_arg("to"))), 200


@returns_bp.get("/<int:return_id>")
def get_return_route(return_id: int):
    return_doc = return_service.get_return(return_id)
    return jsonify({"return": return_doc.to_dict()}), 200
