# Overview: Flask API routes for customer store-credit balances and adjustments.

from flask import Blueprint, jsonify, g, current_app

from ..errors import LedgerError
from ..services import store_credit_service
from ..decorators import require_actor
from ..validation import ValidationError, get_json_body, coerce_int, int_arg


store_credit_bp = Blueprint("store_credit", __name__, url_prefix="/api/customers")


@store_credit_bp.get("/<int:customer_id>/store-credit")
def get_store_credit_route(customer_id: int):
    """Balance summary plus the most recent transactions."""
    summary = store_credit_service.get_account_summary(customer_id)
    transactions = store_credit_service.list_transactions(customer_id, limit=int_arg("limit", 50))
    summary["transactions"] = [t.to_dict() for t in transactions]
    return jsonify(summary), 200


def _apply(customer_id: int, operation):
    """
    Request body:
    {
        "amount_cents": 5000,
        "reference": "manual-2024-001",  (optional; makes the call idempotent)
        "reason": "Goodwill"  (optional)
    }
    """
    try:
        data = get_json_body()
        amount_cents = coerce_int(data.get("amount_cents"), "amount_cents")
        txn = operation(
            customer_id,
            amount_cents,
            store_credit_service.check_caller_reference(data.get("reference")),
            reason=data.get("reason"),
            actor_id=g.actor_id,
        )
        return jsonify({
            "transaction": txn.to_dict(),
            "balance_cents": store_credit_service.get_balance(customer_id),
        }), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to apply store credit transaction")
        return jsonify({"error": "Internal server error"}), 500


@store_credit_bp.post("/<int:customer_id>/store-credit/credit")
@require_actor
def credit_route(customer_id: int):
    return _apply(customer_id, store_credit_service.credit)


@store_credit_bp.post("/<int:customer_id>/store-credit/debit")
@require_actor
def debit_route(customer_id: int):
    return _apply(customer_id, store_credit_service.debit)
