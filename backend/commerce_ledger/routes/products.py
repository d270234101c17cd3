# Overview: Flask API routes for product stock positions and movement history.

from flask import Blueprint, jsonify, request

from ..services import inventory_service
from ..validation import int_arg


products_bp = Blueprint("products", __name__, url_prefix="/api/products")


@products_bp.get("/<int:product_id>/stock")
def get_stock_route(product_id: int):
    """on_hand, reserved, available and debt for one product."""
    return jsonify(inventory_service.get_stock_summary(product_id)), 200


@products_bp.get("/<int:product_id>/movements")
def list_movements_route(product_id: int):
    movements = inventory_service.list_movements(product_id, limit=int_arg("limit", 100))
    return jsonify({
        "product_id": product_id,
        "movements": [m.to_dict() for m in movements],
    }), 200


@products_bp.get("/negative-stock")
def negative_stock_route():
    """Products that were oversold and still carry debt."""
    products = inventory_service.list_negative_stock()
    return jsonify({
        "products": [p.to_dict() for p in products],
        "total_debt": sum(p.debt for p in products),
    }), 200


@products_bp.get("/reservations")
def list_reservations_route():
    """ACTIVE reservations, optionally for one operation_id."""
    reservations = inventory_service.list_active_reservations(request.args.get("operation_id"))
    return jsonify({"reservations": [r.to_dict() for r in reservations]}), 200
