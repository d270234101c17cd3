# Overview: Flask API routes for supplier restock imports; parses input and returns JSON responses.

from flask import Blueprint, request, jsonify, g, current_app

from ..errors import LedgerError
from ..services import import_service
from ..decorators import require_actor
from ..validation import ValidationError, get_json_body, int_arg


imports_bp = Blueprint("imports", __name__, url_prefix="/api/imports")


@imports_bp.post("/")
@require_actor
def accept_import_route():
    """
    Apply a parsed supplier invoice to stock, at most once.

    Request body:
    {
        "fingerprint": "...",  (optional; computed from the fields below when omitted)
        "supplier_id": "12.345.678/0001-90",
        "document_number": "000123",
        "emission_date": "2024-05-01",
        "lines": [{"barcode": "789...", "sku": "TSHIRT-M", "name": "T-shirt M", "quantity": 12}]
    }

    Returns:
        201: Import accepted and stock credited
        400: Invalid input
        409: Duplicate import (nothing changed)
    """
    try:
        data = get_json_body()
        lines = data.get("lines") or []
        fingerprint = data.get("fingerprint") or import_service.compute_fingerprint(
            data.get("supplier_id"),
            data.get("document_number"),
            data.get("emission_date"),
            lines,
        )

        record = import_service.accept(
            fingerprint,
            lines,
            supplier_id=data.get("supplier_id"),
            document_number=data.get("document_number"),
            emission_date=data.get("emission_date"),
            actor_id=g.actor_id,
        )
        return jsonify({"import": record.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except LedgerError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to accept import")
        return jsonify({"error": "Internal server error"}), 500


@imports_bp.get("/")
def list_imports_route():
    records = import_service.list_imports(
        supplier_id=request.args.get("supplier_id"),
        limit=int_arg("limit", 100),
    )
    return jsonify({"imports": [r.to_dict() for r in records]}), 200


@imports_bp.get("/<string:fingerprint>")
def get_import_route(fingerprint: str):
    return jsonify({"import": import_service.get_import(fingerprint).to_dict()}), 200
