# backend/commerce_ledger/routes/system.py
"""
System health endpoint.

Reports database connectivity, the ledger's outstanding work (active
reservations, products in debt) and the background sweeper state.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Product, StockReservation
from ..services import maintenance_service
from commerce_ledger.time_utils import utcnow

system_bp = Blueprint("system", __name__, url_prefix="/api/system")


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        product_count = db.session.query(Product).count()
        active_reservations = db.session.query(StockReservation).filter_by(status="ACTIVE").count()
        expired_pending = db.session.query(StockReservation).filter(
            StockReservation.status == "ACTIVE",
            StockReservation.expires_at < utcnow(),
        ).count()
        products_in_debt = db.session.query(Product).filter(Product.on_hand < 0).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "products": product_count,
                "active_reservations": active_reservations,
                "expired_pending_sweep": expired_pending,
                "products_in_debt": products_in_debt,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    """
    Health check endpoint.

    Returns:
    - 200: Database reachable
    - 503: Database unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    http_status = 503 if database_health["status"] == "unhealthy" else 200

    response = {
        "status": database_health["status"],
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "reservation_sweeper": maintenance_service.get_sweeper_status(),
        },
        "oversell_policy": current_app.config.get("OVERSELL_POLICY"),
    }

    return response, http_status
