# backend/rxpos/routes/system.py
"""
System health endpoint.

Checks the main database, the local offline store, and the sync backlog.
A backlog with transactions awaiting manual review is 'degraded', not down:
sales keep completing locally.
"""

import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Product, Warehouse
from ..services import offline_service
from rxpos.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def _elapsed_ms(start: float) -> float:
    return round((time.time() - start) * 1000, 2)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        warehouse_count = db.session.query(Warehouse).count()
        product_count = db.session.query(Product).count()
        return {
            "status": "healthy",
            "latency_ms": _elapsed_ms(start_time),
            "details": {"warehouses": warehouse_count, "products": product_count},
        }
    except Exception:
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(start_time), "error": "Database error"}


def check_offline_store_health() -> dict:
    """Offline store reachability plus sync backlog."""
    start_time = time.time()
    try:
        summary = offline_service.get_sync_status_summary()
    except Exception:
        current_app.logger.exception("Offline store health check failed")
        db.session.rollback()
        return {"status": "unhealthy", "latency_ms": _elapsed_ms(start_time), "error": "Offline store error"}

    result = {
        "status": "healthy",
        "latency_ms": _elapsed_ms(start_time),
        "details": summary,
    }
    if summary["needs_review"]:
        result["status"] = "degraded"
        result["warning"] = f"{summary['needs_review']} transactions need manual sync review"
    if not current_app.config.get("SYNC_ENDPOINT_URL"):
        result["sync_enabled"] = False
    return result


@system_bp.get("/api/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: a store is unreachable
    """
    start_time = time.time()

    checks = {
        "database": check_database_health(),
        "offline_store": check_offline_store_health(),
    }
    statuses = [c["status"] for c in checks.values()]

    if "unhealthy" in statuses:
        overall_status, http_status = "unhealthy", 503
    elif "degraded" in statuses:
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "terminal_code": current_app.config.get("TERMINAL_CODE"),
        "timestamp": to_utc_z(utcnow()),
        "total_latency_ms": _elapsed_ms(start_time),
        "checks": checks,
    }, http_status
