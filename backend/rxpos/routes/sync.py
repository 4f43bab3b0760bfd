# Overview: Flask API routes for offline transaction sync status and operator actions.

# backend/rxpos/routes/sync.py
"""
Offline sync routes.

POST /run pushes whatever is eligible right now and returns the summary;
transactions that fail stay pending and are reported, never raised.
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import offline_service, sync_service
from ..services.errors import ServiceError, http_status_for
from ..validation import ValidationError, optional_int


sync_bp = Blueprint("sync", __name__, url_prefix="/api/pharmacy/sync")


@sync_bp.get("/status")
def sync_status_route():
    return jsonify(offline_service.get_sync_status_summary()), 200


@sync_bp.get("/needs-review")
def needs_review_route():
    rows = offline_service.get_needs_review_transactions()
    return jsonify({"transactions": [tx.to_dict() for tx in rows]}), 200


@sync_bp.get("/synced")
def synced_route():
    """Most recently synced transactions. Query: limit? (default 100)"""
    try:
        limit = optional_int(request.args, "limit", minimum=1) or 100
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    rows = offline_service.get_synced_transactions(limit=limit)
    return jsonify({"transactions": [tx.to_dict() for tx in rows]}), 200


@sync_bp.post("/run")
def run_sync_route():
    """
    Body (optional): {max_workers?, limit?}

    Returns:
        200: {synced, failed, skipped, errors[]}
    """
    try:
        data = request.get_json(silent=True) or {}
        summary = sync_service.sync_all_pending(
            max_workers=optional_int(data, "max_workers", minimum=1),
            limit=optional_int(data, "limit", minimum=1),
        )
        return jsonify(summary.to_dict()), 200
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Sync run failed")
        return jsonify({"error": "Internal server error"}), 500


@sync_bp.post("/<int:transaction_id>/retry")
def retry_route(transaction_id: int):
    """Manual retry: ignores backoff and the manual-review threshold."""
    try:
        tx = sync_service.sync_transaction(transaction_id)
        return jsonify({"transaction": tx.to_dict()}), 200
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Sync retry failed")
        return jsonify({"error": "Internal server error"}), 500
