# Overview: Flask API routes for delivery orders and courier performance.

# backend/rxpos/routes/deliveries.py
"""Delivery routes. Orders are created at checkout; here they move through their status machine."""

from flask import Blueprint, current_app, jsonify, request

from ..services import delivery_service
from ..services.errors import ServiceError, http_status_for
from ..validation import ValidationError, optional_datetime, optional_int


deliveries_bp = Blueprint("deliveries", __name__, url_prefix="/api/pharmacy/deliveries")


@deliveries_bp.get("/<int:order_id>")
def get_delivery_route(order_id: int):
    try:
        order = delivery_service.get_delivery_order(order_id)
        return jsonify({"delivery_order": order.to_dict(include_notes=True)}), 200
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)


@deliveries_bp.post("/<int:order_id>/status")
def advance_status_route(order_id: int):
    """
    Body: {status, courier_id?, note?, actor_id?}

    Returns:
        200: updated order with tracking notes
        409: illegal transition (terminal order or skipped step)
    """
    try:
        data = request.get_json(silent=True) or {}
        new_status = (data.get("status") or "").strip()
        if not new_status:
            return jsonify({"error": "status required"}), 400

        order = delivery_service.advance_delivery_status(
            order_id,
            new_status,
            courier_id=optional_int(data, "courier_id", minimum=1),
            note=data.get("note"),
            actor_id=optional_int(data, "actor_id", minimum=1),
        )
        return jsonify({"delivery_order": order.to_dict(include_notes=True)}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Delivery status update failed")
        return jsonify({"error": "Internal server error"}), 500


@deliveries_bp.get("/on-time-rate")
def on_time_rate_route():
    """Query: warehouse_id?, courier_id?, since? (ISO-8601)"""
    try:
        stats = delivery_service.delivery_performance(
            warehouse_id=optional_int(request.args, "warehouse_id", minimum=1),
            courier_id=optional_int(request.args, "courier_id", minimum=1),
            since=optional_datetime(request.args, "since"),
        )
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify(stats), 200
