# Overview: Flask API routes for FEFO stock views, expiring batches and reorder alerts.

# backend/rxpos/routes/stock.py
"""Read-only stock routes. Allocation happens only through checkout."""

from flask import Blueprint, current_app, jsonify, request

from ..services import batch_service
from ..validation import ValidationError, optional_int, require_int


stock_bp = Blueprint("stock", __name__, url_prefix="/api/pharmacy/stock")


@stock_bp.get("/<int:product_id>")
def product_stock_route(product_id: int):
    """Eligible batches for a product in consumption (FEFO) order."""
    try:
        warehouse_id = require_int(request.args, "warehouse_id", minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    batches = batch_service.get_fefo_batches(product_id, warehouse_id)
    return jsonify({
        "product_id": product_id,
        "warehouse_id": warehouse_id,
        "available_quantity": sum(b.quantity for b in batches),
        "batches": [b.to_dict() for b in batches],
    }), 200


@stock_bp.get("/expiring")
def expiring_route():
    """
    Batches expiring within `days` (default EXPIRY_WARNING_DAYS).

    Query: days?, warehouse_id?
    """
    try:
        days = optional_int(request.args, "days", minimum=0)
        if days is None:
            days = int(current_app.config.get("EXPIRY_WARNING_DAYS", 90))
        warehouse_id = optional_int(request.args, "warehouse_id", minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    batches = batch_service.get_expiring_batches(days, warehouse_id=warehouse_id)
    return jsonify({"days": days, "batches": [b.to_dict() for b in batches]}), 200


@stock_bp.get("/low")
def low_stock_route():
    try:
        warehouse_id = require_int(request.args, "warehouse_id", minimum=1)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400

    products = batch_service.get_low_stock_products(warehouse_id)
    return jsonify({"warehouse_id": warehouse_id, "products": products}), 200
