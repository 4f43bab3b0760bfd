# Overview: Flask API routes for supplier consignments.

# backend/rxpos/routes/consignments.py
"""
Consignment routes.

Sales and returns clamp to what remains unless the body sets "clamp": false,
in which case an overshoot is rejected with 422 and nothing changes.
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import consignment_service
from ..services.errors import ServiceError, http_status_for
from ..validation import ValidationError, optional_date, optional_int, require_int


consignments_bp = Blueprint("consignments", __name__, url_prefix="/api/pharmacy/consignments")


def _consignment_response(consignment, status: int = 200):
    due = consignment_service.calculate_payment_due(consignment)
    data = consignment.to_dict()
    data.update(due.to_dict("payment_due"))
    return jsonify({"consignment": data}), status


@consignments_bp.post("/")
def create_consignment_route():
    """
    Body: {supplier_id, supplier_name, warehouse_id, consignment_percent,
           payment_terms_days?, start_date?, notes?, items[...]}
    """
    try:
        data = request.get_json(silent=True) or {}
        items = data.get("items")
        if not isinstance(items, list) or not items:
            return jsonify({"error": "items must be a non-empty list"}), 400
        terms = optional_int(data, "payment_terms_days", minimum=0)

        consignment = consignment_service.create_consignment(
            supplier_id=require_int(data, "supplier_id", minimum=1),
            supplier_name=(data.get("supplier_name") or "").strip(),
            warehouse_id=require_int(data, "warehouse_id", minimum=1),
            consignment_percent=require_int(data, "consignment_percent", minimum=0),
            payment_terms_days=30 if terms is None else terms,
            start_date=optional_date(data, "start_date"),
            notes=data.get("notes"),
            items=items,
        )
        return _consignment_response(consignment, 201)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Failed to create consignment")
        return jsonify({"error": "Internal server error"}), 500


def _movement(consignment_id: int, operation):
    try:
        data = request.get_json(silent=True) or {}
        product_id = require_int(data, "product_id", minimum=1)
        quantity = require_int(data, "quantity")
        clamp = data.get("clamp", True)
        if not isinstance(clamp, bool):
            return jsonify({"error": "clamp must be a boolean"}), 400

        consignment = operation(consignment_id, product_id, quantity, clamp=clamp)
        return _consignment_response(consignment)

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Consignment update failed")
        return jsonify({"error": "Internal server error"}), 500


@consignments_bp.post("/<int:consignment_id>/sales")
def record_sale_route(consignment_id: int):
    """Body: {product_id, quantity, clamp?}"""
    return _movement(consignment_id, consignment_service.record_consignment_sale)


@consignments_bp.post("/<int:consignment_id>/returns")
def return_items_route(consignment_id: int):
    """Body: {product_id, quantity, clamp?}"""
    return _movement(consignment_id, consignment_service.return_consignment_items)


@consignments_bp.get("/<int:consignment_id>/payment-due")
def payment_due_route(consignment_id: int):
    try:
        consignment = consignment_service.get_consignment(consignment_id)
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)

    due = consignment_service.calculate_payment_due(consignment)
    data = {
        "consignment_id": consignment.id,
        "consignment_percent": consignment.consignment_percent,
        "payment_due_date": consignment.payment_due_date.isoformat(),
    }
    data.update(due.to_dict("payment_due"))
    return jsonify(data), 200


@consignments_bp.get("/overdue")
def overdue_route():
    rows = consignment_service.get_overdue_consignments()
    return jsonify({"consignments": [c.to_dict(include_items=False) for c in rows]}), 200


@consignments_bp.get("/due-soon")
def due_soon_route():
    try:
        days = optional_int(request.args, "days", minimum=0)
    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    rows = consignment_service.get_due_soon_consignments(days=days)
    return jsonify({"consignments": [c.to_dict(include_items=False) for c in rows]}), 200
