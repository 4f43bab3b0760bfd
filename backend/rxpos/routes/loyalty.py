# Overview: Flask API routes for loyalty balances, redemption and redemption caps.

# backend/rxpos/routes/loyalty.py
"""Loyalty routes. Earning happens during checkout; redemption is explicit."""

from flask import Blueprint, current_app, jsonify, request

from ..services import invoice_service, loyalty_service
from ..services.currency_service import DualAmount
from ..services.errors import ServiceError, http_status_for
from ..validation import ValidationError, optional_int, require_int


loyalty_bp = Blueprint("loyalty", __name__, url_prefix="/api/pharmacy/loyalty")


@loyalty_bp.get("/<int:patient_id>/<int:program_id>")
def account_route(patient_id: int, program_id: int):
    try:
        account = loyalty_service.get_loyalty_account(patient_id, program_id)
        entries = loyalty_service.list_transactions(patient_id, program_id)
        return jsonify({
            "account": account.to_dict(),
            "transactions": [e.to_dict() for e in entries],
        }), 200
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)


@loyalty_bp.post("/redeem")
def redeem_route():
    """
    Body: {patient_id, program_id, points, invoice_id?}

    Returns:
        201: {transaction, value}
        422: below minimum / insufficient balance / over the invoice cap (balance untouched)
    """
    try:
        data = request.get_json(silent=True) or {}
        patient_id = require_int(data, "patient_id", minimum=1)
        program_id = require_int(data, "program_id", minimum=1)
        points = require_int(data, "points", minimum=1)
        invoice_id = optional_int(data, "invoice_id", minimum=1)

        invoice = invoice_service.get_invoice(invoice_id) if invoice_id else None
        entry = loyalty_service.redeem_loyalty_points(patient_id, program_id, points, invoice=invoice)
        program = loyalty_service.get_program(program_id)
        value = loyalty_service.calculate_redemption_value(program, points)
        return jsonify({"transaction": entry.to_dict(), "value": value.to_dict("discount")}), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Loyalty redemption failed")
        return jsonify({"error": "Internal server error"}), 500


@loyalty_bp.get("/programs/<int:program_id>/max-redeemable")
def max_redeemable_route(program_id: int):
    """Query: invoice_id, or total_usd_cents + total_local_cents."""
    try:
        program = loyalty_service.get_program(program_id)
        invoice_id = optional_int(request.args, "invoice_id", minimum=1)
        if invoice_id:
            total = loyalty_service.invoice_total(invoice_service.get_invoice(invoice_id))
        else:
            total = DualAmount(
                require_int(request.args, "total_usd_cents", minimum=0),
                require_int(request.args, "total_local_cents", minimum=0),
            )
        points = loyalty_service.calculate_max_redeemable_points(total, program)
        return jsonify({"program_id": program_id, "max_redeemable_points": points}), 200

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
