# Overview: Flask API routes for point-of-sale checkout and invoice lookup.

# backend/rxpos/routes/pos.py
"""
Point-of-sale routes.

Checkout is the only write here. It returns 201 once the invoice is paid
and the offline record exists; loyalty/consignment/delivery problems come
back as warnings on a 201, never as a failed sale.
"""

from flask import Blueprint, current_app, jsonify, request

from ..services import checkout_service, invoice_service
from ..services.errors import ServiceError, http_status_for
from ..services.invoice_service import CartItem, CheckoutContext
from ..validation import (
    ValidationError,
    optional_datetime,
    optional_int,
    parse_cart,
    require_decimal,
    require_int,
)


pos_bp = Blueprint("pos", __name__, url_prefix="/api/pharmacy/pos")


@pos_bp.post("/checkout")
def checkout_route():
    """
    Complete a sale.

    Body:
        warehouse_id, payment_method, exchange_rate, items[{product_id, quantity,
        batch_id?, prescription_item_id?}], patient_id?, cashier_id?,
        payment_details?, loyalty_program_ids?, delivery?

    Returns:
        201: {invoice, offline_transaction, loyalty_transactions, consignment_ids,
              delivery_order, warnings}
        409: insufficient stock / allocation race (nothing was deducted)
    """
    try:
        data = request.get_json(silent=True) or {}

        payment_method = (data.get("payment_method") or "").strip()
        if not payment_method:
            return jsonify({"error": "payment_method required"}), 400

        context = CheckoutContext(
            warehouse_id=require_int(data, "warehouse_id", minimum=1),
            payment_method=payment_method,
            exchange_rate=require_decimal(data, "exchange_rate"),
            patient_id=optional_int(data, "patient_id", minimum=1),
            cashier_id=optional_int(data, "cashier_id", minimum=1),
            payment_details=data.get("payment_details") or {},
            occurred_at=optional_datetime(data, "occurred_at"),
        )
        cart = [CartItem.from_dict(item) for item in parse_cart(data.get("items"))]

        program_ids = data.get("loyalty_program_ids")
        if program_ids is not None:
            if not isinstance(program_ids, list):
                return jsonify({"error": "loyalty_program_ids must be a list"}), 400
            program_ids = [require_int({"id": p}, "id", minimum=1) for p in program_ids]

        delivery = data.get("delivery")
        if delivery is not None and not isinstance(delivery, dict):
            return jsonify({"error": "delivery must be an object"}), 400

        result = checkout_service.checkout(
            cart,
            context,
            loyalty_program_ids=program_ids,
            delivery=delivery,
        )
        return jsonify(result.to_dict()), 201

    except ValidationError as e:
        return jsonify({"error": str(e)}), 400
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
    except Exception:
        current_app.logger.exception("Checkout failed")
        return jsonify({"error": "Internal server error"}), 500


@pos_bp.get("/invoices/<int:invoice_id>")
def get_invoice_route(invoice_id: int):
    try:
        invoice = invoice_service.get_invoice(invoice_id)
        return jsonify({"invoice": invoice.to_dict(include_items=True)}), 200
    except ServiceError as e:
        return jsonify({"error": str(e), "details": e.details}), http_status_for(e)
