# Overview: Point-of-sale checkout flow: invoice, offline record, loyalty, consignment, delivery.

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models import DeliveryOrder, Invoice, LoyaltyTransaction, OfflineTransaction, Product
from ..extensions import db
from .consignment_service import record_invoice_consignment_sales
from .delivery_service import create_delivery_order
from .errors import ServiceError
from .invoice_service import CartItem, CheckoutContext, compose_invoice
from .loyalty_service import earn_loyalty_points, get_active_programs, get_program
from .offline_service import record_offline_transaction
"""
Checkout Invariants (authoritative)

- compose_invoice is the only step that can reject a sale. Once it returns,
  money has been taken and stock deducted.
- record_offline_transaction runs next and never waits on the network. If
  the local store write fails the sale still stands: the result carries a
  warning and no offline row, and the sync worker backfills it.
- Loyalty, consignment and delivery are downstream consumers of the paid
  invoice. Their domain errors are reported as warnings and never undo the sale.
"""

logger = logging.getLogger(__name__)


@dataclass
class CheckoutResult:
    invoice: Invoice
    offline_transaction: Optional[OfflineTransaction]
    loyalty_transactions: list[LoyaltyTransaction] = field(default_factory=list)
    consignment_ids: list[int] = field(default_factory=list)
    delivery_order: Optional[DeliveryOrder] = None
    warnings: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "invoice": self.invoice.to_dict(include_items=True),
            "offline_transaction": self.offline_transaction.to_dict() if self.offline_transaction else None,
            "loyalty_transactions": [t.to_dict() for t in self.loyalty_transactions],
            "consignment_ids": list(self.consignment_ids),
            "delivery_order": self.delivery_order.to_dict() if self.delivery_order else None,
            "warnings": list(self.warnings),
        }


def _warn(result: CheckoutResult, stage: str, exc: ServiceError) -> None:
    logger.warning("checkout %s: %s step failed: %s", result.invoice.invoice_number, stage, exc)
    result.warnings.append({"stage": stage, "error": str(exc), "details": exc.details})


def checkout(
    cart: list[CartItem],
    context: CheckoutContext,
    *,
    loyalty_program_ids: Optional[list[int]] = None,
    delivery: Optional[dict] = None,
) -> CheckoutResult:
    """
    Complete a sale end to end.

    loyalty_program_ids: programs to accrue under (default: every active
    program, only when the sale has a patient).
    delivery: {zone_id, customer_name, customer_phone, delivery_address,
    distance_km?, commission_percent?} to book a home delivery.
    """
    invoice = compose_invoice(cart, context)
    result = CheckoutResult(invoice=invoice, offline_transaction=None)
    try:
        result.offline_transaction = record_offline_transaction(invoice)
    except SQLAlchemyError as exc:
        # invoice is committed; record_missing_offline_transactions backfills the row
        db.session.rollback()
        logger.warning("checkout %s: offline record failed: %s", invoice.invoice_number, exc)
        result.warnings.append({
            "stage": "offline",
            "error": "offline record failed; it will be recreated by the sync worker",
            "details": {"invoice_number": invoice.invoice_number},
        })

    if invoice.patient_id is not None:
        if loyalty_program_ids is None:
            programs = get_active_programs()
        else:
            programs = []
            for program_id in loyalty_program_ids:
                try:
                    programs.append(get_program(program_id))
                except ServiceError as exc:
                    _warn(result, "loyalty", exc)

        product_ids = {item.product_id for item in invoice.items}
        products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(product_ids)).all()}
        for program in programs:
            try:
                entry = earn_loyalty_points(invoice, program, products)
            except ServiceError as exc:
                _warn(result, "loyalty", exc)
                continue
            if entry is not None:
                result.loyalty_transactions.append(entry)

    try:
        consignments = record_invoice_consignment_sales(invoice)
        result.consignment_ids = [c.id for c in consignments]
    except ServiceError as exc:
        _warn(result, "consignment", exc)

    if delivery:
        try:
            result.delivery_order = create_delivery_order(
                invoice=invoice,
                zone_id=delivery.get("zone_id"),
                customer_name=delivery.get("customer_name"),
                customer_phone=delivery.get("customer_phone"),
                delivery_address=delivery.get("delivery_address"),
                distance_km=delivery.get("distance_km", 0),
                commission_percent=delivery.get("commission_percent"),
                actor_id=context.cashier_id,
            )
        except ServiceError as exc:
            _warn(result, "delivery", exc)

    return result
