# Overview: Supplier consignment stock: sales, returns, payment due and overdue tracking.

from __future__ import annotations

from datetime import date
from typing import Optional

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Batch, Consignment, ConsignmentItem, Invoice, Product, Warehouse
from ..models.consignment import CONSIGNMENT_ACTIVE, CONSIGNMENT_CANCELLED, CONSIGNMENT_COMPLETED
from rxpos.time_utils import today
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .currency_service import DualAmount, percent_of_cents
from .document_service import next_document_number
from .errors import InvalidConsignmentOperation, NotFoundError, ServiceError
from ..validation import ValidationError, coerce_int
"""
Consignment Invariants (authoritative)

- Per item: quantity_sold + quantity_returned <= quantity_consigned
  (service clamp + DB check constraint).
- Sales and returns clamp to what remains by default; with clamp=False an
  overshoot is rejected and nothing is mutated.
- total_sold_* and total_value_* are recomputed from items after every change.
- A consignment whose items are all fully sold/returned becomes 'completed'.
- Payment due = total_sold * consignment_percent / 100, per currency, half-up.
- Due date = start_date + payment_terms_days.
"""


def get_consignment(consignment_id: int) -> Consignment:
    consignment = db.session.get(Consignment, consignment_id)
    if consignment is None:
        raise NotFoundError("Consignment not found", details={"consignment_id": consignment_id})
    return consignment


def _recompute_totals(consignment: Consignment) -> None:
    value = DualAmount()
    sold = DualAmount()
    for item in consignment.items:
        value = value + DualAmount(
            item.quantity_consigned * item.unit_price_usd_cents,
            item.quantity_consigned * item.unit_price_local_cents,
        )
        sold = sold + DualAmount(
            item.quantity_sold * item.unit_price_usd_cents,
            item.quantity_sold * item.unit_price_local_cents,
        )
    consignment.total_value_usd_cents = value.usd_cents
    consignment.total_value_local_cents = value.local_cents
    consignment.total_sold_usd_cents = sold.usd_cents
    consignment.total_sold_local_cents = sold.local_cents


def _maybe_complete(consignment: Consignment) -> None:
    if consignment.items and all(item.quantity_remaining == 0 for item in consignment.items):
        consignment.status = CONSIGNMENT_COMPLETED
        consignment.end_date = today()


def _run(op):
    def _wrapped():
        try:
            result = op()
            db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            raise

    try:
        return run_with_retry(_wrapped)
    except StaleDataError as exc:
        raise InvalidConsignmentOperation("Concurrent consignment update, retry") from exc


def _item_int(raw: dict, name: str, default: int, *, product_id) -> int:
    value = raw.get(name)
    if value is None:
        return default
    try:
        return coerce_int(name, value, minimum=0)
    except ValidationError as exc:
        raise ServiceError(str(exc), details={"product_id": product_id, "field": name}) from exc


def create_consignment(
    *,
    supplier_id: int,
    supplier_name: str,
    warehouse_id: int,
    consignment_percent: int,
    items: list[dict],
    payment_terms_days: int = 30,
    start_date: Optional[date] = None,
    notes: Optional[str] = None,
) -> Consignment:
    """
    items: [{product_id, quantity, unit_cost_usd_cents, unit_cost_local_cents,
    batch_id?, unit_price_usd_cents?, unit_price_local_cents?}]; unit prices
    default to the product's catalog prices.
    """
    if not supplier_id or not supplier_name:
        raise ServiceError("supplier_id and supplier_name are required")
    if not isinstance(consignment_percent, int) or not 0 <= consignment_percent <= 100:
        raise ServiceError("consignment_percent must be between 0 and 100", details={"consignment_percent": consignment_percent})
    if not isinstance(payment_terms_days, int) or payment_terms_days < 0:
        raise ServiceError("payment_terms_days must be a non-negative integer")
    if not items:
        raise ServiceError("a consignment needs at least one item")
    if db.session.get(Warehouse, warehouse_id) is None:
        raise NotFoundError("Warehouse not found", details={"warehouse_id": warehouse_id})

    def _op():
        consignment = Consignment(
            consignment_number=next_document_number(
                warehouse_id=warehouse_id, document_type="CONSIGNMENT", prefix="CON",
            ),
            supplier_id=supplier_id,
            supplier_name=supplier_name,
            warehouse_id=warehouse_id,
            consignment_percent=consignment_percent,
            payment_terms_days=payment_terms_days,
            status=CONSIGNMENT_ACTIVE,
            start_date=start_date or today(),
            notes=notes,
        )
        db.session.add(consignment)
        db.session.flush()

        for raw in items:
            if not isinstance(raw, dict):
                raise ServiceError("each item must be an object")
            try:
                product_id = coerce_int("product_id", raw.get("product_id"), minimum=1)
            except ValidationError as exc:
                raise ServiceError(str(exc), details={"field": "product_id"}) from exc
            product = db.session.get(Product, product_id)
            if product is None:
                raise NotFoundError("Product not found", details={"product_id": product_id})
            quantity = raw.get("quantity")
            if not isinstance(quantity, int) or quantity <= 0:
                raise ServiceError("item quantity must be a positive integer", details={"product_id": product.id})

            batch = None
            if raw.get("batch_id") is not None:
                batch = db.session.get(Batch, raw["batch_id"])
                if batch is None or batch.product_id != product.id:
                    raise ServiceError("batch does not belong to product", details={"batch_id": raw["batch_id"]})

            db.session.add(ConsignmentItem(
                consignment_id=consignment.id,
                product_id=product.id,
                batch_id=batch.id if batch else None,
                product_name=product.name,
                lot_number=batch.lot_number if batch else raw.get("lot_number"),
                quantity_consigned=quantity,
                quantity_sold=0,
                quantity_returned=0,
                unit_cost_usd_cents=_item_int(raw, "unit_cost_usd_cents", 0, product_id=product.id),
                unit_cost_local_cents=_item_int(raw, "unit_cost_local_cents", 0, product_id=product.id),
                unit_price_usd_cents=_item_int(raw, "unit_price_usd_cents", product.price_usd_cents, product_id=product.id),
                unit_price_local_cents=_item_int(raw, "unit_price_local_cents", product.price_local_cents, product_id=product.id),
            ))
        db.session.flush()
        db.session.refresh(consignment)
        _recompute_totals(consignment)

        append_audit_event(
            event_type="consignment.created",
            event_category="consignment",
            entity_type="consignment",
            entity_id=consignment.id,
            warehouse_id=warehouse_id,
            payload={"supplier_id": supplier_id, "items": len(items)},
        )
        return consignment

    return _run(_op)


def _locked_items(consignment: Consignment, product_id: int, item_id: Optional[int] = None) -> list[ConsignmentItem]:
    query = db.session.query(ConsignmentItem).filter_by(consignment_id=consignment.id, product_id=product_id)
    if item_id is not None:
        query = query.filter(ConsignmentItem.id == item_id)
    return lock_for_update(query).order_by(ConsignmentItem.id.asc()).all()


def _validate_operation(
    consignment: Consignment, product_id: int, qty: int, item_id: Optional[int] = None,
) -> list[ConsignmentItem]:
    if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
        raise InvalidConsignmentOperation("quantity must be a positive integer", details={"quantity": qty})
    if consignment.status != CONSIGNMENT_ACTIVE:
        raise InvalidConsignmentOperation(
            "Consignment is not active",
            details={"consignment_id": consignment.id, "status": consignment.status},
        )
    items = _locked_items(consignment, product_id, item_id)
    if not items:
        raise InvalidConsignmentOperation(
            "Product is not part of this consignment",
            details={"consignment_id": consignment.id, "product_id": product_id, "item_id": item_id},
        )
    return items


def _distribute(
    items: list[ConsignmentItem],
    qty: int,
    *,
    clamp: bool,
    field: str,
    consignment: Consignment,
    product_id: int,
) -> int:
    """Spread qty over items in id order, never past quantity_remaining. Returns units applied."""
    remaining_total = sum(item.quantity_remaining for item in items)
    if remaining_total == 0:
        raise InvalidConsignmentOperation(
            "Nothing left on consignment for product",
            details={"consignment_id": consignment.id, "product_id": product_id},
        )
    if qty > remaining_total and not clamp:
        raise InvalidConsignmentOperation(
            "Quantity exceeds remaining consigned stock",
            details={
                "consignment_id": consignment.id,
                "product_id": product_id,
                "requested_quantity": qty,
                "remaining_quantity": remaining_total,
            },
        )

    to_apply = min(qty, remaining_total)
    left = to_apply
    for item in items:
        if left == 0:
            break
        take = min(left, item.quantity_remaining)
        if take > 0:
            setattr(item, field, getattr(item, field) + take)
            left -= take
    return to_apply


def record_consignment_sale(
    consignment_id: int,
    product_id: int,
    qty: int,
    *,
    clamp: bool = True,
    invoice_id: Optional[int] = None,
    item_id: Optional[int] = None,
) -> Consignment:
    """
    Record qty units sold; clamps to what is left unless clamp=False.

    With item_id the sale lands on that consignment line (one lot) only;
    otherwise it is spread over the product's lines in id order.
    """
    def _op():
        consignment = lock_for_update(db.session.query(Consignment).filter_by(id=consignment_id)).first()
        if consignment is None:
            raise NotFoundError("Consignment not found", details={"consignment_id": consignment_id})
        items = _validate_operation(consignment, product_id, qty, item_id)
        applied = _distribute(
            items, qty, clamp=clamp, field="quantity_sold",
            consignment=consignment, product_id=product_id,
        )
        _recompute_totals(consignment)
        _maybe_complete(consignment)
        append_audit_event(
            event_type="consignment.sale",
            event_category="consignment",
            entity_type="consignment",
            entity_id=consignment.id,
            warehouse_id=consignment.warehouse_id,
            invoice_id=invoice_id,
            payload={"product_id": product_id, "item_id": item_id, "requested": qty, "applied": applied},
        )
        return consignment

    return _run(_op)


def return_consignment_items(
    consignment_id: int,
    product_id: int,
    qty: int,
    *,
    clamp: bool = True,
    notes: Optional[str] = None,
) -> Consignment:
    """Send unsold units back to the supplier; clamps to the unsold quantity."""
    def _op():
        consignment = lock_for_update(db.session.query(Consignment).filter_by(id=consignment_id)).first()
        if consignment is None:
            raise NotFoundError("Consignment not found", details={"consignment_id": consignment_id})
        items = _validate_operation(consignment, product_id, qty)
        applied = _distribute(
            items, qty, clamp=clamp, field="quantity_returned",
            consignment=consignment, product_id=product_id,
        )
        _recompute_totals(consignment)
        _maybe_complete(consignment)
        append_audit_event(
            event_type="consignment.return",
            event_category="consignment",
            entity_type="consignment",
            entity_id=consignment.id,
            warehouse_id=consignment.warehouse_id,
            note=notes,
            payload={"product_id": product_id, "requested": qty, "applied": applied},
        )
        return consignment

    return _run(_op)


def cancel_consignment(consignment_id: int, *, notes: Optional[str] = None) -> Consignment:
    def _op():
        consignment = lock_for_update(db.session.query(Consignment).filter_by(id=consignment_id)).first()
        if consignment is None:
            raise NotFoundError("Consignment not found", details={"consignment_id": consignment_id})
        if consignment.status != CONSIGNMENT_ACTIVE:
            raise InvalidConsignmentOperation(
                "Only active consignments can be cancelled",
                details={"consignment_id": consignment_id, "status": consignment.status},
            )
        consignment.status = CONSIGNMENT_CANCELLED
        consignment.end_date = today()
        append_audit_event(
            event_type="consignment.cancelled",
            event_category="consignment",
            entity_type="consignment",
            entity_id=consignment.id,
            warehouse_id=consignment.warehouse_id,
            note=notes,
        )
        return consignment

    return _run(_op)


def calculate_payment_due(consignment: Consignment) -> DualAmount:
    """Supplier share of sold value, per currency."""
    return DualAmount(
        percent_of_cents(consignment.total_sold_usd_cents, consignment.consignment_percent),
        percent_of_cents(consignment.total_sold_local_cents, consignment.consignment_percent),
    )


def get_overdue_consignments(*, as_of: Optional[date] = None) -> list[Consignment]:
    """Active consignments whose payment due date has passed."""
    ref = as_of or today()
    active = (
        db.session.query(Consignment)
        .filter(Consignment.status == CONSIGNMENT_ACTIVE)
        .order_by(Consignment.start_date.asc(), Consignment.id.asc())
        .all()
    )
    return [c for c in active if c.payment_due_date < ref]


def get_due_soon_consignments(*, days: Optional[int] = None, as_of: Optional[date] = None) -> list[Consignment]:
    """Active consignments due within the next `days` days (inclusive), not yet overdue."""
    if days is None:
        days = int(current_app.config.get("CONSIGNMENT_DUE_SOON_DAYS", 7))
    ref = as_of or today()
    active = (
        db.session.query(Consignment)
        .filter(Consignment.status == CONSIGNMENT_ACTIVE)
        .order_by(Consignment.start_date.asc(), Consignment.id.asc())
        .all()
    )
    return [c for c in active if 0 <= (c.payment_due_date - ref).days <= days]


def record_invoice_consignment_sales(invoice: Invoice) -> list[Consignment]:
    """
    Feed consignment sales from an invoice's batch allocations: every unit
    drawn from a batch held on an active consignment counts as sold there.
    """
    per_item: dict[tuple[int, int, int], int] = {}
    for invoice_item in invoice.items:
        for allocation in invoice_item.allocations:
            consigned = (
                db.session.query(ConsignmentItem)
                .join(Consignment, Consignment.id == ConsignmentItem.consignment_id)
                .filter(
                    ConsignmentItem.batch_id == allocation.batch_id,
                    Consignment.status == CONSIGNMENT_ACTIVE,
                    Consignment.warehouse_id == invoice.warehouse_id,
                )
                .order_by(ConsignmentItem.id.asc())
                .first()
            )
            if consigned is None:
                continue
            key = (consigned.consignment_id, consigned.product_id, consigned.id)
            per_item[key] = per_item.get(key, 0) + allocation.quantity

    touched: dict[int, Consignment] = {}
    for (consignment_id, product_id, item_id), qty in sorted(per_item.items()):
        touched[consignment_id] = record_consignment_sale(
            consignment_id, product_id, qty, invoice_id=invoice.id, item_id=item_id,
        )
    return list(touched.values())
