# Overview: Turns a cart into a paid invoice with FEFO stock deductions in one transaction.

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Batch, Invoice, InvoiceItem, InvoiceItemAllocation, Product, Warehouse
from ..models.catalog import BATCH_ZONE_AVAILABLE
from rxpos.time_utils import utcnow, to_utc_naive
from .audit_service import append_audit_event
from .batch_service import allocate_locked, get_available_quantity, stock_key
from .concurrency import begin_immediate_if_sqlite, run_with_retry, stock_locks
from .currency_service import LineTotals, calculate_line_totals, parse_exchange_rate, sum_line_totals
from .document_service import next_document_number
from .errors import AllocationRaceError, InsufficientStockError, InvoiceError, NotFoundError
"""
Invoice Composition Invariants (authoritative)

- One DB transaction covers: invoice number, Invoice, InvoiceItems, batch
  deductions, allocation rows, audit event. Any failure rolls all of it back.
- Stock is checked per product (sum of cart lines) before any deduction.
- Line prices, names, and tax flags are snapshots of the Product at sale time.
- Invoice totals are exact sums of line totals, per currency.
- Lines pinned to a pre-reserved batch are allocated first, then FEFO lines.
"""

INVOICE_DOCUMENT_TYPE = "INVOICE"
INVOICE_PREFIX = "FAC"


@dataclass
class CartItem:
    product_id: int
    quantity: int
    batch_id: int | None = None
    prescription_item_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "CartItem":
        return cls(
            product_id=data.get("product_id"),
            quantity=data.get("quantity"),
            batch_id=data.get("batch_id"),
            prescription_item_id=data.get("prescription_item_id"),
        )


@dataclass
class CheckoutContext:
    warehouse_id: int
    payment_method: str
    exchange_rate: Decimal
    patient_id: int | None = None
    cashier_id: int | None = None
    payment_details: dict = field(default_factory=dict)
    occurred_at: datetime | None = None


def _validate_cart_shape(cart: list[CartItem], context: CheckoutContext) -> None:
    if not cart:
        raise InvoiceError("Cart is empty")
    if not context.warehouse_id:
        raise InvoiceError("warehouse_id is required")
    if not context.payment_method:
        raise InvoiceError("payment_method is required")

    bad = []
    for i, item in enumerate(cart):
        if item.product_id is None:
            bad.append({"line": i + 1, "error": "product_id is required"})
        elif not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity <= 0:
            bad.append({"line": i + 1, "product_id": item.product_id, "error": "quantity must be a positive integer"})
    if bad:
        raise InvoiceError("Invalid cart items", details={"items": bad})


def _load_products(cart: list[CartItem]) -> dict[int, Product]:
    ids = {item.product_id for item in cart}
    products = {p.id: p for p in db.session.query(Product).filter(Product.id.in_(ids)).all()}

    missing = sorted(ids - set(products))
    if missing:
        raise NotFoundError("Product not found", details={"product_ids": missing})

    inactive = sorted(p.id for p in products.values() if not p.is_active)
    if inactive:
        raise InvoiceError("Inactive products cannot be sold", details={"product_ids": inactive})
    return products


def _validate_prescriptions(cart: list[CartItem], products: dict[int, Product]) -> None:
    if not current_app.config.get("ENFORCE_PRESCRIPTIONS", True):
        return
    missing = [
        item.product_id
        for item in cart
        if products[item.product_id].requires_prescription and not item.prescription_item_id
    ]
    if missing:
        raise InvoiceError(
            "Prescription required",
            details={"product_ids": sorted(set(missing))},
        )


def _validate_stock(cart: list[CartItem], warehouse_id: int) -> None:
    """Per-product and per-pinned-batch totals must fit before anything is deducted."""
    product_totals: dict[int, int] = {}
    batch_totals: dict[int, tuple[int, int]] = {}
    for item in cart:
        product_totals[item.product_id] = product_totals.get(item.product_id, 0) + item.quantity
        if item.batch_id is not None:
            _, prev = batch_totals.get(item.batch_id, (item.product_id, 0))
            batch_totals[item.batch_id] = (item.product_id, prev + item.quantity)

    insufficient = []
    for product_id, qty in product_totals.items():
        available = get_available_quantity(product_id, warehouse_id)
        if available < qty:
            insufficient.append({
                "product_id": product_id,
                "requested_quantity": qty,
                "available_quantity": available,
            })

    for batch_id, (product_id, qty) in batch_totals.items():
        batch = db.session.get(Batch, batch_id)
        if batch is None or batch.product_id != product_id or batch.warehouse_id != warehouse_id:
            raise InvoiceError(
                "Reserved batch does not match product/warehouse",
                details={"batch_id": batch_id, "product_id": product_id, "warehouse_id": warehouse_id},
            )
        available = batch.quantity if batch.zone == BATCH_ZONE_AVAILABLE else 0
        if available < qty:
            insufficient.append({
                "product_id": product_id,
                "batch_id": batch_id,
                "requested_quantity": qty,
                "available_quantity": available,
            })

    if insufficient:
        raise InsufficientStockError(
            "Insufficient stock",
            details={"warehouse_id": warehouse_id, "items": insufficient},
        )


def _line_totals(item: CartItem, product: Product) -> LineTotals:
    return calculate_line_totals(
        unit_price_usd_cents=product.price_usd_cents,
        unit_price_local_cents=product.price_local_cents,
        quantity=item.quantity,
        tax_rate_bps=product.tax_rate_bps,
        tax_exempt=product.tax_exempt,
    )


def _compose_locked(
    cart: list[CartItem],
    context: CheckoutContext,
    products: dict[int, Product],
    exchange_rate: Decimal,
) -> Invoice:
    _validate_stock(cart, context.warehouse_id)

    lines = [_line_totals(item, products[item.product_id]) for item in cart]
    totals = sum_line_totals(lines)
    now = to_utc_naive(context.occurred_at) if context.occurred_at else utcnow()

    invoice_number = next_document_number(
        warehouse_id=context.warehouse_id,
        document_type=INVOICE_DOCUMENT_TYPE,
        prefix=INVOICE_PREFIX,
    )

    invoice = Invoice(
        invoice_number=invoice_number,
        warehouse_id=context.warehouse_id,
        patient_id=context.patient_id,
        cashier_id=context.cashier_id,
        status="paid",
        subtotal_usd_cents=totals.subtotal.usd_cents,
        subtotal_local_cents=totals.subtotal.local_cents,
        tax_usd_cents=totals.tax.usd_cents,
        tax_local_cents=totals.tax.local_cents,
        total_usd_cents=totals.total.usd_cents,
        total_local_cents=totals.total.local_cents,
        payment_method=context.payment_method,
        payment_details=context.payment_details or {},
        exchange_rate=exchange_rate,
        local_currency=current_app.config.get("LOCAL_CURRENCY", "VES"),
        created_at=now,
    )
    db.session.add(invoice)
    db.session.flush()

    invoice_items = []
    for line_number, (item, line) in enumerate(zip(cart, lines), start=1):
        product = products[item.product_id]
        invoice_item = InvoiceItem(
            invoice_id=invoice.id,
            line_number=line_number,
            product_id=product.id,
            prescription_item_id=item.prescription_item_id,
            product_name=product.name,
            generic_name=product.generic_name,
            category=product.category,
            requires_prescription=product.requires_prescription,
            quantity=item.quantity,
            unit_price_usd_cents=product.price_usd_cents,
            unit_price_local_cents=product.price_local_cents,
            tax_rate_bps=product.tax_rate_bps,
            tax_exempt=product.tax_exempt,
            subtotal_usd_cents=line.subtotal.usd_cents,
            subtotal_local_cents=line.subtotal.local_cents,
            tax_usd_cents=line.tax.usd_cents,
            tax_local_cents=line.tax.local_cents,
            total_usd_cents=line.total.usd_cents,
            total_local_cents=line.total.local_cents,
        )
        db.session.add(invoice_item)
        invoice_items.append((item, invoice_item))
    db.session.flush()

    pinned_first = sorted(invoice_items, key=lambda pair: pair[0].batch_id is None)
    for item, invoice_item in pinned_first:
        result = allocate_locked(
            item.product_id,
            context.warehouse_id,
            item.quantity,
            batch_id=item.batch_id,
        )
        for deduction in result.deductions:
            db.session.add(InvoiceItemAllocation(
                invoice_item_id=invoice_item.id,
                batch_id=deduction.batch_id,
                quantity=deduction.quantity,
            ))

    append_audit_event(
        event_type="invoice.created",
        event_category="sales",
        entity_type="invoice",
        entity_id=invoice.id,
        warehouse_id=invoice.warehouse_id,
        invoice_id=invoice.id,
        actor_id=context.cashier_id,
        occurred_at=now,
        note=f"Invoice {invoice_number} paid",
        payload={
            "total_usd_cents": invoice.total_usd_cents,
            "total_local_cents": invoice.total_local_cents,
            "line_count": len(cart),
        },
    )
    db.session.flush()
    return invoice


def compose_invoice(cart: list[CartItem], context: CheckoutContext) -> Invoice:
    """
    Validate the cart, compute dual-currency totals, mint the invoice number,
    persist invoice + items, and deduct stock FEFO, all in one transaction.

    Raises:
        InvoiceError / NotFoundError: malformed cart or context
        InsufficientStockError: some product (or reserved batch) cannot be covered
        AllocationRaceError: optimistic lock lost after retries; retry the checkout
    """
    _validate_cart_shape(cart, context)

    try:
        exchange_rate = parse_exchange_rate(context.exchange_rate)
    except ValueError as exc:
        raise InvoiceError(str(exc), details={"exchange_rate": str(context.exchange_rate)}) from exc

    if db.session.get(Warehouse, context.warehouse_id) is None:
        raise NotFoundError("Warehouse not found", details={"warehouse_id": context.warehouse_id})

    products = _load_products(cart)
    _validate_prescriptions(cart, products)

    def _op():
        try:
            begin_immediate_if_sqlite()
            invoice = _compose_locked(cart, context, products, exchange_rate)
            db.session.commit()
            return invoice
        except Exception:
            db.session.rollback()
            raise

    keys = [stock_key(item.product_id, context.warehouse_id) for item in cart]
    with stock_locks.hold(keys):
        try:
            return run_with_retry(_op)
        except StaleDataError as exc:
            raise AllocationRaceError(
                "Concurrent modification of batch stock",
                details={"warehouse_id": context.warehouse_id},
            ) from exc


def get_invoice(invoice_id: int) -> Invoice:
    invoice = db.session.get(Invoice, invoice_id)
    if invoice is None:
        raise NotFoundError("Invoice not found", details={"invoice_id": invoice_id})
    return invoice


def invoice_snapshot(invoice: Invoice) -> dict:
    """Full line-item snapshot stored with the offline record and pushed on sync."""
    return invoice.to_dict(include_items=True)
