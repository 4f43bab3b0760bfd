from __future__ import annotations

from ..extensions import db
from rxpos.time_utils import to_utc_z


class Invoice(db.Model):
    """
    Durable record of a completed sale.

    Created atomically with its items and the batch deductions that supplied
    them. Never mutated afterwards except for status (paid -> refunded /
    cancelled), which is owned by billing.

    Money columns are integer cents per currency. exchange_rate is the
    local-per-USD rate in effect at the time of sale (informational; totals
    are computed per currency, never converted).
    """
    __tablename__ = "invoices"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_invoices_number"),
        db.Index("ix_invoices_warehouse_created", "warehouse_id", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_number = db.Column(db.String(64), nullable=False)

    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)
    patient_id = db.Column(db.Integer, nullable=True, index=True)
    cashier_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(16), nullable=False, default="paid", index=True)

    subtotal_usd_cents = db.Column(db.Integer, nullable=False)
    subtotal_local_cents = db.Column(db.Integer, nullable=False)
    tax_usd_cents = db.Column(db.Integer, nullable=False)
    tax_local_cents = db.Column(db.Integer, nullable=False)
    total_usd_cents = db.Column(db.Integer, nullable=False)
    total_local_cents = db.Column(db.Integer, nullable=False)

    payment_method = db.Column(db.String(32), nullable=False)
    payment_details = db.Column(db.JSON, nullable=True)
    exchange_rate = db.Column(db.Numeric(18, 6), nullable=False)
    local_currency = db.Column(db.String(8), nullable=False, default="VES")

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    warehouse = db.relationship("Warehouse")

    def to_dict(self, include_items: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "warehouse_id": self.warehouse_id,
            "patient_id": self.patient_id,
            "cashier_id": self.cashier_id,
            "status": self.status,
            "subtotal_usd_cents": self.subtotal_usd_cents,
            "subtotal_local_cents": self.subtotal_local_cents,
            "tax_usd_cents": self.tax_usd_cents,
            "tax_local_cents": self.tax_local_cents,
            "total_usd_cents": self.total_usd_cents,
            "total_local_cents": self.total_local_cents,
            "payment_method": self.payment_method,
            "payment_details": self.payment_details,
            "exchange_rate": str(self.exchange_rate),
            "local_currency": self.local_currency,
            "created_at": to_utc_z(self.created_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class InvoiceItem(db.Model):
    """
    Line snapshot: name, prices, and tax rate are copied from the Product at
    the time of sale and must not follow later catalog edits.
    """
    __tablename__ = "invoice_items"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    prescription_item_id = db.Column(db.Integer, nullable=True)

    product_name = db.Column(db.String(255), nullable=False)
    generic_name = db.Column(db.String(255), nullable=True)
    category = db.Column(db.String(64), nullable=True)
    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)
    quantity = db.Column(db.Integer, nullable=False)

    unit_price_usd_cents = db.Column(db.Integer, nullable=False)
    unit_price_local_cents = db.Column(db.Integer, nullable=False)
    tax_rate_bps = db.Column(db.Integer, nullable=False)
    tax_exempt = db.Column(db.Boolean, nullable=False, default=False)

    subtotal_usd_cents = db.Column(db.Integer, nullable=False)
    subtotal_local_cents = db.Column(db.Integer, nullable=False)
    tax_usd_cents = db.Column(db.Integer, nullable=False)
    tax_local_cents = db.Column(db.Integer, nullable=False)
    total_usd_cents = db.Column(db.Integer, nullable=False)
    total_local_cents = db.Column(db.Integer, nullable=False)

    invoice = db.relationship(
        "Invoice",
        backref=db.backref("items", lazy=True, order_by="InvoiceItem.line_number"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "line_number": self.line_number,
            "product_id": self.product_id,
            "prescription_item_id": self.prescription_item_id,
            "product_name": self.product_name,
            "generic_name": self.generic_name,
            "category": self.category,
            "requires_prescription": self.requires_prescription,
            "quantity": self.quantity,
            "unit_price_usd_cents": self.unit_price_usd_cents,
            "unit_price_local_cents": self.unit_price_local_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_exempt": self.tax_exempt,
            "subtotal_usd_cents": self.subtotal_usd_cents,
            "subtotal_local_cents": self.subtotal_local_cents,
            "tax_usd_cents": self.tax_usd_cents,
            "tax_local_cents": self.tax_local_cents,
            "total_usd_cents": self.total_usd_cents,
            "total_local_cents": self.total_local_cents,
            "allocations": [a.to_dict() for a in self.allocations],
        }


class InvoiceItemAllocation(db.Model):
    """Which batch supplied how many units of an invoice line."""
    __tablename__ = "invoice_item_allocations"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    invoice_item_id = db.Column(db.Integer, db.ForeignKey("invoice_items.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)

    invoice_item = db.relationship("InvoiceItem", backref=db.backref("allocations", lazy=True))
    batch = db.relationship("Batch")

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "lot_number": self.batch.lot_number if self.batch else None,
            "quantity": self.quantity,
        }


class DocumentSequence(db.Model):
    """Per (warehouse, document type) counter for human-readable document numbers."""
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("warehouse_id", "document_type", name="uq_document_sequences_warehouse_type"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False)
    document_type = db.Column(db.String(32), nullable=False)
    next_number = db.Column(db.Integer, nullable=False, default=1)
