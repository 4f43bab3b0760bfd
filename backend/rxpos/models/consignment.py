from __future__ import annotations

from ..extensions import db
from rxpos.time_utils import to_utc_z, to_iso_date, add_days

CONSIGNMENT_ACTIVE = "active"
CONSIGNMENT_COMPLETED = "completed"
CONSIGNMENT_CANCELLED = "cancelled"


class Consignment(db.Model):
    """
    Supplier-owned stock held and sold by the pharmacy.

    consignment_percent is the share of sold value owed to the supplier,
    payable payment_terms_days after start_date. Running totals
    (total_value_*, total_sold_*) are recomputed from items on every
    sale/return.
    """
    __tablename__ = "consignments"
    __table_args__ = (
        db.UniqueConstraint("consignment_number", name="uq_consignments_number"),
        db.Index("ix_consignments_status_start", "status", "start_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    consignment_number = db.Column(db.String(64), nullable=False)

    supplier_id = db.Column(db.Integer, nullable=False, index=True)
    supplier_name = db.Column(db.String(255), nullable=False)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    consignment_percent = db.Column(db.Integer, nullable=False)
    payment_terms_days = db.Column(db.Integer, nullable=False, default=30)

    total_value_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    total_value_local_cents = db.Column(db.Integer, nullable=False, default=0)
    total_sold_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    total_sold_local_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(16), nullable=False, default=CONSIGNMENT_ACTIVE, index=True)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    @property
    def payment_due_date(self):
        return add_days(self.start_date, self.payment_terms_days)

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "consignment_number": self.consignment_number,
            "supplier_id": self.supplier_id,
            "supplier_name": self.supplier_name,
            "warehouse_id": self.warehouse_id,
            "consignment_percent": self.consignment_percent,
            "payment_terms_days": self.payment_terms_days,
            "total_value_usd_cents": self.total_value_usd_cents,
            "total_value_local_cents": self.total_value_local_cents,
            "total_sold_usd_cents": self.total_sold_usd_cents,
            "total_sold_local_cents": self.total_sold_local_cents,
            "status": self.status,
            "start_date": to_iso_date(self.start_date),
            "end_date": to_iso_date(self.end_date),
            "payment_due_date": to_iso_date(self.payment_due_date),
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class ConsignmentItem(db.Model):
    """
    One consigned product/lot.

    INVARIANT: quantity_sold + quantity_returned <= quantity_consigned.
    """
    __tablename__ = "consignment_items"
    __table_args__ = (
        db.CheckConstraint(
            "quantity_sold + quantity_returned <= quantity_consigned",
            name="ck_consignment_items_within_consigned",
        ),
        db.CheckConstraint("quantity_sold >= 0 AND quantity_returned >= 0", name="ck_consignment_items_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    consignment_id = db.Column(db.Integer, db.ForeignKey("consignments.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    batch_id = db.Column(db.Integer, db.ForeignKey("batches.id"), nullable=True, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    lot_number = db.Column(db.String(64), nullable=True)

    quantity_consigned = db.Column(db.Integer, nullable=False)
    quantity_sold = db.Column(db.Integer, nullable=False, default=0)
    quantity_returned = db.Column(db.Integer, nullable=False, default=0)

    unit_cost_usd_cents = db.Column(db.Integer, nullable=False)
    unit_cost_local_cents = db.Column(db.Integer, nullable=False)
    unit_price_usd_cents = db.Column(db.Integer, nullable=False)
    unit_price_local_cents = db.Column(db.Integer, nullable=False)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    consignment = db.relationship(
        "Consignment",
        backref=db.backref("items", lazy=True, order_by="ConsignmentItem.id"),
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def quantity_remaining(self) -> int:
        return self.quantity_consigned - self.quantity_sold - self.quantity_returned

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "consignment_id": self.consignment_id,
            "product_id": self.product_id,
            "batch_id": self.batch_id,
            "product_name": self.product_name,
            "lot_number": self.lot_number,
            "quantity_consigned": self.quantity_consigned,
            "quantity_sold": self.quantity_sold,
            "quantity_returned": self.quantity_returned,
            "quantity_remaining": self.quantity_remaining,
            "unit_cost_usd_cents": self.unit_cost_usd_cents,
            "unit_cost_local_cents": self.unit_cost_local_cents,
            "unit_price_usd_cents": self.unit_price_usd_cents,
            "unit_price_local_cents": self.unit_price_local_cents,
        }
