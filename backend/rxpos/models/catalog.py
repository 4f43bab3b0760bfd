from __future__ import annotations

from ..extensions import db
from rxpos.time_utils import to_utc_z, to_iso_date

BATCH_ZONE_AVAILABLE = "available"
BATCH_ZONE_QUARANTINE = "quarantine"
BATCH_ZONE_DAMAGED = "damaged"
BATCH_ZONE_EXPIRED = "expired"
BATCH_ZONE_RETURNED = "returned"
BATCH_ZONES = (
    BATCH_ZONE_AVAILABLE,
    BATCH_ZONE_QUARANTINE,
    BATCH_ZONE_DAMAGED,
    BATCH_ZONE_EXPIRED,
    BATCH_ZONE_RETURNED,
)


class Warehouse(db.Model):
    """A stock location (pharmacy branch or storeroom) that owns batches."""
    __tablename__ = "warehouses"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(32), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Product master data, maintained by catalog management.

    Prices are stored per currency in minor units (cents). The local-currency
    price is NOT derived from the USD price at sale time; both are catalog
    values so a fluctuating exchange rate never compounds rounding error.

    tax_rate_bps: IVA rate in basis points (1600 = 16%).
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("sku", name="uq_products_sku"),
        db.Index("ix_products_category", "category"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    generic_name = db.Column(db.String(255), nullable=True)
    category = db.Column(db.String(64), nullable=True)

    price_usd_cents = db.Column(db.Integer, nullable=False)
    price_local_cents = db.Column(db.Integer, nullable=False)

    tax_rate_bps = db.Column(db.Integer, nullable=False, default=1600)
    tax_exempt = db.Column(db.Boolean, nullable=False, default=False)

    controlled_substance = db.Column(db.Boolean, nullable=False, default=False)
    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)

    reorder_point = db.Column(db.Integer, nullable=False, default=20)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sku": self.sku,
            "name": self.name,
            "generic_name": self.generic_name,
            "category": self.category,
            "price_usd_cents": self.price_usd_cents,
            "price_local_cents": self.price_local_cents,
            "tax_rate_bps": self.tax_rate_bps,
            "tax_exempt": self.tax_exempt,
            "controlled_substance": self.controlled_substance,
            "requires_prescription": self.requires_prescription,
            "reorder_point": self.reorder_point,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class Batch(db.Model):
    """
    A lot of one product held in one warehouse, sharing an expiry date.

    INVARIANT: quantity >= 0 (enforced by the allocator and a CHECK constraint).
    FEFO: eligible batches are zone='available' with quantity > 0, consumed by
    ascending expiry_date (ties by id).

    version_id is the optimistic lock: a concurrent writer that read the same
    quantity fails its flush with StaleDataError instead of overwriting.
    """
    __tablename__ = "batches"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_batches_quantity_non_negative"),
        db.Index("ix_batches_fefo", "product_id", "warehouse_id", "zone", "expiry_date"),
        db.Index("ix_batches_expiry", "expiry_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    lot_number = db.Column(db.String(64), nullable=False)
    expiry_date = db.Column(db.Date, nullable=False)
    zone = db.Column(db.String(16), nullable=False, default=BATCH_ZONE_AVAILABLE)

    quantity = db.Column(db.Integer, nullable=False)
    original_quantity = db.Column(db.Integer, nullable=False)

    supplier_id = db.Column(db.Integer, nullable=True, index=True)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", backref=db.backref("batches", lazy=True))
    warehouse = db.relationship("Warehouse", backref=db.backref("batches", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return (
            f"<Batch id={self.id} product_id={self.product_id} lot={self.lot_number!r} "
            f"expiry={self.expiry_date} qty={self.quantity}>"
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "lot_number": self.lot_number,
            "expiry_date": to_iso_date(self.expiry_date),
            "zone": self.zone,
            "quantity": self.quantity,
            "original_quantity": self.original_quantity,
            "supplier_id": self.supplier_id,
            "received_at": to_utc_z(self.received_at),
            "version_id": self.version_id,
        }
