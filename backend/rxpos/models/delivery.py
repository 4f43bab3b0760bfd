from __future__ import annotations

from ..extensions import db
from rxpos.time_utils import to_utc_z

DELIVERY_PENDING = "pending"
DELIVERY_CONFIRMED = "confirmed"
DELIVERY_PREPARING = "preparing"
DELIVERY_OUT_FOR_DELIVERY = "out_for_delivery"
DELIVERY_DELIVERED = "delivered"
DELIVERY_CANCELLED = "cancelled"

DELIVERY_STATUSES = (
    DELIVERY_PENDING,
    DELIVERY_CONFIRMED,
    DELIVERY_PREPARING,
    DELIVERY_OUT_FOR_DELIVERY,
    DELIVERY_DELIVERED,
    DELIVERY_CANCELLED,
)
DELIVERY_TERMINAL_STATUSES = (DELIVERY_DELIVERED, DELIVERY_CANCELLED)


class DeliveryZone(db.Model):
    """Coverage area with its fee schedule and service level."""
    __tablename__ = "delivery_zones"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    area = db.Column(db.String(255), nullable=True)

    base_fee_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    base_fee_local_cents = db.Column(db.Integer, nullable=False, default=0)
    fee_per_km_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    fee_per_km_local_cents = db.Column(db.Integer, nullable=False, default=0)

    estimated_time_minutes = db.Column(db.Integer, nullable=False, default=30)
    max_time_minutes = db.Column(db.Integer, nullable=False, default=60)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "area": self.area,
            "base_fee_usd_cents": self.base_fee_usd_cents,
            "base_fee_local_cents": self.base_fee_local_cents,
            "fee_per_km_usd_cents": self.fee_per_km_usd_cents,
            "fee_per_km_local_cents": self.fee_per_km_local_cents,
            "estimated_time_minutes": self.estimated_time_minutes,
            "max_time_minutes": self.max_time_minutes,
            "is_active": self.is_active,
        }


class DeliveryOrder(db.Model):
    """
    Home delivery of an invoice.

    STATUS MACHINE:
        pending -> confirmed -> preparing -> out_for_delivery -> delivered
        any non-terminal -> cancelled

    Fee and commission are snapshotted at creation from the zone schedule.
    """
    __tablename__ = "delivery_orders"
    __table_args__ = (
        db.UniqueConstraint("order_number", name="uq_delivery_orders_number"),
        db.Index("ix_delivery_orders_status_estimated", "status", "estimated_delivery_time"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(64), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=False, index=True)
    zone_id = db.Column(db.Integer, db.ForeignKey("delivery_zones.id"), nullable=False, index=True)
    warehouse_id = db.Column(db.Integer, db.ForeignKey("warehouses.id"), nullable=False, index=True)

    patient_id = db.Column(db.Integer, nullable=True, index=True)
    customer_name = db.Column(db.String(255), nullable=False)
    customer_phone = db.Column(db.String(32), nullable=False)
    delivery_address = db.Column(db.String(512), nullable=False)
    distance_km = db.Column(db.Numeric(8, 2), nullable=False, default=0)

    delivery_fee_usd_cents = db.Column(db.Integer, nullable=False)
    delivery_fee_local_cents = db.Column(db.Integer, nullable=False)
    delivery_commission_percent = db.Column(db.Integer, nullable=False, default=10)
    delivery_commission_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    delivery_commission_local_cents = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(24), nullable=False, default=DELIVERY_PENDING, index=True)
    courier_id = db.Column(db.Integer, nullable=True, index=True)
    requested_time = db.Column(db.DateTime(timezone=True), nullable=True)
    estimated_delivery_time = db.Column(db.DateTime(timezone=True), nullable=False)
    actual_delivery_time = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    zone = db.relationship("DeliveryZone")
    invoice = db.relationship("Invoice")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_notes: bool = False) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "invoice_id": self.invoice_id,
            "zone_id": self.zone_id,
            "warehouse_id": self.warehouse_id,
            "patient_id": self.patient_id,
            "customer_name": self.customer_name,
            "customer_phone": self.customer_phone,
            "delivery_address": self.delivery_address,
            "distance_km": str(self.distance_km),
            "delivery_fee_usd_cents": self.delivery_fee_usd_cents,
            "delivery_fee_local_cents": self.delivery_fee_local_cents,
            "delivery_commission_percent": self.delivery_commission_percent,
            "delivery_commission_usd_cents": self.delivery_commission_usd_cents,
            "delivery_commission_local_cents": self.delivery_commission_local_cents,
            "status": self.status,
            "courier_id": self.courier_id,
            "requested_time": to_utc_z(self.requested_time),
            "estimated_delivery_time": to_utc_z(self.estimated_delivery_time),
            "actual_delivery_time": to_utc_z(self.actual_delivery_time),
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "version_id": self.version_id,
        }
        if include_notes:
            data["tracking_notes"] = [n.to_dict() for n in self.tracking_notes]
        return data


class DeliveryTrackingNote(db.Model):
    """Append-only status history of a delivery order."""
    __tablename__ = "delivery_tracking_notes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    delivery_order_id = db.Column(db.Integer, db.ForeignKey("delivery_orders.id"), nullable=False, index=True)
    from_status = db.Column(db.String(24), nullable=True)
    to_status = db.Column(db.String(24), nullable=False)
    note = db.Column(db.String(255), nullable=True)
    actor_id = db.Column(db.Integer, nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    delivery_order = db.relationship(
        "DeliveryOrder",
        backref=db.backref("tracking_notes", lazy=True, order_by="DeliveryTrackingNote.id"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "note": self.note,
            "actor_id": self.actor_id,
            "occurred_at": to_utc_z(self.occurred_at),
        }
