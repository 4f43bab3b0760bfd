# Overview: Delivery orders: zone fee schedule, status machine, commission, on-time rate.

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional

from flask import current_app
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import DeliveryOrder, DeliveryTrackingNote, DeliveryZone, Invoice
from ..models.delivery import (
    DELIVERY_CANCELLED,
    DELIVERY_CONFIRMED,
    DELIVERY_DELIVERED,
    DELIVERY_OUT_FOR_DELIVERY,
    DELIVERY_PENDING,
    DELIVERY_PREPARING,
    DELIVERY_STATUSES,
    DELIVERY_TERMINAL_STATUSES,
)
from rxpos.time_utils import minutes_between, to_utc_naive, utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .currency_service import DualAmount, percent_of_cents
from .document_service import next_document_number
from .errors import DeliveryError, NotFoundError

# Allowed forward moves; cancellation is handled separately (any non-terminal state)
_NEXT_STATUS = {
    DELIVERY_PENDING: DELIVERY_CONFIRMED,
    DELIVERY_CONFIRMED: DELIVERY_PREPARING,
    DELIVERY_PREPARING: DELIVERY_OUT_FOR_DELIVERY,
    DELIVERY_OUT_FOR_DELIVERY: DELIVERY_DELIVERED,
}


def can_transition(current: str, new_status: str) -> bool:
    if current in DELIVERY_TERMINAL_STATUSES:
        return False
    if new_status == DELIVERY_CANCELLED:
        return True
    return _NEXT_STATUS.get(current) == new_status


def get_delivery_order(order_id: int) -> DeliveryOrder:
    order = db.session.get(DeliveryOrder, order_id)
    if order is None:
        raise NotFoundError("Delivery order not found", details={"delivery_order_id": order_id})
    return order


def _parse_distance(value) -> Decimal:
    try:
        distance = Decimal(str(value if value is not None else 0))
    except (InvalidOperation, ValueError):
        raise DeliveryError("invalid distance_km", details={"distance_km": value})
    if not distance.is_finite() or distance < 0:
        raise DeliveryError("distance_km cannot be negative", details={"distance_km": str(value)})
    return distance


def calculate_delivery_fee(zone: DeliveryZone, distance_km) -> DualAmount:
    """base fee + per-km fee * distance, per currency, half-up to the cent."""
    distance = _parse_distance(distance_km)

    def _fee(base: int, per_km: int) -> int:
        amount = Decimal(base) + Decimal(per_km) * distance
        return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return DualAmount(
        _fee(zone.base_fee_usd_cents, zone.fee_per_km_usd_cents),
        _fee(zone.base_fee_local_cents, zone.fee_per_km_local_cents),
    )


def calculate_commission(fee: DualAmount, commission_percent) -> DualAmount:
    return DualAmount(
        percent_of_cents(fee.usd_cents, commission_percent),
        percent_of_cents(fee.local_cents, commission_percent),
    )


def _note(order: DeliveryOrder, from_status: Optional[str], to_status: str, *, note=None, actor_id=None, at=None):
    db.session.add(DeliveryTrackingNote(
        delivery_order_id=order.id,
        from_status=from_status,
        to_status=to_status,
        note=note,
        actor_id=actor_id,
        occurred_at=at or utcnow(),
    ))


def create_delivery_order(
    *,
    invoice: Invoice,
    zone_id: int,
    customer_name: str,
    customer_phone: str,
    delivery_address: str,
    distance_km=0,
    commission_percent: Optional[int] = None,
    requested_time: Optional[datetime] = None,
    actor_id: Optional[int] = None,
) -> DeliveryOrder:
    """New pending order for a paid invoice, priced from the zone schedule."""
    zone = db.session.get(DeliveryZone, zone_id)
    if zone is None:
        raise NotFoundError("Delivery zone not found", details={"zone_id": zone_id})
    if not zone.is_active:
        raise DeliveryError("Delivery zone is inactive", details={"zone_id": zone_id})
    if not customer_name or not customer_phone or not delivery_address:
        raise DeliveryError("customer_name, customer_phone and delivery_address are required")

    if commission_percent is None:
        commission_percent = int(current_app.config.get("DELIVERY_DEFAULT_COMMISSION_PERCENT", 10))
    if not isinstance(commission_percent, int) or not 0 <= commission_percent <= 100:
        raise DeliveryError("commission_percent must be between 0 and 100", details={"commission_percent": commission_percent})

    distance = _parse_distance(distance_km)
    fee = calculate_delivery_fee(zone, distance)
    commission = calculate_commission(fee, commission_percent)

    def _op():
        try:
            now = utcnow()
            order = DeliveryOrder(
                order_number=next_document_number(
                    warehouse_id=invoice.warehouse_id, document_type="DELIVERY", prefix="DEL",
                ),
                invoice_id=invoice.id,
                zone_id=zone.id,
                warehouse_id=invoice.warehouse_id,
                patient_id=invoice.patient_id,
                customer_name=customer_name,
                customer_phone=customer_phone,
                delivery_address=delivery_address,
                distance_km=distance,
                delivery_fee_usd_cents=fee.usd_cents,
                delivery_fee_local_cents=fee.local_cents,
                delivery_commission_percent=commission_percent,
                delivery_commission_usd_cents=commission.usd_cents,
                delivery_commission_local_cents=commission.local_cents,
                status=DELIVERY_PENDING,
                requested_time=to_utc_naive(requested_time) if requested_time else None,
                estimated_delivery_time=now + timedelta(minutes=zone.estimated_time_minutes),
                created_at=now,
                updated_at=now,
            )
            db.session.add(order)
            db.session.flush()
            _note(order, None, DELIVERY_PENDING, actor_id=actor_id, at=now)
            append_audit_event(
                event_type="delivery.created",
                event_category="delivery",
                entity_type="delivery_order",
                entity_id=order.id,
                warehouse_id=order.warehouse_id,
                invoice_id=invoice.id,
                actor_id=actor_id,
                occurred_at=now,
                payload={"zone_id": zone.id, "fee_usd_cents": fee.usd_cents},
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    return run_with_retry(_op)


def advance_delivery_status(
    order_id: int,
    new_status: str,
    *,
    courier_id: Optional[int] = None,
    note: Optional[str] = None,
    actor_id: Optional[int] = None,
    occurred_at: Optional[datetime] = None,
) -> DeliveryOrder:
    """
    Move an order one step along its status machine (or cancel it).

    'delivered' stamps actual_delivery_time. Terminal orders never change.
    """
    if new_status not in DELIVERY_STATUSES:
        raise DeliveryError("Unknown delivery status", details={"status": new_status})

    def _op():
        try:
            order = lock_for_update(db.session.query(DeliveryOrder).filter_by(id=order_id)).first()
            if order is None:
                raise NotFoundError("Delivery order not found", details={"delivery_order_id": order_id})

            current = order.status
            if not can_transition(current, new_status):
                raise DeliveryError(
                    f"Cannot move delivery from {current} to {new_status}",
                    details={"delivery_order_id": order_id, "from_status": current, "to_status": new_status},
                )

            at = to_utc_naive(occurred_at) if occurred_at else utcnow()
            order.status = new_status
            order.updated_at = at
            if courier_id is not None:
                order.courier_id = courier_id
            if new_status == DELIVERY_DELIVERED:
                order.actual_delivery_time = at

            _note(order, current, new_status, note=note, actor_id=actor_id, at=at)
            append_audit_event(
                event_type=f"delivery.{new_status}",
                event_category="delivery",
                entity_type="delivery_order",
                entity_id=order.id,
                warehouse_id=order.warehouse_id,
                invoice_id=order.invoice_id,
                actor_id=actor_id,
                occurred_at=at,
                note=note,
                payload={"from_status": current, "to_status": new_status},
            )
            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    try:
        return run_with_retry(_op)
    except StaleDataError as exc:
        raise DeliveryError("Concurrent delivery update, retry", details={"delivery_order_id": order_id}) from exc


def is_on_time(order: DeliveryOrder, *, tolerance_minutes: Optional[int] = None) -> bool:
    """Delivered no later than tolerance minutes after the estimate (early counts as on time)."""
    if order.status != DELIVERY_DELIVERED or order.actual_delivery_time is None:
        return False
    if tolerance_minutes is None:
        tolerance_minutes = int(current_app.config.get("DELIVERY_ON_TIME_TOLERANCE_MINUTES", 15))
    return minutes_between(order.estimated_delivery_time, order.actual_delivery_time) <= tolerance_minutes


def delivery_performance(
    *,
    warehouse_id: Optional[int] = None,
    courier_id: Optional[int] = None,
    since: Optional[datetime] = None,
    tolerance_minutes: Optional[int] = None,
) -> dict:
    q = db.session.query(DeliveryOrder).filter(DeliveryOrder.status == DELIVERY_DELIVERED)
    if warehouse_id is not None:
        q = q.filter(DeliveryOrder.warehouse_id == warehouse_id)
    if courier_id is not None:
        q = q.filter(DeliveryOrder.courier_id == courier_id)
    if since is not None:
        q = q.filter(DeliveryOrder.actual_delivery_time >= to_utc_naive(since))

    delivered = q.all()
    on_time = sum(1 for order in delivered if is_on_time(order, tolerance_minutes=tolerance_minutes))
    return {
        "delivered": len(delivered),
        "on_time": on_time,
        "on_time_rate": (on_time / len(delivered)) if delivered else 0.0,
    }


def on_time_rate(**filters) -> float:
    """Fraction of delivered orders that arrived on time; 0.0 when none were delivered."""
    return delivery_performance(**filters)["on_time_rate"]
