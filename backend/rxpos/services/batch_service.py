# Overview: FEFO batch allocation engine; deducts stock soonest-expiry first, all-or-nothing.

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import func
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Batch, Product
from ..models.catalog import BATCH_ZONE_AVAILABLE, BATCH_ZONE_EXPIRED
from rxpos.time_utils import today
from .concurrency import (
    begin_immediate_if_sqlite,
    lock_for_update,
    run_with_retry,
    stock_locks,
)
from .errors import AllocationRaceError, InsufficientStockError, ServiceError
"""
FEFO Allocation Invariants (authoritative)

Eligibility:
- A batch is eligible when zone='available' AND quantity > 0.
- Zone, not the calendar, decides eligibility: batches past expiry are moved
  to zone='expired' by mark_expired_batches(), never silently skipped here.

Ordering:
- expiry_date ascending, ties broken by batch id (receive order).

Atomicity:
- The full plan is computed and checked against total eligible stock BEFORE
  any batch is written. Insufficient stock raises with zero writes.
- Writes happen inside the caller's transaction; any later failure rolls the
  whole transaction back, deductions included.

Serialization:
- Read/check/deduct on one (product_id, warehouse_id) pool runs under
  stock_locks (in-process), SELECT ... FOR UPDATE (server DBs) or
  BEGIN IMMEDIATE (SQLite), and Batch.version_id (optimistic check).
- A lost optimistic race surfaces as AllocationRaceError once retries are spent.
"""


@dataclass(frozen=True)
class BatchDeduction:
    batch_id: int
    lot_number: str
    expiry_date: date
    quantity: int
    remaining_after: int

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "lot_number": self.lot_number,
            "expiry_date": self.expiry_date.isoformat(),
            "quantity": self.quantity,
            "remaining_after": self.remaining_after,
        }


@dataclass(frozen=True)
class AllocationResult:
    product_id: int
    warehouse_id: int
    quantity: int
    deductions: tuple[BatchDeduction, ...]

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "warehouse_id": self.warehouse_id,
            "quantity": self.quantity,
            "deductions": [d.to_dict() for d in self.deductions],
        }


def stock_key(product_id: int, warehouse_id: int) -> tuple[int, int]:
    return (product_id, warehouse_id)


def _eligible_batches_query(product_id: int, warehouse_id: int):
    return db.session.query(Batch).filter(
        Batch.product_id == product_id,
        Batch.warehouse_id == warehouse_id,
        Batch.zone == BATCH_ZONE_AVAILABLE,
        Batch.quantity > 0,
    )


def get_fefo_batches(product_id: int, warehouse_id: int, *, lock: bool = False) -> list[Batch]:
    """Eligible batches in consumption order."""
    q = _eligible_batches_query(product_id, warehouse_id)
    if lock:
        q = lock_for_update(q)
    return q.order_by(Batch.expiry_date.asc(), Batch.id.asc()).all()


def get_available_quantity(product_id: int, warehouse_id: int) -> int:
    q = db.session.query(func.coalesce(func.sum(Batch.quantity), 0)).filter(
        Batch.product_id == product_id,
        Batch.warehouse_id == warehouse_id,
        Batch.zone == BATCH_ZONE_AVAILABLE,
        Batch.quantity > 0,
    )
    return int(q.scalar() or 0)


def plan_fefo_allocation(batches: list[Batch], quantity: int) -> list[tuple[Batch, int]]:
    """
    Pure planning step: walk batches in the given (FEFO) order taking
    min(remaining, batch.quantity) from each until the request is covered.

    Raises InsufficientStockError if the batches cannot cover quantity.
    """
    if quantity <= 0:
        raise ValueError("quantity must be positive")

    available = sum(b.quantity for b in batches)
    if available < quantity:
        first = batches[0] if batches else None
        raise InsufficientStockError(
            "Insufficient stock",
            details={
                "product_id": first.product_id if first else None,
                "warehouse_id": first.warehouse_id if first else None,
                "requested_quantity": quantity,
                "available_quantity": available,
            },
        )

    plan: list[tuple[Batch, int]] = []
    remaining = quantity
    for batch in batches:
        if remaining == 0:
            break
        take = min(remaining, batch.quantity)
        if take > 0:
            plan.append((batch, take))
            remaining -= take
    return plan


def _apply_plan(plan: list[tuple[Batch, int]]) -> list[BatchDeduction]:
    deductions = []
    for batch, take in plan:
        if batch.quantity - take < 0:
            raise InsufficientStockError(
                "batch would go negative",
                details={"batch_id": batch.id, "quantity": batch.quantity, "requested_quantity": take},
            )
        batch.quantity -= take
        deductions.append(BatchDeduction(
            batch_id=batch.id,
            lot_number=batch.lot_number,
            expiry_date=batch.expiry_date,
            quantity=take,
            remaining_after=batch.quantity,
        ))
    db.session.flush()  # version_id check fires here
    return deductions


def _pinned_batch(product_id: int, warehouse_id: int, batch_id: int) -> Batch:
    batch = lock_for_update(db.session.query(Batch).filter_by(id=batch_id)).first()
    if batch is None:
        raise ServiceError("batch not found", details={"batch_id": batch_id})
    if batch.product_id != product_id or batch.warehouse_id != warehouse_id:
        raise ServiceError(
            "batch does not belong to product/warehouse",
            details={"batch_id": batch_id, "product_id": product_id, "warehouse_id": warehouse_id},
        )
    if batch.zone != BATCH_ZONE_AVAILABLE:
        raise ServiceError("batch is not available for sale", details={"batch_id": batch_id, "zone": batch.zone})
    return batch


def allocate_locked(
    product_id: int,
    warehouse_id: int,
    quantity: int,
    *,
    batch_id: int | None = None,
) -> AllocationResult:
    """
    Core allocation without locking, retry, or commit.

    The caller must hold stock_locks for (product_id, warehouse_id) and own
    the transaction. batch_id pins the allocation to a pre-reserved batch.
    """
    if batch_id is not None:
        batches = [_pinned_batch(product_id, warehouse_id, batch_id)]
    else:
        batches = get_fefo_batches(product_id, warehouse_id, lock=True)

    try:
        plan = plan_fefo_allocation(batches, quantity)
    except InsufficientStockError as exc:
        exc.details.update({"product_id": product_id, "warehouse_id": warehouse_id})
        if batch_id is not None:
            exc.details["batch_id"] = batch_id
        raise

    deductions = _apply_plan(plan)
    return AllocationResult(
        product_id=product_id,
        warehouse_id=warehouse_id,
        quantity=quantity,
        deductions=tuple(deductions),
    )


def allocate_stock(
    product_id: int,
    warehouse_id: int,
    quantity: int,
    *,
    batch_id: int | None = None,
) -> AllocationResult:
    """
    Deduct quantity units of a product from a warehouse, soonest expiry first.

    All-or-nothing: on InsufficientStockError no batch changes. Commits on
    success. Lost optimistic races are retried, then raised as AllocationRaceError.
    """
    if product_id is None or warehouse_id is None:
        raise ServiceError("product_id and warehouse_id are required")
    if not isinstance(quantity, int) or quantity <= 0:
        raise ServiceError("quantity must be a positive integer", details={"quantity": quantity})

    def _op():
        try:
            begin_immediate_if_sqlite()
            result = allocate_locked(product_id, warehouse_id, quantity, batch_id=batch_id)
            db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            raise

    with stock_locks.hold([stock_key(product_id, warehouse_id)]):
        try:
            return run_with_retry(_op)
        except StaleDataError as exc:
            raise AllocationRaceError(
                "Concurrent modification of batch stock",
                details={"product_id": product_id, "warehouse_id": warehouse_id},
            ) from exc


def allocate_from_batch(batch_id: int, quantity: int) -> AllocationResult:
    """Deduct from one pre-reserved batch; same guarantees as allocate_stock."""
    batch = db.session.get(Batch, batch_id)
    if batch is None:
        raise ServiceError("batch not found", details={"batch_id": batch_id})
    return allocate_stock(batch.product_id, batch.warehouse_id, quantity, batch_id=batch_id)


def get_expiring_batches(days: int, *, warehouse_id: int | None = None, as_of: date | None = None) -> list[Batch]:
    """Available batches with stock whose expiry falls within the next `days` days."""
    start = as_of or today()
    horizon = start + timedelta(days=days)
    q = db.session.query(Batch).filter(
        Batch.zone == BATCH_ZONE_AVAILABLE,
        Batch.quantity > 0,
        Batch.expiry_date <= horizon,
    )
    if warehouse_id is not None:
        q = q.filter(Batch.warehouse_id == warehouse_id)
    return q.order_by(Batch.expiry_date.asc(), Batch.id.asc()).all()


def mark_expired_batches(*, as_of: date | None = None, warehouse_id: int | None = None) -> list[Batch]:
    """Move available batches past their expiry date to the 'expired' zone."""
    cutoff = as_of or today()

    def _op():
        q = lock_for_update(db.session.query(Batch).filter(
            Batch.zone == BATCH_ZONE_AVAILABLE,
            Batch.expiry_date < cutoff,
        ))
        if warehouse_id is not None:
            q = q.filter(Batch.warehouse_id == warehouse_id)
        batches = q.all()
        for batch in batches:
            batch.zone = BATCH_ZONE_EXPIRED
        db.session.commit()
        return batches

    return run_with_retry(_op)


def get_low_stock_products(warehouse_id: int) -> list[dict]:
    """Active products whose available stock in the warehouse is at or below reorder_point."""
    stock = (
        db.session.query(Batch.product_id, func.coalesce(func.sum(Batch.quantity), 0).label("available"))
        .filter(
            Batch.warehouse_id == warehouse_id,
            Batch.zone == BATCH_ZONE_AVAILABLE,
        )
        .group_by(Batch.product_id)
        .subquery()
    )
    rows = (
        db.session.query(Product, func.coalesce(stock.c.available, 0))
        .outerjoin(stock, stock.c.product_id == Product.id)
        .filter(Product.is_active.is_(True))
        .order_by(Product.name.asc())
        .all()
    )
    low = []
    for product, available in rows:
        available = int(available or 0)
        if available <= product.reorder_point:
            low.append({
                "product_id": product.id,
                "sku": product.sku,
                "name": product.name,
                "available_quantity": available,
                "reorder_point": product.reorder_point,
            })
    return low
