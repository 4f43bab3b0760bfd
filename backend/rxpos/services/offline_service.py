# Overview: Durable local record of completed sales awaiting sync; lives in the 'offline' bind.

from __future__ import annotations

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Invoice, OfflineTransaction
from ..models.offline import SYNC_STATUS_PENDING, SYNC_STATUS_SYNCED, SYNC_STATUS_SYNCING
from rxpos.time_utils import utcnow, to_utc_z
from .errors import NotFoundError
from .invoice_service import invoice_snapshot
"""
Offline Store Invariants (authoritative)

- Recording is synchronous and never touches the network.
- One row per invoice_number. Recording the same invoice twice returns the
  existing row unchanged.
- A freshly recorded row is pending, synced=False, sync_attempt_count=0.
- synced=True iff status='synced'; a synced row never changes again.
- sync_attempt_count never decreases.
- Rows with sync_attempt_count >= SYNC_MANUAL_REVIEW_THRESHOLD stay pending
  but are excluded from automatic sync (needs review).
"""


def manual_review_threshold() -> int:
    return int(current_app.config.get("SYNC_MANUAL_REVIEW_THRESHOLD", 10))


def get_offline_transaction(transaction_id: int) -> OfflineTransaction:
    tx = db.session.get(OfflineTransaction, transaction_id)
    if tx is None:
        raise NotFoundError("Offline transaction not found", details={"transaction_id": transaction_id})
    return tx


def get_by_invoice_number(invoice_number: str) -> OfflineTransaction | None:
    return db.session.query(OfflineTransaction).filter_by(invoice_number=invoice_number).first()


def record_offline_transaction(invoice: Invoice) -> OfflineTransaction:
    """
    Persist a pending local mirror of a paid invoice.

    Idempotent per invoice_number: a second call for the same invoice returns
    the stored row without modifying it.
    """
    existing = get_by_invoice_number(invoice.invoice_number)
    if existing is not None:
        return existing

    tx = OfflineTransaction(
        invoice_id=invoice.id,
        invoice_number=invoice.invoice_number,
        warehouse_id=invoice.warehouse_id,
        terminal_code=current_app.config.get("TERMINAL_CODE", "T01"),
        payload=invoice_snapshot(invoice),
        subtotal_usd_cents=invoice.subtotal_usd_cents,
        subtotal_local_cents=invoice.subtotal_local_cents,
        tax_usd_cents=invoice.tax_usd_cents,
        tax_local_cents=invoice.tax_local_cents,
        total_usd_cents=invoice.total_usd_cents,
        total_local_cents=invoice.total_local_cents,
        payment_method=invoice.payment_method,
        payment_details=invoice.payment_details,
        status=SYNC_STATUS_PENDING,
        synced=False,
        sync_attempt_count=0,
        created_at=utcnow(),
    )
    db.session.add(tx)
    try:
        db.session.commit()
    except IntegrityError:
        # Another writer recorded the same invoice first
        db.session.rollback()
        existing = get_by_invoice_number(invoice.invoice_number)
        if existing is None:
            raise
        return existing
    return tx


def record_missing_offline_transactions(*, limit: int = 500) -> list[OfflineTransaction]:
    """
    Mirror recent invoices that have no offline row yet (the offline write
    failed at checkout). Looks at the newest `limit` invoices only.
    """
    recent = (
        db.session.query(Invoice.id, Invoice.invoice_number)
        .order_by(Invoice.id.desc())
        .limit(limit)
        .all()
    )
    if not recent:
        return []
    numbers = [number for _, number in recent]
    mirrored = {
        number for (number,) in db.session.query(OfflineTransaction.invoice_number)
        .filter(OfflineTransaction.invoice_number.in_(numbers))
        .all()
    }
    recorded = []
    for invoice_id, number in reversed(recent):
        if number in mirrored:
            continue
        recorded.append(record_offline_transaction(db.session.get(Invoice, invoice_id)))
    return recorded


def get_pending_transactions(*, limit: int | None = None, now=None, include_backoff: bool = False) -> list[OfflineTransaction]:
    """
    Pending rows eligible for automatic sync, oldest first.

    Excludes rows at/over the manual-review threshold and, unless
    include_backoff is set, rows whose next_attempt_at is still in the future.
    """
    now = now or utcnow()
    q = db.session.query(OfflineTransaction).filter(
        OfflineTransaction.status == SYNC_STATUS_PENDING,
        OfflineTransaction.sync_attempt_count < manual_review_threshold(),
    )
    if not include_backoff:
        q = q.filter(
            (OfflineTransaction.next_attempt_at.is_(None)) | (OfflineTransaction.next_attempt_at <= now)
        )
    q = q.order_by(OfflineTransaction.created_at.asc(), OfflineTransaction.id.asc())
    if limit:
        q = q.limit(limit)
    return q.all()


def get_needs_review_transactions() -> list[OfflineTransaction]:
    return (
        db.session.query(OfflineTransaction)
        .filter(
            OfflineTransaction.status == SYNC_STATUS_PENDING,
            OfflineTransaction.sync_attempt_count >= manual_review_threshold(),
        )
        .order_by(OfflineTransaction.created_at.asc(), OfflineTransaction.id.asc())
        .all()
    )


def get_synced_transactions(*, limit: int = 100) -> list[OfflineTransaction]:
    return (
        db.session.query(OfflineTransaction)
        .filter(OfflineTransaction.status == SYNC_STATUS_SYNCED)
        .order_by(OfflineTransaction.synced_at.desc(), OfflineTransaction.id.desc())
        .limit(limit)
        .all()
    )


def get_sync_status_summary() -> dict:
    """Counts per sync state plus the oldest unsynced sale and the last successful sync."""
    threshold = manual_review_threshold()
    base = db.session.query(func.count(OfflineTransaction.id))

    pending = base.filter(
        OfflineTransaction.status == SYNC_STATUS_PENDING,
        OfflineTransaction.sync_attempt_count < threshold,
    ).scalar()
    needs_review = base.filter(
        OfflineTransaction.status == SYNC_STATUS_PENDING,
        OfflineTransaction.sync_attempt_count >= threshold,
    ).scalar()
    syncing = base.filter(OfflineTransaction.status == SYNC_STATUS_SYNCING).scalar()
    synced = base.filter(OfflineTransaction.status == SYNC_STATUS_SYNCED).scalar()

    oldest_pending = (
        db.session.query(func.min(OfflineTransaction.created_at))
        .filter(OfflineTransaction.status != SYNC_STATUS_SYNCED)
        .scalar()
    )
    last_synced = (
        db.session.query(func.max(OfflineTransaction.synced_at))
        .filter(OfflineTransaction.status == SYNC_STATUS_SYNCED)
        .scalar()
    )

    return {
        "pending": int(pending or 0),
        "needs_review": int(needs_review or 0),
        "syncing": int(syncing or 0),
        "synced": int(synced or 0),
        "oldest_unsynced_at": to_utc_z(oldest_pending),
        "last_synced_at": to_utc_z(last_synced),
        "manual_review_threshold": threshold,
    }
