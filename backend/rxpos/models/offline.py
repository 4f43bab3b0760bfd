from __future__ import annotations

from ..extensions import db
from rxpos.time_utils import to_utc_z

SYNC_STATUS_PENDING = "pending"
SYNC_STATUS_SYNCING = "syncing"
SYNC_STATUS_SYNCED = "synced"


class OfflineTransaction(db.Model):
    """
    Local mirror of a completed sale, written the instant payment is taken.

    Lives in the 'offline' bind (an embedded SQLite file on the terminal), so
    recording never depends on network reachability. No foreign keys: the
    invoice lives in another database.

    LIFECYCLE:
        pending -> syncing -> synced (terminal)
                           -> pending (attempt failed; sync_attempt_count += 1)

    There is no failed state. Rows whose sync_attempt_count reached the
    operator threshold stay pending but are excluded from automatic sync and
    surfaced as needing review.

    OWNERSHIP: only offline_service / sync_service mutate status, synced,
    and sync_attempt_count.
    """
    __bind_key__ = "offline"
    __tablename__ = "offline_transactions"
    __table_args__ = (
        db.UniqueConstraint("invoice_number", name="uq_offline_transactions_invoice_number"),
        db.Index("ix_offline_transactions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    invoice_id = db.Column(db.Integer, nullable=False)
    # Idempotency key for the remote endpoint; identical on every retry
    invoice_number = db.Column(db.String(64), nullable=False)
    warehouse_id = db.Column(db.Integer, nullable=False)
    terminal_code = db.Column(db.String(32), nullable=False)

    payload = db.Column(db.JSON, nullable=False)

    subtotal_usd_cents = db.Column(db.Integer, nullable=False)
    subtotal_local_cents = db.Column(db.Integer, nullable=False)
    tax_usd_cents = db.Column(db.Integer, nullable=False)
    tax_local_cents = db.Column(db.Integer, nullable=False)
    total_usd_cents = db.Column(db.Integer, nullable=False)
    total_local_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(32), nullable=False)
    payment_details = db.Column(db.JSON, nullable=True)

    status = db.Column(db.String(16), nullable=False, default=SYNC_STATUS_PENDING)
    synced = db.Column(db.Boolean, nullable=False, default=False)
    sync_attempt_count = db.Column(db.Integer, nullable=False, default=0)
    last_sync_attempt = db.Column(db.DateTime(timezone=True), nullable=True)
    next_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    sync_error = db.Column(db.Text, nullable=True)
    synced_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self, include_payload: bool = False) -> dict:
        data = {
            "id": self.id,
            "invoice_id": self.invoice_id,
            "invoice_number": self.invoice_number,
            "warehouse_id": self.warehouse_id,
            "terminal_code": self.terminal_code,
            "subtotal_usd_cents": self.subtotal_usd_cents,
            "subtotal_local_cents": self.subtotal_local_cents,
            "tax_usd_cents": self.tax_usd_cents,
            "tax_local_cents": self.tax_local_cents,
            "total_usd_cents": self.total_usd_cents,
            "total_local_cents": self.total_local_cents,
            "payment_method": self.payment_method,
            "status": self.status,
            "synced": self.synced,
            "sync_attempt_count": self.sync_attempt_count,
            "last_sync_attempt": to_utc_z(self.last_sync_attempt),
            "next_attempt_at": to_utc_z(self.next_attempt_at),
            "sync_error": self.sync_error,
            "synced_at": to_utc_z(self.synced_at),
            "created_at": to_utc_z(self.created_at),
        }
        if include_payload:
            data["payload"] = self.payload
        return data
