from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from rxpos.time_utils import to_utc_z

LOYALTY_EARNED = "earned"
LOYALTY_REDEEMED = "redeemed"
LOYALTY_EXPIRED = "expired"
LOYALTY_ADJUSTED = "adjusted"


class LoyaltyProgram(db.Model):
    """
    Points program definition.

    ELIGIBILITY: a product qualifies when the program has no restriction
    lists, or lists the product id, or lists its category; and, when
    requires_prescription is set, the product itself requires a prescription.

    RATES:
    - points_per_currency: points earned per whole USD of eligible subtotal
    - points_value_usd / points_value_local: currency value of one point
    - max_redemption_percent: cap on the share of an invoice payable in points
    """
    __tablename__ = "loyalty_programs"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(128), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    eligible_product_ids = db.Column(db.JSON, nullable=False, default=list)
    eligible_categories = db.Column(db.JSON, nullable=False, default=list)
    requires_prescription = db.Column(db.Boolean, nullable=False, default=False)
    min_purchase_usd_cents = db.Column(db.Integer, nullable=False, default=0)
    min_purchase_local_cents = db.Column(db.Integer, nullable=False, default=0)

    points_per_currency = db.Column(db.Numeric(12, 4), nullable=False, default=1)
    points_value_usd = db.Column(db.Numeric(12, 4), nullable=False, default=Decimal("0.01"))
    points_value_local = db.Column(db.Numeric(12, 4), nullable=False, default=Decimal("0.10"))
    min_points_to_redeem = db.Column(db.Integer, nullable=False, default=100)
    max_redemption_percent = db.Column(db.Integer, nullable=False, default=50)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "is_active": self.is_active,
            "eligible_product_ids": list(self.eligible_product_ids or []),
            "eligible_categories": list(self.eligible_categories or []),
            "requires_prescription": self.requires_prescription,
            "min_purchase_usd_cents": self.min_purchase_usd_cents,
            "min_purchase_local_cents": self.min_purchase_local_cents,
            "points_per_currency": str(self.points_per_currency),
            "points_value_usd": str(self.points_value_usd),
            "points_value_local": str(self.points_value_local),
            "min_points_to_redeem": self.min_points_to_redeem,
            "max_redemption_percent": self.max_redemption_percent,
            "created_at": to_utc_z(self.created_at),
        }


class LoyaltyPoints(db.Model):
    """
    Balance of one patient in one program.

    INVARIANT: points_balance == points_earned - points_redeemed.
    points_earned and points_redeemed are monotonic lifetime ledgers; every
    outflow (redemption, expiry, negative adjustment) is counted in
    points_redeemed.
    """
    __tablename__ = "loyalty_points"
    __table_args__ = (
        db.UniqueConstraint("patient_id", "program_id", name="uq_loyalty_points_patient_program"),
        db.CheckConstraint("points_balance >= 0", name="ck_loyalty_points_balance_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.Integer, nullable=False, index=True)
    program_id = db.Column(db.Integer, db.ForeignKey("loyalty_programs.id"), nullable=False, index=True)

    points_balance = db.Column(db.Integer, nullable=False, default=0)
    points_earned = db.Column(db.Integer, nullable=False, default=0)
    points_redeemed = db.Column(db.Integer, nullable=False, default=0)
    last_transaction_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    program = db.relationship("LoyaltyProgram")
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "program_id": self.program_id,
            "points_balance": self.points_balance,
            "points_earned": self.points_earned,
            "points_redeemed": self.points_redeemed,
            "last_transaction_at": to_utc_z(self.last_transaction_at),
            "version_id": self.version_id,
        }


class LoyaltyTransaction(db.Model):
    """
    Append-only ledger of point events.

    points is signed (positive for earned / positive adjustments, negative for
    redeemed / expired / negative adjustments). balance_after lets the ledger
    be replayed and checked against LoyaltyPoints.

    IMMUTABLE: Records are never updated or deleted.
    """
    __tablename__ = "loyalty_transactions"
    __table_args__ = (
        db.Index("ix_loyalty_txns_account_created", "loyalty_points_id", "created_at"),
        db.Index(
            "uq_loyalty_txns_invoice_program_earned",
            "invoice_id",
            "program_id",
            unique=True,
            sqlite_where=db.text("type = 'earned'"),
            postgresql_where=db.text("type = 'earned'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    loyalty_points_id = db.Column(db.Integer, db.ForeignKey("loyalty_points.id"), nullable=False, index=True)
    patient_id = db.Column(db.Integer, nullable=False, index=True)
    program_id = db.Column(db.Integer, db.ForeignKey("loyalty_programs.id"), nullable=False)
    invoice_id = db.Column(db.Integer, db.ForeignKey("invoices.id"), nullable=True, index=True)

    type = db.Column(db.String(16), nullable=False, index=True)
    points = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    reference = db.Column(db.String(128), nullable=True)
    notes = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "loyalty_points_id": self.loyalty_points_id,
            "patient_id": self.patient_id,
            "program_id": self.program_id,
            "invoice_id": self.invoice_id,
            "type": self.type,
            "points": self.points,
            "balance_after": self.balance_after,
            "reference": self.reference,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
