# Overview: Loyalty points accrual, redemption, adjustment and ledger replay.

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Iterable, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db
from ..models import Invoice, LoyaltyPoints, LoyaltyProgram, LoyaltyTransaction, Product
from ..models.loyalty import LOYALTY_ADJUSTED, LOYALTY_EARNED, LOYALTY_EXPIRED, LOYALTY_REDEEMED
from rxpos.time_utils import utcnow
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .currency_service import DualAmount
from .errors import InvalidRedemptionError, LoyaltyError, NotFoundError
"""
Loyalty Ledger Invariants (authoritative)

- points_balance == points_earned - points_redeemed, always.
- Inflows (earn, positive adjust) raise points_earned; outflows (redeem,
  expire, negative adjust) raise points_redeemed. Neither counter ever drops.
- points_balance never goes below zero (DB check + service check).
- Every mutation appends one LoyaltyTransaction carrying balance_after, in
  the same DB transaction as the balance change. Replaying the ledger in id
  order reproduces the stored counters.
- A rejected redemption mutates nothing.
- One earn entry per (invoice, program).
"""


def _to_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _floor_int(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def get_program(program_id: int) -> LoyaltyProgram:
    program = db.session.get(LoyaltyProgram, program_id)
    if program is None:
        raise NotFoundError("Loyalty program not found", details={"program_id": program_id})
    return program


def get_active_programs() -> list[LoyaltyProgram]:
    return db.session.query(LoyaltyProgram).filter_by(is_active=True).order_by(LoyaltyProgram.id.asc()).all()


def get_loyalty_account(patient_id: int, program_id: int) -> LoyaltyPoints:
    account = (
        db.session.query(LoyaltyPoints)
        .filter_by(patient_id=patient_id, program_id=program_id)
        .first()
    )
    if account is None:
        raise NotFoundError(
            "Loyalty account not found",
            details={"patient_id": patient_id, "program_id": program_id},
        )
    return account


def is_product_eligible(program: LoyaltyProgram, product) -> bool:
    """
    product may be a Product or an InvoiceItem snapshot (anything with
    id/product_id, category and requires_prescription).

    No product/category lists means every product qualifies.
    """
    requires_rx = bool(getattr(product, "requires_prescription", False))
    if program.requires_prescription and not requires_rx:
        return False

    product_ids = set(program.eligible_product_ids or [])
    categories = set(program.eligible_categories or [])
    if not product_ids and not categories:
        return True

    product_id = getattr(product, "product_id", None)
    if product_id is None:
        product_id = getattr(product, "id", None)
    return product_id in product_ids or getattr(product, "category", None) in categories


def eligible_subtotal(
    program: LoyaltyProgram,
    invoice: Invoice,
    products: Optional[Mapping[int, Product]] = None,
) -> DualAmount:
    """Sum of pre-tax subtotals of eligible lines, per currency."""
    total = DualAmount()
    for item in invoice.items:
        subject = products.get(item.product_id, item) if products else item
        if is_product_eligible(program, subject):
            total = total + DualAmount(item.subtotal_usd_cents, item.subtotal_local_cents)
    return total


def calculate_points_earned(
    program: LoyaltyProgram,
    invoice: Invoice,
    products: Optional[Mapping[int, Product]] = None,
) -> int:
    """
    floor(eligible USD subtotal * points_per_currency), or 0 when the eligible
    subtotal is below the program minimum. A local-currency minimum is only
    checked when configured (> 0).
    """
    eligible = eligible_subtotal(program, invoice, products)
    if eligible.usd_cents <= 0:
        return 0
    if eligible.usd_cents < (program.min_purchase_usd_cents or 0):
        return 0
    if program.min_purchase_local_cents and eligible.local_cents < program.min_purchase_local_cents:
        return 0

    usd = Decimal(eligible.usd_cents) / Decimal(100)
    return max(0, _floor_int(usd * _to_decimal(program.points_per_currency)))


def calculate_max_redeemable_points(invoice_total: DualAmount, program: LoyaltyProgram) -> int:
    """
    Points covering at most max_redemption_percent of the invoice total,
    computed per currency and taking the smaller of the two.
    """
    percent = Decimal(program.max_redemption_percent or 0)
    if percent <= 0:
        return 0

    candidates = []
    for total_cents, point_value in (
        (invoice_total.usd_cents, program.points_value_usd),
        (invoice_total.local_cents, program.points_value_local),
    ):
        value = _to_decimal(point_value or 0)
        if value <= 0:
            continue
        cap = Decimal(total_cents) / Decimal(100) * percent / Decimal(100)
        candidates.append(max(0, _floor_int(cap / value)))
    return min(candidates) if candidates else 0


def calculate_redemption_value(program: LoyaltyProgram, points: int) -> DualAmount:
    """Discount granted for `points`, in cents per currency (half-up)."""
    def _cents(point_value) -> int:
        amount = Decimal(points) * _to_decimal(point_value or 0) * Decimal(100)
        return int(amount.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    return DualAmount(_cents(program.points_value_usd), _cents(program.points_value_local))


def invoice_total(invoice: Invoice) -> DualAmount:
    return DualAmount(invoice.total_usd_cents, invoice.total_local_cents)


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------

def _locked_account(patient_id: int, program_id: int, *, create: bool) -> Optional[LoyaltyPoints]:
    account = lock_for_update(
        db.session.query(LoyaltyPoints).filter_by(patient_id=patient_id, program_id=program_id)
    ).first()
    if account is None and create:
        account = LoyaltyPoints(
            patient_id=patient_id,
            program_id=program_id,
            points_balance=0,
            points_earned=0,
            points_redeemed=0,
        )
        db.session.add(account)
        db.session.flush()
    return account


def _append(
    account: LoyaltyPoints,
    *,
    tx_type: str,
    points: int,
    invoice_id: Optional[int] = None,
    reference: Optional[str] = None,
    notes: Optional[str] = None,
) -> LoyaltyTransaction:
    """Apply a signed delta to the account and append the matching ledger entry."""
    now = utcnow()
    if points >= 0:
        account.points_earned += points
    else:
        account.points_redeemed += -points
    account.points_balance = account.points_earned - account.points_redeemed
    if account.points_balance < 0:
        raise InvalidRedemptionError(
            "Loyalty balance cannot go negative",
            details={"points": points, "loyalty_points_id": account.id},
        )
    account.last_transaction_at = now

    entry = LoyaltyTransaction(
        loyalty_points_id=account.id,
        patient_id=account.patient_id,
        program_id=account.program_id,
        invoice_id=invoice_id,
        type=tx_type,
        points=points,
        balance_after=account.points_balance,
        reference=reference,
        notes=notes,
        created_at=now,
    )
    db.session.add(entry)
    db.session.flush()

    append_audit_event(
        event_type=f"loyalty.{tx_type}",
        event_category="loyalty",
        entity_type="loyalty_points",
        entity_id=account.id,
        invoice_id=invoice_id,
        occurred_at=now,
        payload={"points": points, "balance_after": account.points_balance},
    )
    return entry


def _run(op):
    """Commit-or-rollback wrapper shared by every balance mutation."""
    def _wrapped():
        try:
            result = op()
            db.session.commit()
            return result
        except Exception:
            db.session.rollback()
            raise

    try:
        return run_with_retry(_wrapped)
    except StaleDataError as exc:
        raise LoyaltyError("Concurrent loyalty balance update, retry") from exc


def _require_active(program: LoyaltyProgram) -> None:
    if not program.is_active:
        raise LoyaltyError("Loyalty program is inactive", details={"program_id": program.id})


def earn_loyalty_points(
    invoice: Invoice,
    program: LoyaltyProgram,
    products: Optional[Mapping[int, Product]] = None,
) -> Optional[LoyaltyTransaction]:
    """
    Credit points for a paid invoice.

    Returns the existing entry if this invoice already earned under this
    program, and None when the invoice earns nothing.
    """
    _require_active(program)
    if invoice.patient_id is None:
        raise LoyaltyError("Invoice has no patient", details={"invoice_id": invoice.id})

    def _existing_earn():
        return (
            db.session.query(LoyaltyTransaction)
            .filter_by(invoice_id=invoice.id, program_id=program.id, type=LOYALTY_EARNED)
            .first()
        )

    existing = _existing_earn()
    if existing is not None:
        return existing

    points = calculate_points_earned(program, invoice, products)
    if points <= 0:
        return None

    def _op():
        account = _locked_account(invoice.patient_id, program.id, create=True)
        # one earn entry per (invoice, program), checked under the account lock
        already = _existing_earn()
        if already is not None:
            return already
        return _append(
            account,
            tx_type=LOYALTY_EARNED,
            points=points,
            invoice_id=invoice.id,
            reference=invoice.invoice_number,
        )

    try:
        return _run(_op)
    except IntegrityError:
        db.session.rollback()
        existing = _existing_earn()
        if existing is None:
            raise
        return existing


def redeem_loyalty_points(
    patient_id: int,
    program_id: int,
    points: int,
    *,
    invoice: Optional[Invoice] = None,
    reference: Optional[str] = None,
) -> LoyaltyTransaction:
    """
    Spend points. Rejected without any mutation when points is below the
    program minimum, above the balance, or (with an invoice) above the
    redemption cap for that invoice.
    """
    if not isinstance(points, int) or isinstance(points, bool) or points <= 0:
        raise InvalidRedemptionError("points must be a positive integer", details={"points": points})

    program = get_program(program_id)
    _require_active(program)

    if points < program.min_points_to_redeem:
        raise InvalidRedemptionError(
            "Below minimum redeemable points",
            details={"requested": points, "min_points_to_redeem": program.min_points_to_redeem},
        )

    if invoice is not None:
        cap = calculate_max_redeemable_points(invoice_total(invoice), program)
        if points > cap:
            raise InvalidRedemptionError(
                "Exceeds maximum redeemable points for invoice",
                details={"requested": points, "max_redeemable": cap, "invoice_id": invoice.id},
            )

    def _op():
        account = _locked_account(patient_id, program_id, create=False)
        balance = account.points_balance if account is not None else 0
        if account is None or balance < points:
            raise InvalidRedemptionError(
                "Insufficient points balance",
                details={"requested": points, "balance": balance},
            )
        return _append(
            account,
            tx_type=LOYALTY_REDEEMED,
            points=-points,
            invoice_id=invoice.id if invoice is not None else None,
            reference=reference or (invoice.invoice_number if invoice is not None else None),
        )

    return _run(_op)


def adjust_points(
    patient_id: int,
    program_id: int,
    delta: int,
    *,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
) -> LoyaltyTransaction:
    """Manual correction; negative deltas may not exceed the balance."""
    if not isinstance(delta, int) or isinstance(delta, bool) or delta == 0:
        raise LoyaltyError("delta must be a non-zero integer", details={"delta": delta})
    get_program(program_id)

    def _op():
        account = _locked_account(patient_id, program_id, create=delta > 0)
        if account is None or account.points_balance + delta < 0:
            raise InvalidRedemptionError(
                "Adjustment would make balance negative",
                details={"delta": delta, "balance": account.points_balance if account else 0},
            )
        return _append(account, tx_type=LOYALTY_ADJUSTED, points=delta, reference=reference, notes=notes)

    return _run(_op)


def expire_points(
    patient_id: int,
    program_id: int,
    points: Optional[int] = None,
    *,
    notes: Optional[str] = None,
) -> Optional[LoyaltyTransaction]:
    """Expire `points` (default: the whole balance). None if there is nothing to expire."""
    if points is not None and (not isinstance(points, int) or points <= 0):
        raise LoyaltyError("points must be a positive integer", details={"points": points})

    def _op():
        account = _locked_account(patient_id, program_id, create=False)
        if account is None or account.points_balance == 0:
            return None
        amount = account.points_balance if points is None else points
        if amount > account.points_balance:
            raise InvalidRedemptionError(
                "Cannot expire more than the balance",
                details={"requested": amount, "balance": account.points_balance},
            )
        return _append(account, tx_type=LOYALTY_EXPIRED, points=-amount, notes=notes)

    return _run(_op)


def list_transactions(patient_id: int, program_id: int) -> list[LoyaltyTransaction]:
    return (
        db.session.query(LoyaltyTransaction)
        .filter_by(patient_id=patient_id, program_id=program_id)
        .order_by(LoyaltyTransaction.id.asc())
        .all()
    )


def replay_ledger(entries: Iterable[LoyaltyTransaction]) -> dict:
    """Rebuild counters from ledger entries and flag any balance_after that disagrees."""
    balance = earned = redeemed = 0
    mismatches = []
    for entry in entries:
        if entry.points >= 0:
            earned += entry.points
        else:
            redeemed += -entry.points
        balance = earned - redeemed
        if entry.balance_after != balance:
            mismatches.append({
                "transaction_id": entry.id,
                "expected_balance": balance,
                "recorded_balance": entry.balance_after,
            })
    return {
        "points_balance": balance,
        "points_earned": earned,
        "points_redeemed": redeemed,
        "mismatches": mismatches,
    }


def replay_loyalty_ledger(patient_id: int, program_id: int) -> dict:
    """Replay the ledger and compare against the stored account."""
    result = replay_ledger(list_transactions(patient_id, program_id))
    account = (
        db.session.query(LoyaltyPoints)
        .filter_by(patient_id=patient_id, program_id=program_id)
        .first()
    )
    stored = {
        "points_balance": account.points_balance if account else 0,
        "points_earned": account.points_earned if account else 0,
        "points_redeemed": account.points_redeemed if account else 0,
    }
    result["stored"] = stored
    result["consistent"] = not result["mismatches"] and all(
        result[key] == stored[key] for key in stored
    )
    return result
