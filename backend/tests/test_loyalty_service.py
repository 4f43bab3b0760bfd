import random
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from conftest import cart_of, make_batch, make_context
from rxpos.extensions import db
from rxpos.models import LoyaltyPoints, LoyaltyTransaction, Product
from rxpos.models.loyalty import LOYALTY_EARNED
from rxpos.services import invoice_service, loyalty_service
from rxpos.services.currency_service import DualAmount
from rxpos.services.errors import InvalidRedemptionError, LoyaltyError


PATIENT_ID = 501


def _sell(product, warehouse, quantity, patient_id=PATIENT_ID):
    return invoice_service.compose_invoice(
        cart_of(product, quantity), make_context(warehouse, patient_id=patient_id),
    )


@pytest.fixture
def cheap_product(db_session, warehouse):
    p = Product(sku="VITC", name="Vitamina C", category="vitamins",
                price_usd_cents=999, price_local_cents=39960, tax_rate_bps=1600)
    db_session.add(p)
    db_session.commit()
    make_batch(p, warehouse, lot="V1", expiry=date(2027, 1, 1), quantity=100)
    return p


def _account():
    return db.session.query(LoyaltyPoints).filter_by(patient_id=PATIENT_ID).first()


def test_below_minimum_earns_nothing(program, cheap_product, warehouse):
    invoice = _sell(cheap_product, warehouse, 1)
    assert loyalty_service.calculate_points_earned(program, invoice) == 0
    assert loyalty_service.earn_loyalty_points(invoice, program) is None
    assert _account() is None


def test_points_are_floored_usd_subtotal(program, batches, product, warehouse):
    invoice = _sell(product, warehouse, 5)  # $50.00 pre-tax
    entry = loyalty_service.earn_loyalty_points(invoice, program)

    assert entry.points == 50
    assert entry.balance_after == 50
    account = _account()
    assert (account.points_balance, account.points_earned, account.points_redeemed) == (50, 50, 0)


def test_fractional_points_floor(program, cheap_product, warehouse):
    program.points_per_currency = Decimal("1.5")
    db.session.commit()
    invoice = _sell(cheap_product, warehouse, 3)  # $29.97 * 1.5 = 44.955
    assert loyalty_service.calculate_points_earned(program, invoice) == 44


def test_earn_is_idempotent_per_invoice(program, batches, product, warehouse):
    invoice = _sell(product, warehouse, 2)
    first = loyalty_service.earn_loyalty_points(invoice, program)
    second = loyalty_service.earn_loyalty_points(invoice, program)
    assert first.id == second.id
    assert _account().points_balance == 20


def test_earn_retry_after_concurrent_earn_does_not_double_credit(program, batches, product, warehouse, monkeypatch):
    invoice = _sell(product, warehouse, 2)
    real_append = loyalty_service._append
    calls = []

    def racing_append(account, **kwargs):
        calls.append(kwargs["tx_type"])
        if len(calls) == 1:
            # another worker credits this invoice first, so this attempt loses the version check
            real_append(account, **kwargs)
            db.session.commit()
            raise StaleDataError("loyalty_points row changed underneath")
        return real_append(account, **kwargs)

    monkeypatch.setattr(loyalty_service, "_append", racing_append)
    entry = loyalty_service.earn_loyalty_points(invoice, program)

    earned = db.session.query(LoyaltyTransaction).filter_by(invoice_id=invoice.id, type=LOYALTY_EARNED).all()
    assert [e.id for e in earned] == [entry.id]
    assert calls == [LOYALTY_EARNED]
    assert _account().points_balance == 20


def test_one_earn_row_per_invoice_and_program(program, batches, product, warehouse):
    invoice = _sell(product, warehouse, 2)
    entry = loyalty_service.earn_loyalty_points(invoice, program)

    db.session.add(LoyaltyTransaction(
        loyalty_points_id=entry.loyalty_points_id,
        patient_id=entry.patient_id,
        program_id=entry.program_id,
        invoice_id=invoice.id,
        type=LOYALTY_EARNED,
        points=entry.points,
        balance_after=entry.balance_after + entry.points,
        created_at=entry.created_at,
    ))
    with pytest.raises(IntegrityError):
        db.session.commit()
    db.session.rollback()


def test_earn_requires_patient_and_active_program(program, batches, product, warehouse):
    anonymous = invoice_service.compose_invoice(cart_of(product, 2), make_context(warehouse))
    with pytest.raises(LoyaltyError):
        loyalty_service.earn_loyalty_points(anonymous, program)

    program.is_active = False
    db.session.commit()
    with pytest.raises(LoyaltyError):
        loyalty_service.earn_loyalty_points(_sell(product, warehouse, 2), program)


def test_eligibility_filters(program, batches, product, cheap_product, warehouse):
    program.eligible_categories = ["vitamins"]
    db.session.commit()
    assert loyalty_service.is_product_eligible(program, cheap_product)
    assert not loyalty_service.is_product_eligible(program, product)

    program.eligible_categories = []
    program.eligible_product_ids = [product.id]
    program.requires_prescription = True
    db.session.commit()
    assert not loyalty_service.is_product_eligible(program, product)
    product.requires_prescription = True
    assert loyalty_service.is_product_eligible(program, product)


def test_redeem_rejections_leave_balance_untouched(program, batches, product, warehouse):
    loyalty_service.earn_loyalty_points(_sell(product, warehouse, 5), program)

    for points in (5, 51, 0):
        with pytest.raises(InvalidRedemptionError):
            loyalty_service.redeem_loyalty_points(PATIENT_ID, program.id, points)

    with pytest.raises(InvalidRedemptionError):
        loyalty_service.redeem_loyalty_points(999, program.id, 20)

    account = _account()
    assert (account.points_balance, account.points_redeemed) == (50, 0)
    assert db.session.query(LoyaltyTransaction).count() == 1


def test_redeem_and_value(program, batches, product, warehouse):
    loyalty_service.earn_loyalty_points(_sell(product, warehouse, 5), program)
    entry = loyalty_service.redeem_loyalty_points(PATIENT_ID, program.id, 30)

    assert entry.points == -30
    assert entry.balance_after == 20
    account = _account()
    assert (account.points_balance, account.points_earned, account.points_redeemed) == (20, 50, 30)
    assert loyalty_service.calculate_redemption_value(program, 30) == DualAmount(30, 1200)


def test_max_redeemable_takes_smaller_currency_cap(program):
    # 50% of $10.00 = $5.00 -> 500 pts ; 50% of Bs 100.00 = Bs 50 -> 125 pts
    total = DualAmount(1000, 10000)
    assert loyalty_service.calculate_max_redeemable_points(total, program) == 125

    program.max_redemption_percent = 0
    assert loyalty_service.calculate_max_redeemable_points(total, program) == 0


def test_redeem_against_invoice_respects_cap(program, batches, product, warehouse):
    loyalty_service.earn_loyalty_points(_sell(product, warehouse, 10), program)
    small = _sell(product, warehouse, 1)  # total $11.60 -> cap 580 usd pts, Bs 232 -> 580 local pts
    cap = loyalty_service.calculate_max_redeemable_points(loyalty_service.invoice_total(small), program)
    assert cap == 580

    program.points_value_usd = Decimal("0.10")
    db.session.commit()
    with pytest.raises(InvalidRedemptionError):
        loyalty_service.redeem_loyalty_points(PATIENT_ID, program.id, 60, invoice=small)
    entry = loyalty_service.redeem_loyalty_points(PATIENT_ID, program.id, 58, invoice=small)
    assert entry.invoice_id == small.id


def test_adjust_and_expire(program):
    loyalty_service.adjust_points(PATIENT_ID, program.id, 40, notes="welcome bonus")
    with pytest.raises(InvalidRedemptionError):
        loyalty_service.adjust_points(PATIENT_ID, program.id, -41)
    loyalty_service.adjust_points(PATIENT_ID, program.id, -10)
    loyalty_service.expire_points(PATIENT_ID, program.id, 5)
    entry = loyalty_service.expire_points(PATIENT_ID, program.id)

    assert entry.points == -25
    account = _account()
    assert (account.points_balance, account.points_earned, account.points_redeemed) == (0, 40, 40)
    assert loyalty_service.expire_points(PATIENT_ID, program.id) is None


def test_random_operations_keep_ledger_identity(program):
    rng = random.Random(99)
    for _ in range(60):
        op = rng.choice(["earn", "redeem", "expire"])
        try:
            if op == "earn":
                loyalty_service.adjust_points(PATIENT_ID, program.id, rng.randint(1, 80))
            elif op == "redeem":
                loyalty_service.redeem_loyalty_points(PATIENT_ID, program.id, rng.randint(1, 120))
            else:
                loyalty_service.expire_points(PATIENT_ID, program.id, rng.randint(1, 30))
        except InvalidRedemptionError:
            pass

        account = _account()
        if account is not None:
            assert account.points_balance == account.points_earned - account.points_redeemed
            assert account.points_balance >= 0

    replay = loyalty_service.replay_loyalty_ledger(PATIENT_ID, program.id)
    assert replay["mismatches"] == []
    assert replay["consistent"] is True
