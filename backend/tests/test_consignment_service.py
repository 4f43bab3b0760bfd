import random
from datetime import date

import pytest

from conftest import cart_of, make_batch, make_context
from rxpos.extensions import db
from rxpos.models import Consignment, ConsignmentItem
from rxpos.models.consignment import CONSIGNMENT_ACTIVE, CONSIGNMENT_CANCELLED, CONSIGNMENT_COMPLETED
from rxpos.services import consignment_service, invoice_service
from rxpos.services.currency_service import DualAmount
from rxpos.services.errors import InvalidConsignmentOperation, NotFoundError, ServiceError


def _create(product, warehouse, *, quantity=10, start=None, terms=30, percent=60, batch=None):
    item = {
        "product_id": product.id,
        "quantity": quantity,
        "unit_cost_usd_cents": 600,
        "unit_cost_local_cents": 24000,
    }
    if batch is not None:
        item["batch_id"] = batch.id
    return consignment_service.create_consignment(
        supplier_id=7,
        supplier_name="Distribuidora Andina",
        warehouse_id=warehouse.id,
        consignment_percent=percent,
        payment_terms_days=terms,
        start_date=start or date(2026, 1, 1),
        items=[item],
    )


def test_create_consignment(product, warehouse):
    consignment = _create(product, warehouse)
    assert consignment.consignment_number == "CON-T01-CCS-000001"
    assert consignment.status == CONSIGNMENT_ACTIVE
    assert consignment.total_value_usd_cents == 10 * 1000
    assert consignment.payment_due_date == date(2026, 1, 31)
    [item] = consignment.items
    assert item.unit_price_local_cents == 40000


def test_sale_updates_totals_and_payment_due(product, warehouse):
    consignment = _create(product, warehouse)
    consignment = consignment_service.record_consignment_sale(consignment.id, product.id, 3)

    assert consignment.items[0].quantity_sold == 3
    assert (consignment.total_sold_usd_cents, consignment.total_sold_local_cents) == (3000, 120000)
    assert consignment_service.calculate_payment_due(consignment) == DualAmount(1800, 72000)


def test_overshoot_clamps_by_default(product, warehouse):
    consignment = _create(product, warehouse, quantity=4)
    consignment_service.return_consignment_items(consignment.id, product.id, 1)
    consignment = consignment_service.record_consignment_sale(consignment.id, product.id, 10)

    item = consignment.items[0]
    assert (item.quantity_sold, item.quantity_returned) == (3, 1)
    assert consignment.status == CONSIGNMENT_COMPLETED
    assert consignment.end_date is not None


def test_overshoot_rejected_without_clamp(product, warehouse):
    consignment = _create(product, warehouse, quantity=4)
    with pytest.raises(InvalidConsignmentOperation) as exc:
        consignment_service.record_consignment_sale(consignment.id, product.id, 5, clamp=False)
    assert exc.value.details["remaining_quantity"] == 4
    db.session.expire_all()
    assert db.session.query(ConsignmentItem).one().quantity_sold == 0


@pytest.mark.parametrize("qty", [0, -2])
def test_rejects_non_positive_quantity(product, warehouse, qty):
    consignment = _create(product, warehouse)
    with pytest.raises(InvalidConsignmentOperation):
        consignment_service.record_consignment_sale(consignment.id, product.id, qty)


def test_rejects_unknown_product_and_inactive(product, warehouse):
    consignment = _create(product, warehouse)
    with pytest.raises(InvalidConsignmentOperation):
        consignment_service.record_consignment_sale(consignment.id, product.id + 100, 1)

    consignment_service.cancel_consignment(consignment.id)
    assert consignment_service.get_consignment(consignment.id).status == CONSIGNMENT_CANCELLED
    with pytest.raises(InvalidConsignmentOperation):
        consignment_service.record_consignment_sale(consignment.id, product.id, 1)

    with pytest.raises(NotFoundError):
        consignment_service.record_consignment_sale(9999, product.id, 1)


def test_random_sales_and_returns_never_exceed_consigned(product, warehouse):
    consignment = _create(product, warehouse, quantity=25)
    rng = random.Random(7)
    for _ in range(30):
        op = rng.choice([consignment_service.record_consignment_sale, consignment_service.return_consignment_items])
        try:
            op(consignment.id, product.id, rng.randint(1, 6), clamp=rng.random() < 0.7)
        except InvalidConsignmentOperation:
            pass
        db.session.expire_all()
        item = db.session.query(ConsignmentItem).one()
        assert 0 <= item.quantity_sold + item.quantity_returned <= item.quantity_consigned


def test_overdue_and_due_soon(product, warehouse):
    overdue = _create(product, warehouse, start=date(2026, 1, 1), terms=30)   # due 2026-01-31
    soon = _create(product, warehouse, start=date(2026, 1, 10), terms=30)     # due 2026-02-09
    later = _create(product, warehouse, start=date(2026, 3, 1), terms=30)     # due 2026-03-31

    as_of = date(2026, 2, 5)
    assert [c.id for c in consignment_service.get_overdue_consignments(as_of=as_of)] == [overdue.id]
    assert [c.id for c in consignment_service.get_due_soon_consignments(days=7, as_of=as_of)] == [soon.id]
    assert later.id not in [c.id for c in consignment_service.get_due_soon_consignments(days=7, as_of=as_of)]


def test_invoice_allocations_feed_consignment_sales(product, warehouse):
    consigned_batch = make_batch(product, warehouse, lot="CN1", expiry=date(2025, 1, 1), quantity=6)
    make_batch(product, warehouse, lot="OWN", expiry=date(2027, 1, 1), quantity=20)
    consignment = _create(product, warehouse, quantity=6, batch=consigned_batch)

    invoice = invoice_service.compose_invoice(cart_of(product, 8), make_context(warehouse))
    touched = consignment_service.record_invoice_consignment_sales(invoice)

    assert [c.id for c in touched] == [consignment.id]
    assert consignment_service.get_consignment(consignment.id).items[0].quantity_sold == 6


def test_invoice_sales_land_on_the_allocated_lot(product, warehouse):
    late = make_batch(product, warehouse, lot="CA", expiry=date(2027, 1, 1), quantity=5)
    early = make_batch(product, warehouse, lot="CB", expiry=date(2025, 1, 1), quantity=5)
    consignment = consignment_service.create_consignment(
        supplier_id=7,
        supplier_name="Distribuidora Andina",
        warehouse_id=warehouse.id,
        consignment_percent=60,
        start_date=date(2026, 1, 1),
        items=[
            {"product_id": product.id, "batch_id": late.id, "quantity": 5,
             "unit_price_usd_cents": 1000, "unit_price_local_cents": 40000},
            {"product_id": product.id, "batch_id": early.id, "quantity": 5,
             "unit_price_usd_cents": 1200, "unit_price_local_cents": 48000},
        ],
    )

    invoice = invoice_service.compose_invoice(cart_of(product, 3), make_context(warehouse))
    consignment_service.record_invoice_consignment_sales(invoice)

    consignment = consignment_service.get_consignment(consignment.id)
    assert {item.lot_number: item.quantity_sold for item in consignment.items} == {"CA": 0, "CB": 3}
    assert (consignment.total_sold_usd_cents, consignment.total_sold_local_cents) == (3600, 144000)
    assert consignment_service.calculate_payment_due(consignment) == DualAmount(2160, 86400)


def test_sale_pinned_to_one_line_ignores_sibling_lots(product, warehouse):
    first = make_batch(product, warehouse, lot="L1", expiry=date(2026, 3, 1), quantity=2)
    second = make_batch(product, warehouse, lot="L2", expiry=date(2026, 9, 1), quantity=2)
    consignment = consignment_service.create_consignment(
        supplier_id=7,
        supplier_name="Distribuidora Andina",
        warehouse_id=warehouse.id,
        consignment_percent=60,
        items=[
            {"product_id": product.id, "batch_id": first.id, "quantity": 2},
            {"product_id": product.id, "batch_id": second.id, "quantity": 2},
        ],
    )
    line_two = [item for item in consignment.items if item.lot_number == "L2"][0]

    consignment = consignment_service.record_consignment_sale(
        consignment.id, product.id, 5, item_id=line_two.id,
    )
    assert {item.lot_number: item.quantity_sold for item in consignment.items} == {"L1": 0, "L2": 2}

    with pytest.raises(InvalidConsignmentOperation):
        consignment_service.record_consignment_sale(consignment.id, product.id, 1, item_id=line_two.id, clamp=False)


@pytest.mark.parametrize("field, value", [
    ("unit_cost_usd_cents", "abc"),
    ("unit_price_local_cents", "12.5"),
    ("unit_cost_local_cents", -1),
    ("product_id", "x"),
])
def test_create_rejects_malformed_item_numbers(product, warehouse, field, value):
    item = {"product_id": product.id, "quantity": 3, field: value}
    with pytest.raises(ServiceError) as exc:
        consignment_service.create_consignment(
            supplier_id=7,
            supplier_name="Distribuidora Andina",
            warehouse_id=warehouse.id,
            consignment_percent=60,
            items=[item],
        )
    assert exc.value.details["field"] == field
    assert db.session.query(Consignment).count() == 0
