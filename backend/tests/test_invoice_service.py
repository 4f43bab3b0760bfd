from datetime import date

import pytest
from sqlalchemy.orm.exc import StaleDataError

from conftest import cart_of, make_batch, make_context
from rxpos.extensions import db
from rxpos.models import AuditEvent, Batch, Invoice, InvoiceItemAllocation, Product
from rxpos.services import invoice_service
from rxpos.services.errors import AllocationRaceError, InsufficientStockError, InvoiceError, NotFoundError
from rxpos.services.invoice_service import CartItem


def test_compose_invoice_totals_and_allocations(batches, product, warehouse):
    b1, b2 = batches
    invoice = invoice_service.compose_invoice(cart_of(product, 8), make_context(warehouse))

    assert invoice.invoice_number == "FAC-T01-CCS-000001"
    assert invoice.status == "paid"
    assert (invoice.subtotal_usd_cents, invoice.subtotal_local_cents) == (8000, 320000)
    assert (invoice.tax_usd_cents, invoice.tax_local_cents) == (1280, 51200)
    assert (invoice.total_usd_cents, invoice.total_local_cents) == (9280, 371200)

    [item] = invoice.items
    assert item.product_name == "Amoxicilina 500mg"
    assert [(a.batch_id, a.quantity) for a in item.allocations] == [(b1.id, 5), (b2.id, 3)]
    assert db.session.get(Batch, b2.id).quantity == 7

    events = db.session.query(AuditEvent).filter_by(event_type="invoice.created").all()
    assert [e.invoice_id for e in events] == [invoice.id]


def test_invoice_numbers_increase(batches, product, warehouse):
    first = invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse))
    second = invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse))
    assert first.invoice_number.endswith("000001")
    assert second.invoice_number.endswith("000002")


def test_insufficient_stock_rolls_back_everything(batches, product, warehouse, db_session):
    other = Product(sku="IBU-400", name="Ibuprofeno 400mg", price_usd_cents=300, price_local_cents=12000)
    db_session.add(other)
    db_session.commit()
    make_batch(other, warehouse, lot="I1", expiry=date(2026, 1, 1), quantity=2)

    cart = [CartItem(product_id=product.id, quantity=4), CartItem(product_id=other.id, quantity=3)]
    with pytest.raises(InsufficientStockError) as exc:
        invoice_service.compose_invoice(cart, make_context(warehouse))

    assert exc.value.details["items"] == [
        {"product_id": other.id, "requested_quantity": 3, "available_quantity": 2},
    ]
    assert db.session.query(Invoice).count() == 0
    assert db.session.query(InvoiceItemAllocation).count() == 0
    assert [db.session.get(Batch, b.id).quantity for b in batches] == [5, 10]


@pytest.mark.parametrize("failure, expected", [
    (lambda: InsufficientStockError("batch drained underneath"), InsufficientStockError),
    (lambda: StaleDataError("batch version changed"), AllocationRaceError),
])
def test_failure_after_first_line_deducted_rolls_back(batches, product, warehouse, db_session, monkeypatch, failure, expected):
    other = Product(sku="IBU-400", name="Ibuprofeno 400mg", price_usd_cents=300, price_local_cents=12000)
    db_session.add(other)
    db_session.commit()
    ibu = make_batch(other, warehouse, lot="I1", expiry=date(2026, 1, 1), quantity=2)

    real_allocate = invoice_service.allocate_locked
    calls = []

    def second_line_fails(product_id, warehouse_id, quantity, **kwargs):
        calls.append(product_id)
        if len(calls) % 2 == 0:
            raise failure()
        result = real_allocate(product_id, warehouse_id, quantity, **kwargs)
        db.session.flush()
        assert db.session.get(Batch, batches[0].id).quantity == 1
        return result

    monkeypatch.setattr(invoice_service, "allocate_locked", second_line_fails)
    cart = [CartItem(product_id=product.id, quantity=4), CartItem(product_id=other.id, quantity=1)]
    with pytest.raises(expected):
        invoice_service.compose_invoice(cart, make_context(warehouse))

    db.session.expire_all()
    assert db.session.query(Invoice).count() == 0
    assert db.session.query(InvoiceItemAllocation).count() == 0
    assert [db.session.get(Batch, b.id).quantity for b in batches] == [5, 10]
    assert db.session.get(Batch, ibu.id).quantity == 2


def test_same_product_on_two_lines_is_checked_as_a_whole(batches, product, warehouse):
    cart = [CartItem(product_id=product.id, quantity=9), CartItem(product_id=product.id, quantity=9)]
    with pytest.raises(InsufficientStockError):
        invoice_service.compose_invoice(cart, make_context(warehouse))
    assert db.session.query(Invoice).count() == 0


def test_reserved_batch_is_allocated_before_fefo_lines(batches, product, warehouse):
    b1, b2 = batches
    cart = [
        CartItem(product_id=product.id, quantity=5),
        CartItem(product_id=product.id, quantity=8, batch_id=b2.id),
    ]
    invoice = invoice_service.compose_invoice(cart, make_context(warehouse))
    fefo_line, pinned_line = invoice.items
    assert [(a.batch_id, a.quantity) for a in pinned_line.allocations] == [(b2.id, 8)]
    assert [(a.batch_id, a.quantity) for a in fefo_line.allocations] == [(b1.id, 5)]


def test_line_snapshot_survives_catalog_change(batches, product, warehouse):
    invoice = invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse))
    product.price_usd_cents = 9999
    product.name = "Renamed"
    db.session.commit()

    stored = invoice_service.get_invoice(invoice.id)
    assert stored.items[0].unit_price_usd_cents == 1000
    assert stored.items[0].product_name == "Amoxicilina 500mg"


def test_prescription_required(batches, product, warehouse):
    product.requires_prescription = True
    db.session.commit()

    with pytest.raises(InvoiceError) as exc:
        invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse))
    assert exc.value.details["product_ids"] == [product.id]

    invoice = invoice_service.compose_invoice(
        cart_of(product, 1, prescription_item_id=77), make_context(warehouse),
    )
    assert invoice.items[0].prescription_item_id == 77


@pytest.mark.parametrize("cart_factory, error", [
    (lambda p: [], InvoiceError),
    (lambda p: [CartItem(product_id=p.id, quantity=0)], InvoiceError),
    (lambda p: [CartItem(product_id=9999, quantity=1)], NotFoundError),
])
def test_invalid_carts(batches, product, warehouse, cart_factory, error):
    with pytest.raises(error):
        invoice_service.compose_invoice(cart_factory(product), make_context(warehouse))
    assert db.session.query(Invoice).count() == 0


def test_invalid_context(batches, product, warehouse):
    with pytest.raises(InvoiceError):
        invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse, exchange_rate="0"))
    with pytest.raises(NotFoundError):
        invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse, warehouse_id=404))


def test_inactive_product_cannot_be_sold(batches, product, warehouse):
    product.is_active = False
    db.session.commit()
    with pytest.raises(InvoiceError):
        invoice_service.compose_invoice(cart_of(product, 1), make_context(warehouse))
