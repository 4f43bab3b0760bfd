import pytest
from sqlalchemy.exc import OperationalError

from conftest import cart_of, make_context
from rxpos.extensions import db
from rxpos.models import Batch, Invoice, OfflineTransaction
from rxpos.services import checkout_service, offline_service, sync_service
from rxpos.services.errors import InsufficientStockError


def test_checkout_runs_every_step(batches, product, warehouse, program, zone):
    result = checkout_service.checkout(
        cart_of(product, 5),
        make_context(warehouse, patient_id=42, cashier_id=3),
        delivery={
            "zone_id": zone.id,
            "customer_name": "Luis Rojas",
            "customer_phone": "+58 414 0000000",
            "delivery_address": "Calle Real de Sabana Grande",
            "distance_km": 2,
        },
    )

    assert result.warnings == []
    assert result.offline_transaction.invoice_number == result.invoice.invoice_number
    assert result.offline_transaction.status == "pending"
    assert [t.points for t in result.loyalty_transactions] == [50]
    assert result.delivery_order.invoice_id == result.invoice.id
    data = result.to_dict()
    assert data["invoice"]["items"][0]["allocations"][0]["lot_number"] == "B1"


def test_downstream_failure_is_a_warning(batches, product, warehouse, zone):
    result = checkout_service.checkout(
        cart_of(product, 1),
        make_context(warehouse),
        delivery={"zone_id": zone.id, "customer_name": "", "customer_phone": "", "delivery_address": ""},
    )

    assert result.delivery_order is None
    assert [w["stage"] for w in result.warnings] == ["delivery"]
    assert db.session.query(Invoice).count() == 1
    assert db.session.query(OfflineTransaction).count() == 1


def test_unknown_loyalty_program_is_a_warning(batches, product, warehouse, program):
    result = checkout_service.checkout(
        cart_of(product, 2),
        make_context(warehouse, patient_id=42),
        loyalty_program_ids=[program.id, 404],
    )
    assert [t.points for t in result.loyalty_transactions] == [20]
    assert [w["stage"] for w in result.warnings] == ["loyalty"]


def test_rejected_sale_records_nothing(batches, product, warehouse):
    with pytest.raises(InsufficientStockError):
        checkout_service.checkout(cart_of(product, 99), make_context(warehouse))

    assert db.session.query(Invoice).count() == 0
    assert db.session.query(OfflineTransaction).count() == 0
    assert [db.session.get(Batch, b.id).quantity for b in batches] == [5, 10]


def test_offline_store_failure_keeps_the_sale_and_is_backfilled(app, batches, product, warehouse, sync_server, monkeypatch):
    def locked(invoice):
        raise OperationalError("INSERT INTO offline_transactions", {}, Exception("database is locked"))

    monkeypatch.setattr(checkout_service, "record_offline_transaction", locked)
    result = checkout_service.checkout(cart_of(product, 2), make_context(warehouse))

    assert result.offline_transaction is None
    assert [w["stage"] for w in result.warnings] == ["offline"]
    assert result.to_dict()["offline_transaction"] is None
    assert db.session.query(Invoice).count() == 1
    assert db.session.get(Batch, batches[0].id).quantity == 3
    assert db.session.query(OfflineTransaction).count() == 0

    monkeypatch.undo()
    worker = sync_service.SyncWorker(app, interval=0, transport=sync_server.transport())
    worker.run(iterations=1)

    assert worker.runs[0].synced == 1
    assert list(sync_server.received) == [result.invoice.invoice_number]
    assert offline_service.record_missing_offline_transactions() == []


def test_backfill_only_records_missing_invoices(batches, product, warehouse):
    mirrored = checkout_service.checkout(cart_of(product, 1), make_context(warehouse))
    db.session.delete(mirrored.offline_transaction)
    db.session.commit()
    kept = checkout_service.checkout(cart_of(product, 1), make_context(warehouse))

    recorded = offline_service.record_missing_offline_transactions()

    assert [tx.invoice_number for tx in recorded] == [mirrored.invoice.invoice_number]
    assert recorded[0].status == "pending"
    assert db.session.query(OfflineTransaction).count() == 2
    assert offline_service.get_by_invoice_number(kept.invoice.invoice_number).id == kept.offline_transaction.id
