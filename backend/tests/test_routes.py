"""API tests through the Flask test client."""

from datetime import date

from conftest import make_batch
from rxpos.services import consignment_service


def _checkout_body(warehouse, product, quantity=2, **extra):
    body = {
        "warehouse_id": warehouse.id,
        "payment_method": "pago_movil",
        "exchange_rate": "40.00",
        "items": [{"product_id": product.id, "quantity": quantity}],
    }
    body.update(extra)
    return body


def test_health(client, warehouse):
    response = client.get('/api/health')
    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["checks"]["offline_store"]["details"]["pending"] == 0


def test_checkout_and_invoice_lookup(client, batches, product, warehouse):
    response = client.post('/api/pharmacy/pos/checkout', json=_checkout_body(warehouse, product))
    assert response.status_code == 201
    data = response.get_json()
    assert data["invoice"]["total_usd_cents"] == 2320
    assert data["offline_transaction"]["status"] == "pending"

    invoice_id = data["invoice"]["id"]
    response = client.get(f'/api/pharmacy/pos/invoices/{invoice_id}')
    assert response.status_code == 200
    assert response.get_json()["invoice"]["items"][0]["quantity"] == 2

    assert client.get('/api/pharmacy/pos/invoices/999').status_code == 404


def test_checkout_insufficient_stock_is_409(client, batches, product, warehouse):
    response = client.post('/api/pharmacy/pos/checkout', json=_checkout_body(warehouse, product, quantity=20))
    assert response.status_code == 409
    assert response.get_json()["details"]["items"][0]["available_quantity"] == 15


def test_checkout_validation(client, batches, product, warehouse):
    body = _checkout_body(warehouse, product)
    body["items"][0]["quantity"] = "1.5"
    assert client.post('/api/pharmacy/pos/checkout', json=body).status_code == 400

    body = _checkout_body(warehouse, product, payment_method="")
    assert client.post('/api/pharmacy/pos/checkout', json=body).status_code == 400

    body = _checkout_body(warehouse, product, items=[])
    assert client.post('/api/pharmacy/pos/checkout', json=body).status_code == 400


def test_stock_routes(client, batches, product, warehouse):
    response = client.get(f'/api/pharmacy/stock/{product.id}?warehouse_id={warehouse.id}')
    data = response.get_json()
    assert data["available_quantity"] == 15
    assert [b["lot_number"] for b in data["batches"]] == ["B1", "B2"]

    assert client.get(f'/api/pharmacy/stock/{product.id}').status_code == 400

    response = client.get(f'/api/pharmacy/stock/low?warehouse_id={warehouse.id}')
    assert response.get_json()["products"] == []

    response = client.get('/api/pharmacy/stock/expiring?days=3650')
    assert len(response.get_json()["batches"]) == 2


def test_sync_routes(app, client, batches, product, warehouse, monkeypatch):
    monkeypatch.setitem(app.config, "SYNC_ENDPOINT_URL", None)
    client.post('/api/pharmacy/pos/checkout', json=_checkout_body(warehouse, product))

    assert client.get('/api/pharmacy/sync/status').get_json()["pending"] == 1

    response = client.post('/api/pharmacy/sync/run', json={})
    assert response.get_json() == {"synced": 0, "failed": 0, "skipped": 1, "errors": []}

    assert client.post('/api/pharmacy/sync/1/retry').status_code == 502
    assert client.post('/api/pharmacy/sync/999/retry').status_code == 404
    assert client.get('/api/pharmacy/sync/needs-review').get_json() == {"transactions": []}
    assert client.get('/api/pharmacy/sync/synced?limit=5').get_json() == {"transactions": []}
    assert client.get('/api/pharmacy/sync/synced?limit=0').status_code == 400


def test_loyalty_routes(client, batches, product, warehouse, program):
    body = _checkout_body(warehouse, product, quantity=5, patient_id=8)
    invoice = client.post('/api/pharmacy/pos/checkout', json=body).get_json()["invoice"]

    account = client.get(f'/api/pharmacy/loyalty/8/{program.id}').get_json()["account"]
    assert account["points_balance"] == 50

    response = client.post('/api/pharmacy/loyalty/redeem', json={"patient_id": 8, "program_id": program.id, "points": 500})
    assert response.status_code == 422

    response = client.post('/api/pharmacy/loyalty/redeem', json={"patient_id": 8, "program_id": program.id, "points": 20})
    assert response.status_code == 201
    assert response.get_json()["value"] == {"discount_usd_cents": 20, "discount_local_cents": 800}

    response = client.get(f'/api/pharmacy/loyalty/programs/{program.id}/max-redeemable?invoice_id={invoice["id"]}')
    assert response.get_json()["max_redeemable_points"] == 2900

    assert client.get(f'/api/pharmacy/loyalty/9/{program.id}').status_code == 404


def test_consignment_routes(client, product, warehouse):
    make_batch(product, warehouse, lot="C1", expiry=date(2027, 1, 1), quantity=10)
    response = client.post('/api/pharmacy/consignments/', json={
        "supplier_id": 4,
        "supplier_name": "Farmacéutica del Sur",
        "warehouse_id": warehouse.id,
        "consignment_percent": 70,
        "start_date": "2020-01-01",
        "items": [{"product_id": product.id, "quantity": 10}],
    })
    assert response.status_code == 201
    consignment_id = response.get_json()["consignment"]["id"]

    response = client.post(f'/api/pharmacy/consignments/{consignment_id}/sales',
                           json={"product_id": product.id, "quantity": 4})
    assert response.get_json()["consignment"]["payment_due_usd_cents"] == 2800

    response = client.post(f'/api/pharmacy/consignments/{consignment_id}/returns',
                           json={"product_id": product.id, "quantity": 9, "clamp": False})
    assert response.status_code == 422

    response = client.get(f'/api/pharmacy/consignments/{consignment_id}/payment-due')
    assert response.get_json()["payment_due_local_cents"] == 112000

    overdue = client.get('/api/pharmacy/consignments/overdue').get_json()["consignments"]
    assert [c["id"] for c in overdue] == [consignment_id]
    assert consignment_service.get_due_soon_consignments() == []


def test_consignment_create_keeps_zero_payment_terms(client, product, warehouse):
    body = {
        "supplier_id": 4,
        "supplier_name": "Farmacéutica del Sur",
        "warehouse_id": warehouse.id,
        "consignment_percent": 70,
        "payment_terms_days": 0,
        "start_date": "2026-02-01",
        "items": [{"product_id": product.id, "quantity": 2}],
    }
    response = client.post('/api/pharmacy/consignments/', json=body)
    assert response.status_code == 201
    consignment = response.get_json()["consignment"]
    assert consignment["payment_terms_days"] == 0
    assert consignment["payment_due_date"] == "2026-02-01"

    body.pop("payment_terms_days")
    response = client.post('/api/pharmacy/consignments/', json=body)
    assert response.get_json()["consignment"]["payment_terms_days"] == 30


def test_consignment_create_rejects_malformed_item_cost(client, product, warehouse):
    response = client.post('/api/pharmacy/consignments/', json={
        "supplier_id": 4,
        "supplier_name": "Farmacéutica del Sur",
        "warehouse_id": warehouse.id,
        "consignment_percent": 70,
        "items": [{"product_id": product.id, "quantity": 2, "unit_cost_usd_cents": "ten"}],
    })
    assert response.status_code == 400
    assert response.get_json()["details"]["field"] == "unit_cost_usd_cents"


def test_delivery_routes(client, batches, product, warehouse, zone):
    body = _checkout_body(warehouse, product, delivery={
        "zone_id": zone.id,
        "customer_name": "Carla Díaz",
        "customer_phone": "+58 424 1112233",
        "delivery_address": "Los Palos Grandes",
    })
    order = client.post('/api/pharmacy/pos/checkout', json=body).get_json()["delivery_order"]

    response = client.post(f'/api/pharmacy/deliveries/{order["id"]}/status', json={"status": "delivered"})
    assert response.status_code == 409

    response = client.post(f'/api/pharmacy/deliveries/{order["id"]}/status', json={"status": "confirmed", "courier_id": 2})
    assert response.status_code == 200
    assert response.get_json()["delivery_order"]["tracking_notes"][-1]["to_status"] == "confirmed"

    assert client.get(f'/api/pharmacy/deliveries/{order["id"]}').status_code == 200
    rate = client.get('/api/pharmacy/deliveries/on-time-rate').get_json()
    assert rate == {"delivered": 0, "on_time": 0, "on_time_rate": 0.0}


def test_cors_header_for_allowed_origin(client):
    response = client.get('/api/health', headers={"Origin": "http://localhost:5173"})
    assert response.headers["Access-Control-Allow-Origin"] == "http://localhost:5173"
    response = client.get('/api/health', headers={"Origin": "http://evil.test"})
    assert "Access-Control-Allow-Origin" not in response.headers
