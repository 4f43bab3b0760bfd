"""
Pytest fixtures for rxpos backend tests.

Every test gets a fresh app with in-memory main and offline databases,
plus a small catalog: one warehouse, one product with two FEFO batches.
"""

from datetime import date
from decimal import Decimal

import httpx
import pytest

from rxpos import create_app
from rxpos.extensions import db
from rxpos.models import Batch, DeliveryZone, LoyaltyProgram, Product, Warehouse
from rxpos.services.invoice_service import CartItem, CheckoutContext


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_BINDS': {'offline': 'sqlite:///:memory:'},
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'TERMINAL_CODE': 'T01',
    'SYNC_ENDPOINT_URL': 'http://sync.test',
    'SYNC_BACKOFF_BASE_SECONDS': 0,
    'SYNC_MANUAL_REVIEW_THRESHOLD': 3,
    'SYNC_MAX_WORKERS': 2,
    'ENFORCE_PRESCRIPTIONS': True,
}


@pytest.fixture(scope='function')
def app():
    """Create application for testing."""
    app = create_app(test_config=dict(TEST_CONFIG))
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    return db.session


@pytest.fixture(scope='function')
def warehouse(db_session):
    wh = Warehouse(code="CCS", name="Caracas Centro")
    db_session.add(wh)
    db_session.commit()
    return wh


@pytest.fixture(scope='function')
def product(db_session):
    """$10.00 / Bs 400.00, IVA 16%."""
    p = Product(
        sku="AMOX-500",
        name="Amoxicilina 500mg",
        generic_name="amoxicillin",
        category="antibiotics",
        price_usd_cents=1000,
        price_local_cents=40000,
        tax_rate_bps=1600,
        reorder_point=5,
    )
    db_session.add(p)
    db_session.commit()
    return p


def make_batch(product, warehouse, *, lot, expiry, quantity, zone="available"):
    batch = Batch(
        product_id=product.id,
        warehouse_id=warehouse.id,
        lot_number=lot,
        expiry_date=expiry,
        zone=zone,
        quantity=quantity,
        original_quantity=quantity,
    )
    db.session.add(batch)
    db.session.commit()
    return batch


@pytest.fixture(scope='function')
def batches(product, warehouse):
    """B1 expires first with 5 units, B2 later with 10."""
    b1 = make_batch(product, warehouse, lot="B1", expiry=date(2025, 1, 1), quantity=5)
    b2 = make_batch(product, warehouse, lot="B2", expiry=date(2025, 6, 1), quantity=10)
    return b1, b2


@pytest.fixture(scope='function')
def program(db_session):
    """1 point per USD, $10.00 minimum, 1 point = $0.01 / Bs 0.40."""
    lp = LoyaltyProgram(
        name="Puntos Salud",
        points_per_currency=Decimal("1"),
        min_purchase_usd_cents=1000,
        min_purchase_local_cents=0,
        points_value_usd=Decimal("0.01"),
        points_value_local=Decimal("0.40"),
        min_points_to_redeem=10,
        max_redemption_percent=50,
    )
    db_session.add(lp)
    db_session.commit()
    return lp


@pytest.fixture(scope='function')
def zone(db_session):
    z = DeliveryZone(
        name="Chacao",
        base_fee_usd_cents=200,
        base_fee_local_cents=8000,
        fee_per_km_usd_cents=50,
        fee_per_km_local_cents=2000,
        estimated_time_minutes=30,
    )
    db_session.add(z)
    db_session.commit()
    return z


def make_context(warehouse, **overrides):
    data = {
        "warehouse_id": warehouse.id,
        "payment_method": "cash_usd",
        "exchange_rate": Decimal("40.00"),
    }
    data.update(overrides)
    return CheckoutContext(**data)


def cart_of(product, quantity, **extra):
    return [CartItem(product_id=product.id, quantity=quantity, **extra)]


class FakeSyncServer:
    """
    Idempotent remote endpoint for httpx.MockTransport.

    Stores one record per Idempotency-Key; a repeated key answers 409.
    fail_keys answer 503 until removed.
    """

    def __init__(self):
        self.received = {}
        self.requests = []
        self.fail_keys = set()
        self.fail_all = False
        self.on_request = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        key = request.headers.get("Idempotency-Key")
        self.requests.append(key)
        if self.on_request is not None:
            self.on_request(request)
        if self.fail_all or key in self.fail_keys:
            return httpx.Response(503, json={"error": "unavailable"})
        if key in self.received:
            return httpx.Response(409, json={"error": "duplicate"})
        self.received[key] = request.content
        return httpx.Response(201, json={"id": len(self.received)})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture(scope='function')
def sync_server():
    return FakeSyncServer()
