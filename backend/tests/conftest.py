"""
Pytest fixtures for the kasse ledger tests.

Provides an in-memory database, store/device/payment-method fixtures, an
open session, and fakes for the external collaborators (payment gateway,
hardware transport) registered on the app.
"""

import pytest

from kasse import create_app
from kasse.extensions import HARDWARE_TRANSPORT_KEY, PAYMENT_GATEWAY_KEY, RECEIPT_RENDERER_KEY, db
from kasse.models import PaymentMethod, PosDevice, Store
from kasse.services import session_service
from kasse.services.hardware_service import HardwareTransport
from kasse.services.payment_gateway import PaymentGateway, Settlement
from kasse.services.receipt_renderer import PlainTextReceiptRenderer

OPERATOR_ID = 7

TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'GIFT_CARD_PIN_ROUNDS': 4,
    'SETTLEMENT_BACKOFF_SECONDS': 0.0,
    'SETTLEMENT_TIMEOUT_SECONDS': 5.0,
    'HARDWARE_DISPATCH_ASYNC': False,
    'LOG_LEVEL': 'DEBUG',
}


class FakeGateway(PaymentGateway):
    """Scripted gateway: each reference returns its queued responses in order."""

    def __init__(self):
        self.responses = {}
        self.calls = []

    def settle(self, reference, amount, *, currency="nok", status="succeeded", not_visible_first=0):
        queued = [None] * not_visible_first
        queued.append(Settlement(
            reference=reference,
            amount=amount,
            currency=currency,
            status=status,
            charge_reference=f"ch_{reference}",
            payment_method_type="card_present",
        ))
        self.responses[reference] = queued

    def retrieve_settlement(self, reference, *, timeout):
        self.calls.append((reference, timeout))
        queued = self.responses.get(reference) or [None]
        if len(queued) > 1:
            return queued.pop(0)
        return queued[0]


class FakeTransport(HardwareTransport):
    """Records hardware payloads; can be told to fail like an unplugged printer."""

    def __init__(self):
        self.sent = []
        self.fail = False

    def send(self, host, port, payload, *, timeout):
        if self.fail:
            raise OSError("printer offline")
        self.sent.append((host, port, payload))


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function', autouse=True)
def collaborators(app):
    """Fresh fakes per test."""
    gateway = FakeGateway()
    transport = FakeTransport()
    app.extensions[PAYMENT_GATEWAY_KEY] = gateway
    app.extensions[HARDWARE_TRANSPORT_KEY] = transport
    app.extensions[RECEIPT_RENDERER_KEY] = PlainTextReceiptRenderer()
    return {"gateway": gateway, "transport": transport}


@pytest.fixture
def gateway(collaborators):
    return collaborators["gateway"]


@pytest.fixture
def transport(collaborators):
    return collaborators["transport"]


@pytest.fixture(scope='function')
def store(db_session):
    """Store with 25% VAT in NOK."""
    store = Store(name="Butikk Sentrum", code="SENTRUM", currency="nok", tax_rate_bps=2500)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    store = Store(name="Butikk Nord", code="NORD", currency="nok", tax_rate_bps=2500)
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def device(db_session, store):
    device = PosDevice(
        store_id=store.id,
        name="Kasse 1",
        device_type="epson_printer",
        device_config={"ip_address": "10.0.0.50", "port": 9100},
        is_active=True,
    )
    db_session.add(device)
    db_session.commit()
    return device


@pytest.fixture(scope='function')
def second_device(db_session, store):
    device = PosDevice(store_id=store.id, name="Kasse 2", device_type="none", is_active=True)
    db_session.add(device)
    db_session.commit()
    return device


def seed_payment_methods(db_session, store_id):
    methods = {
        "cash": PaymentMethod(store_id=store_id, code="cash", name="Kontant", provider="cash"),
        "card": PaymentMethod(store_id=store_id, code="card", name="Bankkort", provider="terminal",
                              provider_method="card_present"),
        "vipps": PaymentMethod(store_id=store_id, code="vipps", name="Vipps", provider="terminal",
                               provider_method="vipps"),
        "gift_card": PaymentMethod(store_id=store_id, code="gift_card", name="Gavekort", provider="gift_card"),
        "invoice": PaymentMethod(store_id=store_id, code="invoice", name="Faktura", provider="other",
                                 provider_method="bank_account"),
        "disabled": PaymentMethod(store_id=store_id, code="disabled", name="Gammel", provider="cash",
                                  enabled=False),
    }
    db_session.add_all(methods.values())
    db_session.commit()
    return methods


@pytest.fixture(scope='function')
def payment_methods(db_session, store):
    return seed_payment_methods(db_session, store.id)


@pytest.fixture(scope='function')
def open_session(db_session, store, device, payment_methods):
    """Open session with 50000 øre in the drawer."""
    return session_service.open_session(
        store_id=store.id,
        device_id=device.id,
        operator_id=OPERATOR_ID,
        opening_balance=50000,
    )


def cart(total, name="Vare"):
    """Single-line cart helper."""
    return {
        "items": [{"name": name, "quantity": 1, "unit_price": total, "line_total": total}],
        "total": total,
    }
