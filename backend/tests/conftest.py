"""
Pytest fixtures for concessions backend tests.

Provides the test app and database, one theater with staff and kiosk
accounts, a small catalog with opening stock, and device-side helpers.
"""

from decimal import Decimal
import itertools

import httpx
import pytest

from concessions import create_app
from concessions.extensions import db
from concessions.models import ComboComponent, ComboOffer, Product, Theater
from concessions.models.auth import ROLE_CASHIER, ROLE_KIOSK, ROLE_MANAGER, ROLE_SUPER_ADMIN, ROLE_THEATER_ADMIN
from concessions.models.stock import KIND_INVORD, STOCK_SOURCE_CAFE
from concessions.services import auth_service, payment_config_service, stock_ledger_service
from concessions.services.stock_ledger_service import StockEvent


TEST_PASSWORD = 'Password123'
GATEWAY_SECRET = 'test_secret'


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'RAZORPAY_KEY_ID': 'rzp_test_key',
        'RAZORPAY_KEY_SECRET': GATEWAY_SECRET,
        'PAYMENT_GATEWAY': 'local',
        'BROADCAST_MAX_STREAM_SECONDS': 0,
        'BROADCAST_POLL_INTERVAL_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


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


# =============================================================================
# TENANCY AND ACCOUNTS
# =============================================================================


@pytest.fixture(scope='function')
def theater(db_session):
    """Theater A ("GR" order prefix)."""
    theater = Theater(name="Grand Cinema", code="GRAND", address="1 Main Road", gstin="29ABCDE1234F1Z5")
    db_session.add(theater)
    db_session.commit()
    return theater


@pytest.fixture(scope='function')
def other_theater(db_session):
    """Theater B, used for isolation checks."""
    theater = Theater(name="Metro Plex", code="METRO")
    db_session.add(theater)
    db_session.commit()
    return theater


def _make_user(db_session, username, roles, theater_id):
    user = auth_service.create_user(username, TEST_PASSWORD, roles, theater_id=theater_id)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session, theater):
    return _make_user(db_session, "admin_a", [ROLE_THEATER_ADMIN], theater.id)


@pytest.fixture(scope='function')
def manager_user(db_session, theater):
    return _make_user(db_session, "manager_a", [ROLE_MANAGER], theater.id)


@pytest.fixture(scope='function')
def cashier_user(db_session, theater):
    return _make_user(db_session, "cashier_a", [ROLE_CASHIER], theater.id)


@pytest.fixture(scope='function')
def kiosk_user(db_session, theater):
    return _make_user(db_session, "kiosk_a", [ROLE_KIOSK], theater.id)


@pytest.fixture(scope='function')
def other_admin(db_session, other_theater):
    return _make_user(db_session, "admin_b", [ROLE_THEATER_ADMIN], other_theater.id)


@pytest.fixture(scope='function')
def super_admin(db_session):
    return _make_user(db_session, "root_admin", [ROLE_SUPER_ADMIN], None)


def get_auth_token(client, username: str, password: str = TEST_PASSWORD) -> str:
    """Helper to get auth token for a user."""
    response = client.post('/api/auth/login', json={
        'username': username,
        'password': password
    })
    if response.status_code == 200:
        return response.get_json().get('token')
    return None


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def admin_headers(client, admin_user):
    return auth_headers(get_auth_token(client, admin_user.username))


@pytest.fixture(scope='function')
def cashier_headers(client, cashier_user):
    return auth_headers(get_auth_token(client, cashier_user.username))


@pytest.fixture(scope='function')
def kiosk_headers(client, kiosk_user):
    return auth_headers(get_auth_token(client, kiosk_user.username))


@pytest.fixture(scope='function')
def other_headers(client, other_admin):
    return auth_headers(get_auth_token(client, other_admin.username))


# =============================================================================
# CATALOG AND STOCK
# =============================================================================


@pytest.fixture(scope='function')
def add_stock(db_session):
    """Append a cafe receipt (or any kind) and commit. Returns the new balance."""
    def _add(theater_id, product_id, quantity, *, kind=KIND_INVORD, unit=None, entry_date=None,
             stock_source=STOCK_SOURCE_CAFE, direction=None):
        balance = stock_ledger_service.append_event(
            theater_id,
            product_id,
            StockEvent(kind=kind, quantity=Decimal(str(quantity)), unit=unit,
                       entry_date=entry_date, direction=direction),
            stock_source=stock_source,
        )
        db_session.commit()
        return balance
    return _add


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(theater, name, **fields):
        values = {
            'stock_unit': 'Nos',
            'base_price': Decimal('100.00'),
            'tax_rate': Decimal('0'),
            'gst_type': 'EXCLUSIVE',
        }
        values.update(fields)
        product = Product(theater_id=theater.id, name=name, **values)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def popcorn(theater, make_product, add_stock):
    """Counted product: 200.00 + 5% GST on top, 10 Nos in stock."""
    product = make_product(
        theater, "Popcorn",
        stock_unit='Nos',
        base_price=Decimal('200.00'),
        tax_rate=Decimal('5'),
        gst_type='EXCLUSIVE',
    )
    add_stock(theater.id, product.id, 10)
    return product


@pytest.fixture(scope='function')
def cola(theater, make_product, add_stock):
    """Fountain cola stocked in litres, sold as 500 mL cups: 100.00 incl. 18% GST, 10 L in stock."""
    product = make_product(
        theater, "Cola",
        stock_unit='L',
        pack_quantity='500 ML',
        base_price=Decimal('120.00'),
        sale_price=Decimal('100.00'),
        tax_rate=Decimal('18'),
        gst_type='INCLUSIVE',
    )
    add_stock(theater.id, product.id, 10)
    return product


@pytest.fixture(scope='function')
def combo(db_session, theater, popcorn, cola):
    """One popcorn and two colas for 350.00 + 5% GST."""
    combo = ComboOffer(
        theater_id=theater.id,
        name="Movie Combo",
        offer_price=Decimal('350.00'),
        tax_rate=Decimal('5'),
        gst_type='EXCLUSIVE',
    )
    combo.components = [
        ComboComponent(position=0, product_id=popcorn.id, per_combo_quantity=1),
        ComboComponent(position=1, product_id=cola.id, per_combo_quantity=2),
    ]
    db_session.add(combo)
    db_session.commit()
    return combo


@pytest.fixture(scope='function')
def enable_gateway(db_session):
    def _enable(theater, channel='online-pos', accepted=None):
        row = payment_config_service.upsert_config(
            theater.id,
            channel,
            gateway_enabled=True,
            key_id='rzp_test_key',
            key_secret=GATEWAY_SECRET,
            accepted=accepted,
        )
        db_session.commit()
        return row
    return _enable


_fingerprints = itertools.count(1)


@pytest.fixture(scope='function')
def order_payload():
    """Build a POST /orders/theater body with a fresh fingerprint."""
    def _payload(theater_id, items, *, method='cash', source='online-pos', **extra):
        body = {
            'theaterId': theater_id,
            'fingerprint': f"fp-{next(_fingerprints):06d}-test-device",
            'source': source,
            'paymentMethod': method,
            'items': items,
        }
        body.update(extra)
        return body
    return _payload


# =============================================================================
# DEVICE
# =============================================================================


@pytest.fixture(scope='function')
def device_store(tmp_path):
    from concessions.device.storage import LocalStore
    return LocalStore(str(tmp_path / "device"))


@pytest.fixture(scope='function')
def device_config(theater):
    from concessions.device.config import DeviceConfig
    return DeviceConfig(
        base_url="http://testserver/api",
        device_id="till-01",
        theater_id=theater.id,
        backoff_base_seconds=1.0,
        backoff_cap_seconds=8.0,
    )


@pytest.fixture(scope='function')
def device_client(app, device_config, device_store):
    """Device HTTP client talking to the test app in-process."""
    from concessions.device.client import FingerprintedClient
    client = FingerprintedClient(
        device_config,
        device_store,
        transport=httpx.WSGITransport(app=app),
        sleep=lambda seconds: None,
    )
    yield client
    client.close()
