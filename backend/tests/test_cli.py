# Overview: Pytest coverage for the Flask CLI command groups.

from datetime import timedelta
from decimal import Decimal

from concessions.models import Order, Product, Theater, User
from concessions.services import payment_service, stock_ledger_service
from concessions.time_utils import utcnow


ORDERS_URL = '/api/orders/theater'


def _run(app, *args):
    return app.test_cli_runner().invoke(args=list(args))


class TestSeedDemo:

    def test_seed_is_repeatable(self, app, db_session):
        first = _run(app, 'system', 'seed-demo')
        second = _run(app, 'system', 'seed-demo')

        assert first.exit_code == 0, first.output
        assert 'DONE Demo data ready' in second.output
        assert db_session.query(Theater).filter_by(code='GRAND').count() == 1
        assert db_session.query(User).count() == 4
        assert db_session.query(Product).count() == 4

        theater = db_session.query(Theater).filter_by(code='GRAND').one()
        popcorn = db_session.query(Product).filter_by(name='Salted Popcorn').one()
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('50')

    def test_stock_balance_command(self, app, db_session, theater, popcorn):
        result = _run(app, 'stock', 'balance', '--theater-id', str(theater.id), '--product-id', str(popcorn.id))

        assert result.exit_code == 0, result.output
        assert 'balance 10 Nos' in result.output


class TestMaintenance:

    def test_payments_sweep(self, app, db_session, client, cashier_headers, theater, popcorn, enable_gateway,
                            order_payload, monkeypatch):
        enable_gateway(theater)
        body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 1}], method='upi')
        order_id = client.post(ORDERS_URL, json=body, headers=cashier_headers).get_json()['order']['id']

        later = utcnow() + timedelta(seconds=901)
        sweep = payment_service.sweep_expired_intents
        monkeypatch.setattr(payment_service, 'sweep_expired_intents', lambda now=None: sweep(later))

        result = _run(app, 'payments', 'sweep')

        assert 'PASS Cancelled 1 expired order(s)' in result.output
        assert db_session.get(Order, order_id).state == 'cancelled'

    def test_create_user_rejects_weak_password(self, app, db_session, theater):
        result = _run(app, 'users', 'create', '--theater-id', str(theater.id), '--username', 'weak',
                      '--password', 'short', '--role', 'cashier')

        assert 'FAIL' in result.output
        assert db_session.query(User).filter_by(username='weak').count() == 0

    def test_broadcast_prune(self, app, db_session):
        result = _run(app, 'broadcast', 'prune', '--hours', '1')
        assert 'PASS Deleted 0 event(s) older than 1h' in result.output
