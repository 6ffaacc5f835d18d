# Overview: Pytest coverage for gateway intents, signature verification and expiry.

"""
Payment tests.

Verifies:
- Intents are idempotent per order and carry the public key and expiry
- A good signature pays the order and applies stock in one step
- A bad signature leaves the order pending and may be retried
- Re-verifying the same payment is answered from the stored result
- Expired intents cancel their orders
- Kiosk payment config never offers cash
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from concessions.errors import InsufficientStock, ValidationFailed
from concessions.models import Order, PaymentAttempt, PaymentIntent
from concessions.services import (
    gateway,
    order_service,
    payment_config_service,
    payment_service,
    stock_ledger_service,
)
from concessions.time_utils import utcnow

from conftest import GATEWAY_SECRET


ORDERS_URL = '/api/orders/theater'


@pytest.fixture
def pending_order(client, cashier_headers, theater, popcorn, enable_gateway, order_payload):
    """A 2-popcorn upi order waiting for payment (420.00)."""
    enable_gateway(theater)
    body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 2}], method='upi')
    return client.post(ORDERS_URL, json=body, headers=cashier_headers).get_json()['order']


def _create_intent(client, headers, theater, order, method='upi'):
    return client.post('/api/payments/create-order', json={
        'theaterId': theater.id,
        'orderId': order['id'],
        'method': method,
    }, headers=headers)


def _verify(client, headers, theater, handle, payment_id, signature):
    return client.post('/api/payments/verify', json={
        'theaterId': theater.id,
        'razorpay_order_id': handle,
        'razorpay_payment_id': payment_id,
        'razorpay_signature': signature,
    }, headers=headers)


class TestIntents:

    def test_create_intent(self, client, cashier_headers, theater, pending_order):
        response = _create_intent(client, cashier_headers, theater, pending_order)

        assert response.status_code == 201
        payment = response.get_json()['payment']
        assert payment['intent_handle'].startswith('order_')
        assert payment['amount'] == '420.00'
        assert payment['amount_paise'] == 42000
        assert payment['status'] == 'created'
        assert payment['key_id'] == 'rzp_test_key'
        assert payment['expires_at'].endswith('Z')

    def test_create_intent_is_idempotent(self, db_session, client, cashier_headers, theater, pending_order):
        first = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']
        second = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']

        assert first['intent_handle'] == second['intent_handle']
        assert db_session.query(PaymentIntent).count() == 1
        order = db_session.get(Order, pending_order['id'])
        assert order.payment_status == 'intent_created'

    def test_cash_does_not_take_an_intent(self, client, cashier_headers, theater, pending_order):
        response = _create_intent(client, cashier_headers, theater, pending_order, method='cash')
        assert response.status_code == 400

    def test_launch_marks_in_gateway(self, client, cashier_headers, theater, pending_order):
        _create_intent(client, cashier_headers, theater, pending_order)
        response = client.post('/api/payments/launch', json={'orderId': pending_order['id']},
                               headers=cashier_headers)

        assert response.status_code == 200
        assert response.get_json()['order']['payment']['status'] == 'in_gateway'

    def test_intent_for_other_theater_order_is_not_found(self, client, other_headers, other_admin, theater,
                                                         pending_order):
        response = client.post('/api/payments/create-order', json={
            'orderId': pending_order['id'],
            'method': 'upi',
        }, headers=other_headers)
        assert response.status_code == 404


class TestVerification:

    def test_good_signature_pays_and_applies_stock(self, db_session, client, cashier_headers, theater, popcorn,
                                                   pending_order):
        handle = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']['intent_handle']
        signature = gateway.sign(handle, 'pay_1', GATEWAY_SECRET)

        response = _verify(client, cashier_headers, theater, handle, 'pay_1', signature)

        assert response.status_code == 200
        data = response.get_json()
        assert data['verified'] is True
        assert data['cached'] is False
        assert data['order']['state'] == 'paid'
        assert data['order']['payment']['method'] == 'upi'
        assert data['order']['stock_applied'] is True
        assert data['payment']['status'] == 'verified'
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('8')

    def test_reverify_same_payment_is_cached(self, db_session, client, cashier_headers, theater, popcorn,
                                             pending_order):
        handle = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']['intent_handle']
        signature = gateway.sign(handle, 'pay_1', GATEWAY_SECRET)
        _verify(client, cashier_headers, theater, handle, 'pay_1', signature)

        again = _verify(client, cashier_headers, theater, handle, 'pay_1', signature)

        assert again.status_code == 200
        assert again.get_json()['cached'] is True
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('8')
        assert db_session.query(PaymentAttempt).filter_by(outcome='verified').count() == 1

    def test_different_payment_after_verification_conflicts(self, client, cashier_headers, theater, pending_order):
        handle = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']['intent_handle']
        _verify(client, cashier_headers, theater, handle, 'pay_1', gateway.sign(handle, 'pay_1', GATEWAY_SECRET))

        response = _verify(client, cashier_headers, theater, handle, 'pay_2',
                           gateway.sign(handle, 'pay_2', GATEWAY_SECRET))
        assert response.status_code == 409

    def test_tampered_signature_keeps_order_pending(self, db_session, client, cashier_headers, theater, popcorn,
                                                    pending_order):
        handle = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']['intent_handle']
        forged = gateway.sign(handle, 'pay_1', 'wrong_secret')

        response = _verify(client, cashier_headers, theater, handle, 'pay_1', forged)

        assert response.status_code == 400
        assert response.get_json()['kind'] == 'payment_verification_failed'
        order = db_session.get(Order, pending_order['id'])
        assert order.state == 'pending_payment'
        assert order.payment_status == 'failed'
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('10')

        retry = _verify(client, cashier_headers, theater, handle, 'pay_1',
                        gateway.sign(handle, 'pay_1', GATEWAY_SECRET))
        assert retry.status_code == 200
        assert retry.get_json()['order']['state'] == 'paid'

    def test_stock_gone_before_payment(self, client, cashier_headers, theater, popcorn, add_stock, pending_order):
        handle = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']['intent_handle']
        add_stock(theater.id, popcorn.id, 9, kind='damage')

        response = _verify(client, cashier_headers, theater, handle, 'pay_1',
                           gateway.sign(handle, 'pay_1', GATEWAY_SECRET))

        assert response.status_code == 409
        assert response.get_json()['kind'] == 'insufficient_stock'
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('1')

    def test_overlapping_confirmations_cannot_overdraw(self, db_session, client, cashier_headers, theater, popcorn,
                                                       enable_gateway, order_payload):
        # Each order fits the balance of 10 alone; together they need 12
        enable_gateway(theater)
        orders = []
        for _ in range(2):
            body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 6}], method='upi')
            orders.append(client.post(ORDERS_URL, json=body, headers=cashier_headers).get_json()['order'])
        handles = [
            _create_intent(client, cashier_headers, theater, order).get_json()['payment']['intent_handle']
            for order in orders
        ]

        first = _verify(client, cashier_headers, theater, handles[0], 'pay_1',
                        gateway.sign(handles[0], 'pay_1', GATEWAY_SECRET))
        second = _verify(client, cashier_headers, theater, handles[1], 'pay_2',
                         gateway.sign(handles[1], 'pay_2', GATEWAY_SECRET))

        assert first.status_code == 200
        assert second.status_code == 409
        assert second.get_json()['kind'] == 'insufficient_stock'
        assert db_session.get(Order, orders[0]['id']).state == 'paid'
        assert db_session.get(Order, orders[1]['id']).state == 'pending_payment'
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('4')
        assert db_session.query(PaymentAttempt).filter_by(outcome='stock_rejected').count() == 1

    def test_direct_confirmations_cannot_overdraw(self, db_session, client, cashier_headers, theater, popcorn,
                                                  enable_gateway, order_payload):
        enable_gateway(theater)
        order_ids = []
        for _ in range(2):
            body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 6}], method='upi')
            order_ids.append(client.post(ORDERS_URL, json=body, headers=cashier_headers).get_json()['order']['id'])

        order_service.confirm_payment(theater.id, order_ids[0], method='upi')
        with pytest.raises(InsufficientStock):
            order_service.confirm_payment(theater.id, order_ids[1], method='upi')

        assert db_session.get(Order, order_ids[1]).state == 'pending_payment'
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal('4')

    def test_signature_helpers(self):
        signature = gateway.sign('order_abc', 'pay_1', 'secret')
        assert gateway.verify_signature('order_abc', 'pay_1', signature.upper(), 'secret')
        assert not gateway.verify_signature('order_abc', 'pay_2', signature, 'secret')
        assert not gateway.verify_signature('order_abc', 'pay_1', '', 'secret')


class TestExpiry:

    def test_sweep_cancels_expired_intent(self, db_session, client, cashier_headers, theater, pending_order):
        handle = _create_intent(client, cashier_headers, theater, pending_order).get_json()['payment']['intent_handle']

        cancelled = payment_service.sweep_expired_intents(utcnow() + timedelta(seconds=901))

        assert cancelled == 1
        order = db_session.get(Order, pending_order['id'])
        assert order.state == 'cancelled'
        assert order.cancel_path == 'intent_expired'

        late = _verify(client, cashier_headers, theater, handle, 'pay_1',
                       gateway.sign(handle, 'pay_1', GATEWAY_SECRET))
        assert late.status_code == 410
        assert late.get_json()['kind'] == 'payment_expired'

    def test_sweep_leaves_live_intents(self, db_session, client, cashier_headers, theater, pending_order):
        _create_intent(client, cashier_headers, theater, pending_order)
        assert payment_service.sweep_expired_intents() == 0
        assert db_session.get(Order, pending_order['id']).state == 'pending_payment'

    def test_sweep_cancels_orders_that_never_got_an_intent(self, db_session, pending_order):
        cancelled = payment_service.sweep_expired_intents(utcnow() + timedelta(seconds=901))
        assert cancelled == 1
        assert db_session.get(Order, pending_order['id']).state == 'cancelled'


class TestPaymentConfig:

    def test_kiosk_never_lists_cash(self, db_session, theater, enable_gateway):
        enable_gateway(theater, channel='kiosk')
        methods = payment_config_service.accepted_methods(theater.id, 'kiosk')
        assert 'cash' not in methods
        assert methods == ['upi', 'online', 'card']

    def test_kiosk_cash_rejected_on_update(self, db_session, theater):
        with pytest.raises(ValidationFailed):
            payment_config_service.upsert_config(theater.id, 'kiosk', accepted=['cash', 'card'])

    def test_gateway_methods_hidden_until_enabled(self, db_session, theater):
        assert payment_config_service.accepted_methods(theater.id, 'online-pos') == ['cash', 'card']

    def test_public_config_route(self, client, cashier_headers, theater, enable_gateway):
        enable_gateway(theater)
        response = client.get(f'/api/payments/config/{theater.id}/online-pos', headers=cashier_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['gatewayEnabled'] is True
        assert data['keyId'] == 'rzp_test_key'
        assert data['acceptedMethods'] == ['cash', 'card', 'upi']
        assert 'keySecret' not in data

    def test_config_update_needs_admin(self, client, cashier_headers, admin_headers, theater):
        url = f'/api/payments/config/{theater.id}/kiosk'
        assert client.put(url, json={'gatewayEnabled': True}, headers=cashier_headers).status_code == 403

        rejected = client.put(url, json={'acceptedMethods': ['cash']}, headers=admin_headers)
        assert rejected.status_code == 400

        response = client.put(url, json={'gatewayEnabled': True, 'acceptedMethods': ['upi']}, headers=admin_headers)
        assert response.status_code == 200
        assert response.get_json()['acceptedMethods'] == ['upi']
