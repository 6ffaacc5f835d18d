"""
Authentication and authorization tests.

Verifies:
- Login issues a theater-bound token; bad credentials return 401
- Protected endpoints return 401 without a token
- Cashiers are denied admin operations (403)
- Sessions cannot reach another theater; super admins can
- Logout revokes the token
"""

import pytest

from concessions.errors import ValidationFailed
from concessions.models.auth import ROLE_CASHIER
from concessions.services import auth_service

from conftest import TEST_PASSWORD, auth_headers, get_auth_token


# =============================================================================
# LOGIN
# =============================================================================


class TestLogin:

    def test_login_returns_bound_session(self, client, cashier_user, theater):
        response = client.post('/api/auth/login', json={
            'username': cashier_user.username,
            'password': TEST_PASSWORD,
        })

        assert response.status_code == 200
        data = response.get_json()
        assert data['token']
        assert data['theaterId'] == theater.id
        assert data['roles'] == ['cashier']
        assert data['user']['username'] == 'cashier_a'
        assert 'password_hash' not in data['user']
        assert data['expires_at'].endswith('Z')

    def test_wrong_password(self, client, cashier_user):
        response = client.post('/api/auth/login', json={
            'username': cashier_user.username,
            'password': 'Wrongpass1',
        })
        assert response.status_code == 401
        assert response.get_json()['kind'] == 'auth'

    def test_unknown_user_gets_same_message(self, client, cashier_user):
        unknown = client.post('/api/auth/login', json={'username': 'ghost', 'password': TEST_PASSWORD})
        wrong = client.post('/api/auth/login', json={'username': cashier_user.username, 'password': 'Wrongpass1'})
        assert unknown.get_json()['error'] == wrong.get_json()['error']

    def test_missing_fields(self, client):
        response = client.post('/api/auth/login', json={'username': 'someone'})
        assert response.status_code == 400

    def test_inactive_theater_cannot_log_in(self, db_session, client, cashier_user, theater):
        theater.is_active = False
        db_session.commit()
        assert get_auth_token(client, cashier_user.username) is None

    def test_me(self, client, cashier_headers, theater):
        response = client.get('/api/auth/me', headers=cashier_headers)
        assert response.status_code == 200
        assert response.get_json()['theaterId'] == theater.id

    def test_logout_revokes_token(self, client, cashier_headers):
        assert client.post('/api/auth/logout', headers=cashier_headers).status_code == 200
        assert client.get('/api/auth/me', headers=cashier_headers).status_code == 401

    def test_garbage_token(self, client):
        response = client.get('/api/auth/me', headers=auth_headers('not-a-real-token'))
        assert response.status_code == 401


class TestAccounts:

    @pytest.mark.parametrize('password', ['short1', 'allletters', '12345678'])
    def test_weak_passwords_rejected(self, db_session, theater, password):
        with pytest.raises(ValidationFailed):
            auth_service.create_user('new_cashier', password, [ROLE_CASHIER], theater_id=theater.id)

    def test_theater_required_for_staff(self, db_session):
        with pytest.raises(ValidationFailed):
            auth_service.create_user('floating', TEST_PASSWORD, [ROLE_CASHIER])

    def test_duplicate_username(self, db_session, theater, cashier_user):
        with pytest.raises(ValidationFailed):
            auth_service.create_user(cashier_user.username, TEST_PASSWORD, [ROLE_CASHIER], theater_id=theater.id)

    def test_unknown_role(self, db_session, theater):
        with pytest.raises(ValidationFailed):
            auth_service.create_user('usher_1', TEST_PASSWORD, ['usher'], theater_id=theater.id)

    def test_password_is_hashed(self, cashier_user):
        assert cashier_user.password_hash != TEST_PASSWORD
        assert auth_service.verify_password(TEST_PASSWORD, cashier_user.password_hash)
        assert not auth_service.verify_password(TEST_PASSWORD, 'not-a-bcrypt-hash')


# =============================================================================
# UNAUTHENTICATED ACCESS (401)
# =============================================================================


class TestUnauthenticatedAccess:
    """All protected endpoints return 401 without a token."""

    @pytest.mark.parametrize(
        "method,path",
        [
            ("POST", "/api/orders/theater"),
            ("GET", "/api/orders/theater/1"),
            ("POST", "/api/orders/theater/1/1/cancel"),
            ("POST", "/api/orders/theater/1/1/refund"),
            ("POST", "/api/payments/create-order"),
            ("POST", "/api/payments/verify"),
            ("GET", "/api/payments/config/1/kiosk"),
            ("GET", "/api/theater-products/1"),
            ("GET", "/api/combo-offers/1"),
            ("GET", "/api/cafe-stock/1/1"),
            ("POST", "/api/cafe-stock/1/1/entries"),
            ("GET", "/api/cafe-stock/sales-report/1"),
            ("GET", "/api/notifications/events"),
            ("GET", "/api/auth/me"),
        ],
    )
    def test_requires_token(self, client, method, path):
        response = client.open(path, method=method, json={} if method == "POST" else None)
        assert response.status_code == 401


# =============================================================================
# ROLE AND THEATER SCOPE (403)
# =============================================================================


class TestScope:

    @pytest.mark.parametrize(
        "method,path_template",
        [
            ("POST", "/api/cafe-stock/{tid}/1/entries"),
            ("GET", "/api/cafe-stock/sales-report/{tid}"),
            ("GET", "/api/cafe-stock/excel-all/{tid}"),
            ("PUT", "/api/payments/config/{tid}/kiosk"),
            ("POST", "/api/orders/theater/{tid}/1/refund"),
            ("POST", "/api/orders/theater/{tid}/1/recover"),
        ],
    )
    def test_cashier_denied_admin_operations(self, client, cashier_headers, theater, method, path_template):
        response = client.open(path_template.format(tid=theater.id), method=method, json={},
                               headers=cashier_headers)
        assert response.status_code == 403

    def test_kiosk_denied_stock_reads(self, client, kiosk_headers, theater, popcorn):
        response = client.get(f'/api/cafe-stock/{theater.id}/{popcorn.id}', headers=kiosk_headers)
        assert response.status_code == 403

    def test_cross_theater_order_rejected(self, client, other_headers, theater, popcorn, order_payload):
        body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 1}])
        response = client.post('/api/orders/theater', json=body, headers=other_headers)
        assert response.status_code == 403

    def test_cross_theater_listing_rejected(self, client, other_headers, theater):
        response = client.get(f'/api/orders/theater/{theater.id}', headers=other_headers)
        assert response.status_code == 403

    def test_super_admin_reaches_any_theater(self, client, super_admin, theater, popcorn, order_payload):
        headers = auth_headers(get_auth_token(client, super_admin.username))

        listing = client.get(f'/api/theater-products/{theater.id}', headers=headers)
        assert listing.status_code == 200

        body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 1}])
        assert client.post('/api/orders/theater', json=body, headers=headers).status_code == 201


class TestSystem:

    def test_health(self, client, db_session):
        response = client.get('/health')
        assert response.status_code == 200
        data = response.get_json()
        assert data['checks']['database']['status'] == 'healthy'

    def test_version(self, client):
        response = client.get('/version')
        assert response.status_code == 200
        assert 'api_version' in response.get_json()
