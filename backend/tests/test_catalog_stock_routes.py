# Overview: Pytest coverage for catalog listings, operator stock entries and stock reports.

"""
Catalog and stock route tests.

Verifies:
- Product listings carry the cafe balance and an outOfStock flag
- Admin product edits honour version_id
- Operator entries go through the ledger; sales and cancel are pipeline-only
- Sales report nets cancellations; the stock spreadsheet opens in openpyxl
"""

from decimal import Decimal
from io import BytesIO

from openpyxl import load_workbook

from concessions.models import BroadcastEvent
from concessions.services import stock_ledger_service


ORDERS_URL = '/api/orders/theater'


class TestCatalog:

    def test_products_with_balances(self, client, cashier_headers, theater, popcorn, cola):
        response = client.get(f'/api/theater-products/{theater.id}', headers=cashier_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['stockSource'] == 'cafe'
        rows = {p['name']: p for p in data['products']}
        assert rows['Popcorn']['balance'] == '10'
        assert rows['Cola']['balance'] == '10'
        assert rows['Cola']['perUnitConsumption'] == '0.5'
        assert rows['Cola']['outOfStock'] is False
        assert data['pagination']['total'] == 2

    def test_listing_carries_latest_event_id(self, db_session, client, cashier_headers, theater, popcorn,
                                             order_payload):
        url = f'/api/theater-products/{theater.id}'
        assert client.get(url, headers=cashier_headers).get_json()['latestEventId'] == 0

        body = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 1}])
        client.post(ORDERS_URL, json=body, headers=cashier_headers)
        latest = db_session.query(BroadcastEvent).order_by(BroadcastEvent.id.desc()).first()

        data = client.get(url, headers=cashier_headers).get_json()
        assert data['latestEventId'] == latest.id
        assert data['products'][0]['balance'] == '9'

    def test_out_of_stock_filter(self, client, cashier_headers, theater, popcorn, make_product):
        make_product(theater, "Nachos")
        response = client.get(f'/api/theater-products/{theater.id}?stock=out', headers=cashier_headers)

        names = [p['name'] for p in response.get_json()['products']]
        assert names == ['Nachos']

    def test_theater_stock_source(self, client, cashier_headers, theater, popcorn, add_stock):
        add_stock(theater.id, popcorn.id, 40, stock_source='theater')
        response = client.get(f'/api/theater-products/{theater.id}?stockSource=theater', headers=cashier_headers)

        assert response.get_json()['products'][0]['balance'] == '40'

    def test_invalid_filters_rejected(self, client, cashier_headers, theater):
        assert client.get(f'/api/theater-products/{theater.id}?stock=maybe',
                          headers=cashier_headers).status_code == 400
        assert client.get(f'/api/theater-products/{theater.id}?stockSource=warehouse',
                          headers=cashier_headers).status_code == 400

    def test_other_theater_catalog_forbidden(self, client, other_headers, theater, popcorn):
        response = client.get(f'/api/theater-products/{theater.id}', headers=other_headers)
        assert response.status_code == 403

    def test_combo_listing(self, db_session, client, cashier_headers, theater, popcorn, combo):
        response = client.get(f'/api/combo-offers/{theater.id}', headers=cashier_headers)
        combos = response.get_json()['combos']

        assert combos[0]['name'] == 'Movie Combo'
        assert combos[0]['orderable'] is True
        assert combos[0]['components'][1] == {'productId': combo.components[1].product_id, 'perComboQuantity': 2}

        popcorn.is_active = False
        db_session.commit()
        combos = client.get(f'/api/combo-offers/{theater.id}', headers=cashier_headers).get_json()['combos']
        assert combos[0]['orderable'] is False

    def test_update_product_with_version_guard(self, client, admin_headers, theater, popcorn):
        url = f'/api/theater-products/{theater.id}/{popcorn.id}'

        response = client.put(url, json={'pricing': {'salePrice': '180.00'}, 'versionId': 1}, headers=admin_headers)
        assert response.status_code == 200
        product = response.get_json()['product']
        assert product['pricing']['salePrice'] == '180.00'
        assert product['version_id'] == 2

        stale = client.put(url, json={'pricing': {'salePrice': '150.00'}, 'versionId': 1}, headers=admin_headers)
        assert stale.status_code == 409
        assert stale.get_json()['kind'] == 'conflict'

    def test_stock_unit_frozen_after_entries(self, client, admin_headers, theater, popcorn):
        response = client.put(f'/api/theater-products/{theater.id}/{popcorn.id}',
                              json={'stockUnit': 'kg'}, headers=admin_headers)
        assert response.status_code == 400

    def test_update_product_needs_admin(self, client, cashier_headers, theater, popcorn):
        response = client.put(f'/api/theater-products/{theater.id}/{popcorn.id}',
                              json={'pricing': {'salePrice': '1.00'}}, headers=cashier_headers)
        assert response.status_code == 403


class TestStockEntries:

    def test_receipt_entry(self, client, admin_headers, theater, cola):
        response = client.post(f'/api/cafe-stock/{theater.id}/{cola.id}/entries',
                               json={'kind': 'invord', 'quantity': 2500, 'unit': 'ml'},
                               headers=admin_headers)

        assert response.status_code == 201
        assert response.get_json() == {'productId': cola.id, 'balances': {'cafe': '12.5'}}

    def test_adjustment_needs_direction(self, client, admin_headers, theater, popcorn):
        url = f'/api/cafe-stock/{theater.id}/{popcorn.id}/entries'
        assert client.post(url, json={'kind': 'adjustment', 'quantity': 1}, headers=admin_headers).status_code == 400

        response = client.post(url, json={'kind': 'adjustment', 'quantity': 3, 'direction': 'decrease'},
                               headers=admin_headers)
        assert response.get_json()['balances']['cafe'] == '7'

    def test_pipeline_kinds_rejected(self, client, admin_headers, theater, popcorn):
        url = f'/api/cafe-stock/{theater.id}/{popcorn.id}/entries'
        for kind in ('sales', 'cancel'):
            response = client.post(url, json={'kind': kind, 'quantity': 1}, headers=admin_headers)
            assert response.status_code == 400

    def test_unit_from_other_family_rejected(self, client, admin_headers, theater, cola):
        response = client.post(f'/api/cafe-stock/{theater.id}/{cola.id}/entries',
                               json={'kind': 'invord', 'quantity': 1, 'unit': 'kg'},
                               headers=admin_headers)
        assert response.status_code == 400
        assert stock_ledger_service.current_balance(theater.id, cola.id) == Decimal('10')

    def test_transfer_moves_theater_stock(self, client, admin_headers, theater, popcorn):
        url = f'/api/cafe-stock/{theater.id}/{popcorn.id}/entries'
        client.post(url, json={'kind': 'invord', 'quantity': 20, 'stockSource': 'theater'}, headers=admin_headers)

        response = client.post(url, json={'kind': 'transfer', 'quantity': 5}, headers=admin_headers)

        assert response.status_code == 201
        assert response.get_json()['balances'] == {'theater': '15', 'cafe': '15'}

    def test_entries_need_admin(self, client, cashier_headers, theater, popcorn):
        response = client.post(f'/api/cafe-stock/{theater.id}/{popcorn.id}/entries',
                               json={'kind': 'invord', 'quantity': 1}, headers=cashier_headers)
        assert response.status_code == 403

    def test_month_snapshot(self, client, cashier_headers, theater, popcorn):
        response = client.get(f'/api/cafe-stock/{theater.id}/{popcorn.id}', headers=cashier_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data['materialized'] is True
        assert data['stockUnit'] == 'Nos'
        assert data['openingBalance'] == '0'
        assert data['closingBalance'] == '10'
        assert [e['kind'] for e in data['entries']] == ['invord']

    def test_snapshot_of_unknown_product(self, client, cashier_headers, theater):
        response = client.get(f'/api/cafe-stock/{theater.id}/999', headers=cashier_headers)
        assert response.status_code == 404


class TestReports:

    def _orders(self, client, headers, theater, popcorn, cola, order_payload):
        kept = order_payload(theater.id, [
            {'productId': popcorn.id, 'quantity': 2},
            {'productId': cola.id, 'quantity': 2},
        ])
        client.post(ORDERS_URL, json=kept, headers=headers)
        dropped = order_payload(theater.id, [{'productId': popcorn.id, 'quantity': 1}])
        order_id = client.post(ORDERS_URL, json=dropped, headers=headers).get_json()['order']['id']
        client.post(f'{ORDERS_URL}/{theater.id}/{order_id}/cancel', json={'refund': True}, headers=headers)

    def test_sales_report_nets_cancellations(self, client, cashier_headers, admin_headers, theater, popcorn, cola,
                                             order_payload):
        self._orders(client, cashier_headers, theater, popcorn, cola, order_payload)

        response = client.get(f'/api/cafe-stock/sales-report/{theater.id}', headers=admin_headers)

        assert response.status_code == 200
        report = response.get_json()
        rows = {r['name']: r for r in report['products']}
        assert rows['Popcorn'] == {
            'productId': popcorn.id,
            'name': 'Popcorn',
            'stockUnit': 'Nos',
            'sold': '3',
            'cancelled': '1',
            'net': '2',
        }
        assert rows['Cola']['net'] == '1'
        assert report['orders']['count'] == 1
        assert report['orders']['gross'] == '620.00'
        assert report['orders']['refunded'] == '0.00'

    def test_sales_report_needs_admin(self, client, cashier_headers, theater):
        response = client.get(f'/api/cafe-stock/sales-report/{theater.id}', headers=cashier_headers)
        assert response.status_code == 403

    def test_stock_spreadsheet(self, client, cashier_headers, admin_headers, theater, popcorn, cola, order_payload):
        self._orders(client, cashier_headers, theater, popcorn, cola, order_payload)

        response = client.get(f'/api/cafe-stock/excel-all/{theater.id}', headers=admin_headers)

        assert response.status_code == 200
        assert response.mimetype == 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet'
        sheet = load_workbook(BytesIO(response.data)).active
        header = [cell.value for cell in sheet[2]]
        assert header[:3] == ['Product', 'Unit', 'Opening Balance']
        assert header[-1] == 'Closing Balance'

        rows = {row[0]: row for row in sheet.iter_rows(min_row=3, values_only=True) if row and row[0]}
        popcorn_row = rows['Popcorn']
        assert popcorn_row[1] == 'Nos'
        assert popcorn_row[header.index('Inward')] == 10
        assert popcorn_row[header.index('Sales')] == 3
        assert popcorn_row[header.index('Cancelled')] == 1
        assert popcorn_row[header.index('Closing Balance')] == 8
        assert rows['Cola'][header.index('Closing Balance')] == 9
        assert 'Total (Nos)' in rows
