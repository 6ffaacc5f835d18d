# Overview: Pytest coverage for the monthly stock ledger.

"""
Stock ledger tests.

Verifies:
- Entry kinds carry fixed signs; adjustments need a direction
- Quantities are normalized into the month's stock unit
- Opening entries only land on an empty month
- Reads never materialize months; rollover carries the closing forward
- Back-dated entries reflow every later month
- Transfers move theater stock into the cafe ledger
"""

from datetime import datetime
from decimal import Decimal

import pytest

from concessions.errors import LedgerError, UnitError
from concessions.models import StockEntry, StockMonth
from concessions.models.stock import STOCK_SOURCE_CAFE, STOCK_SOURCE_THEATER
from concessions.services import stock_ledger_service
from concessions.services.stock_ledger_service import StockEvent


def _append(theater_id, product_id, kind, quantity, **kwargs):
    stock_source = kwargs.pop("stock_source", STOCK_SOURCE_CAFE)
    return stock_ledger_service.append_event(
        theater_id,
        product_id,
        StockEvent(kind=kind, quantity=Decimal(str(quantity)), **kwargs),
        stock_source=stock_source,
    )


class TestAppendAndBalance:

    def test_fixed_signs(self, db_session, theater, popcorn):
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal("10")
        assert _append(theater.id, popcorn.id, "sales", 3) == Decimal("7")
        assert _append(theater.id, popcorn.id, "cancel", 1) == Decimal("8")
        assert _append(theater.id, popcorn.id, "damage", 2) == Decimal("6")
        assert _append(theater.id, popcorn.id, "direct", 4) == Decimal("10")
        db_session.commit()

    def test_adjustment_direction(self, db_session, theater, popcorn):
        assert _append(theater.id, popcorn.id, "adjustment", 2, direction="increase") == Decimal("12")
        assert _append(theater.id, popcorn.id, "adjustment", 5, direction="decrease") == Decimal("7")

    def test_adjustment_without_direction_rejected(self, db_session, theater, popcorn):
        with pytest.raises(LedgerError):
            _append(theater.id, popcorn.id, "adjustment", 2)

    def test_negative_quantity_rejected(self, db_session, theater, popcorn):
        with pytest.raises(LedgerError):
            _append(theater.id, popcorn.id, "invord", -1)

    def test_unknown_kind_rejected(self, db_session, theater, popcorn):
        with pytest.raises(LedgerError):
            _append(theater.id, popcorn.id, "theft", 1)

    def test_ledger_allows_negative_balance(self, db_session, theater, popcorn):
        assert _append(theater.id, popcorn.id, "expired", 12) == Decimal("-2")

    def test_quantity_normalized_into_stock_unit(self, db_session, theater, cola):
        balance = _append(theater.id, cola.id, "sales", 750, unit="ml")
        assert balance == Decimal("9.25")

        entry = (
            db_session.query(StockEntry)
            .filter_by(product_id=cola.id, kind="sales")
            .one()
        )
        assert entry.unit == "mL"
        assert Decimal(entry.quantity) == Decimal("750")
        assert Decimal(entry.normalized_quantity) == Decimal("0.75")
        assert entry.sign == -1

    def test_unit_from_other_family_rejected(self, db_session, theater, cola):
        with pytest.raises(UnitError):
            _append(theater.id, cola.id, "invord", 1, unit="kg")

    def test_opening_only_on_empty_month(self, db_session, theater, popcorn, make_product):
        with pytest.raises(LedgerError):
            _append(theater.id, popcorn.id, "opening", 5)
        db_session.rollback()

        fresh = make_product(theater, "Nachos")
        assert _append(theater.id, fresh.id, "opening", 5) == Decimal("5")

    def test_transfer_only_on_theater_stock(self, db_session, theater, popcorn):
        with pytest.raises(LedgerError):
            _append(theater.id, popcorn.id, "transfer", 1)

    def test_balance_lists_this_months_entries(self, db_session, theater, popcorn):
        _append(theater.id, popcorn.id, "sales", 2)
        db_session.commit()
        balance = stock_ledger_service.get_balance(theater.id, popcorn.id)
        assert balance.balance == Decimal("8")
        assert balance.opening_this_month == Decimal("0")
        assert [e.kind for e in balance.entries_this_month] == ["invord", "sales"]
        assert balance.to_dict()["balance"] == "8"
        assert balance.stock_unit == "Nos"


class TestMonths:

    def test_reads_do_not_materialize_months(self, db_session, theater, make_product):
        product = make_product(theater, "Samosa")
        before = db_session.query(StockMonth).count()
        balance = stock_ledger_service.get_balance(theater.id, product.id)
        snapshot = stock_ledger_service.snapshot(theater.id, product.id, 2025, 6)
        assert balance.balance == Decimal("0")
        assert snapshot["materialized"] is False
        assert db_session.query(StockMonth).count() == before

    def test_rollover_carries_closing_forward(self, db_session, theater, make_product):
        product = make_product(theater, "Samosa")
        _append(theater.id, product.id, "opening", 40, entry_date=datetime(2025, 1, 2, 9, 0))
        _append(theater.id, product.id, "sales", 15, entry_date=datetime(2025, 1, 20, 18, 0))
        db_session.commit()

        march = stock_ledger_service.rollover(theater.id, product.id, 2025, 3)
        db_session.commit()
        assert Decimal(march.opening_balance) == Decimal("25")
        assert stock_ledger_service.rollover(theater.id, product.id, 2025, 3).id == march.id

        april = stock_ledger_service.snapshot(theater.id, product.id, 2025, 4)
        assert april["materialized"] is False
        assert april["openingBalance"] == "25"
        assert april["closingBalance"] == "25"

    def test_back_dated_entry_reflows_later_months(self, db_session, theater, make_product):
        product = make_product(theater, "Samosa")
        _append(theater.id, product.id, "invord", 20, entry_date=datetime(2025, 1, 10))
        _append(theater.id, product.id, "sales", 5, entry_date=datetime(2025, 2, 5))
        db_session.commit()

        _append(theater.id, product.id, "damage", 2, entry_date=datetime(2025, 1, 20))
        db_session.commit()

        feb = (
            db_session.query(StockMonth)
            .filter_by(product_id=product.id, year=2025, month=2)
            .one()
        )
        assert Decimal(feb.opening_balance) == Decimal("18")
        assert Decimal(feb.closing_balance) == Decimal("13")
        assert stock_ledger_service.cache_is_consistent(feb)
        assert stock_ledger_service.current_balance(theater.id, product.id) == Decimal("13")

    def test_balance_as_of_past_moment(self, db_session, theater, make_product):
        product = make_product(theater, "Samosa")
        _append(theater.id, product.id, "invord", 20, entry_date=datetime(2025, 5, 1, 10, 0))
        _append(theater.id, product.id, "sales", 4, entry_date=datetime(2025, 5, 3, 10, 0))
        db_session.commit()

        mid = stock_ledger_service.get_balance(theater.id, product.id, as_of=datetime(2025, 5, 2))
        assert mid.balance == Decimal("20")
        end = stock_ledger_service.get_balance(theater.id, product.id, as_of=datetime(2025, 5, 31))
        assert end.balance == Decimal("16")

    def test_range_summary_spans_months(self, db_session, theater, make_product):
        product = make_product(theater, "Samosa")
        _append(theater.id, product.id, "invord", 20, entry_date=datetime(2025, 1, 10))
        _append(theater.id, product.id, "adjustment", 3, direction="increase", entry_date=datetime(2025, 1, 12))
        _append(theater.id, product.id, "sales", 5, entry_date=datetime(2025, 2, 5))
        db_session.commit()

        summary = stock_ledger_service.range_summary(
            theater.id, product.id, datetime(2025, 1, 11), datetime(2025, 3, 1)
        )
        assert summary["opening"] == Decimal("20")
        assert summary["totals"]["adjustment_in"] == Decimal("3")
        assert summary["totals"]["sales"] == Decimal("5")
        assert summary["totals"]["invord"] == Decimal("0")
        assert summary["closing"] == Decimal("18")


class TestSources:

    def test_sources_are_separate_ledgers(self, db_session, theater, popcorn):
        _append(theater.id, popcorn.id, "invord", 50, stock_source=STOCK_SOURCE_THEATER)
        db_session.commit()
        assert stock_ledger_service.current_balance(
            theater.id, popcorn.id, stock_source=STOCK_SOURCE_THEATER
        ) == Decimal("50")
        assert stock_ledger_service.current_balance(theater.id, popcorn.id) == Decimal("10")

    def test_transfer_to_cafe(self, db_session, theater, popcorn):
        _append(theater.id, popcorn.id, "invord", 50, stock_source=STOCK_SOURCE_THEATER)
        balances = stock_ledger_service.transfer_to_cafe(theater.id, popcorn.id, Decimal("4"))
        db_session.commit()
        assert balances[STOCK_SOURCE_THEATER] == Decimal("46")
        assert balances[STOCK_SOURCE_CAFE] == Decimal("14")

    def test_unknown_source_rejected(self, db_session, theater, popcorn):
        with pytest.raises(LedgerError):
            stock_ledger_service.current_balance(theater.id, popcorn.id, stock_source="warehouse")
