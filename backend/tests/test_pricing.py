# Overview: Pytest coverage for line and order pricing.

from decimal import Decimal

import pytest

from concessions.pricing import (
    money,
    normalize_gst_type,
    order_totals,
    price_line,
    totals_match,
)


class TestMoney:

    def test_half_even_rounding(self):
        assert money("2.345") == Decimal("2.34")
        assert money("2.355") == Decimal("2.36")
        assert money(7) == Decimal("7.00")

    @pytest.mark.parametrize("value", [True, "abc", None])
    def test_rejects_non_numbers(self, value):
        with pytest.raises(ValueError):
            money(value)

    @pytest.mark.parametrize(
        "raw,expected",
        [("INCLUSIVE", "INCLUSIVE"), ("Include", "INCLUSIVE"), ("exclusive", "EXCLUSIVE"), (None, "EXCLUSIVE")],
    )
    def test_gst_type_spellings(self, raw, expected):
        assert normalize_gst_type(raw) == expected

    def test_unknown_gst_type(self):
        with pytest.raises(ValueError):
            normalize_gst_type("VAT")


class TestPriceLine:

    def test_exclusive_tax_added_on_top(self):
        line = price_line("200.00", 2, tax_rate=5, gst_type="EXCLUSIVE")
        assert line.taxable == Decimal("400.00")
        assert line.tax == Decimal("20.00")
        assert line.line_total == Decimal("420.00")
        assert line.cgst + line.sgst == line.tax

    def test_inclusive_tax_extracted(self):
        line = price_line("100.00", 1, tax_rate=18, gst_type="INCLUSIVE")
        assert line.tax == Decimal("15.25")
        assert line.taxable == Decimal("84.75")
        assert line.line_total == Decimal("100.00")

    def test_two_items_at_five_percent_exclusive(self):
        line = price_line("100.00", 2, tax_rate=5, gst_type="EXCLUSIVE")
        assert line.taxable == Decimal("200.00")
        assert line.tax == Decimal("10.00")
        assert line.cgst == Decimal("5.00")
        assert line.sgst == Decimal("5.00")
        assert line.line_total == Decimal("210.00")

    def test_discounted_inclusive_line(self):
        line = price_line("118.00", 1, tax_rate=18, gst_type="INCLUSIVE", discount_percent=10)
        assert line.unit_price_after_discount == Decimal("106.20")
        assert line.line_total == Decimal("106.20")
        assert line.tax == Decimal("16.20")
        assert line.taxable == Decimal("90.00")
        assert line.cgst == Decimal("8.10")
        assert line.sgst == Decimal("8.10")

    def test_odd_cent_goes_to_sgst(self):
        line = price_line("100.00", 1, tax_rate=18, gst_type="INCLUSIVE")
        assert line.cgst == Decimal("7.62")
        assert line.sgst == Decimal("7.63")

    def test_discount_applies_before_tax(self):
        line = price_line("100.00", 3, tax_rate=10, gst_type="EXCLUSIVE", discount_percent=10)
        assert line.unit_price_after_discount == Decimal("90.00")
        assert line.gross == Decimal("300.00")
        assert line.discount == Decimal("30.00")
        assert line.tax == Decimal("27.00")
        assert line.line_total == Decimal("297.00")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"unit_price": "-1"},
            {"unit_price": "10", "tax_rate": -5},
            {"unit_price": "10", "discount_percent": 101},
        ],
    )
    def test_rejects_invalid_inputs(self, kwargs):
        unit_price = kwargs.pop("unit_price")
        with pytest.raises(ValueError):
            price_line(unit_price, 1, **kwargs)


class TestOrderTotals:

    def test_sums_lines_and_subtracts_cart_discount(self):
        lines = [
            price_line("200.00", 1, tax_rate=5, gst_type="EXCLUSIVE"),
            price_line("100.00", 2, tax_rate=18, gst_type="INCLUSIVE"),
        ]
        totals = order_totals(lines, cart_discount="10")
        assert totals.subtotal == Decimal("200.00") + Decimal("169.49")
        assert totals.tax == Decimal("10.00") + Decimal("30.51")
        assert totals.grand_total == Decimal("400.00")
        assert totals.cgst + totals.sgst == totals.tax
        assert totals.to_dict()["grandTotal"] == "400.00"

    def test_cart_discount_cannot_exceed_total(self):
        with pytest.raises(ValueError):
            order_totals([price_line("10.00", 1)], cart_discount="11")

    def test_totals_match_tolerance(self):
        assert totals_match(Decimal("100.00"), "100.01")
        assert not totals_match(Decimal("100.00"), "100.02")
        assert not totals_match(Decimal("100.00"), "not a number")
