# Overview: Pytest coverage for stock units and the consumption calculator.

"""
Unit conversion and consumption tests.

Verifies:
- Unit spellings map onto the canonical set; cross-family conversion fails
- Pack strings parse into (amount, unit)
- Per-unit consumption follows pack, no_qty and stock unit
- Combos expand into per-component consumption, shared components summed
"""

from decimal import Decimal

import pytest

from concessions import units
from concessions.consumption import (
    ComboComponentSpec,
    ComboSpec,
    ProductSpec,
    combo_consumption,
    consumption,
    line_consumption,
    per_unit_consumption,
    total_consumption,
)
from concessions.errors import UnitError


class TestUnits:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("ML", "mL"),
            ("ml", "mL"),
            ("ltr", "L"),
            ("Litres", "L"),
            ("k.g", "kg"),
            ("GMS", "g"),
            ("pcs", "Nos"),
            ("Nos", "Nos"),
        ],
    )
    def test_canonical_unit(self, raw, expected):
        assert units.canonical_unit(raw) == expected

    @pytest.mark.parametrize("raw", [None, "", "cups", "oz"])
    def test_unknown_unit_rejected(self, raw):
        with pytest.raises(UnitError):
            units.canonical_unit(raw)

    def test_normalize_within_family(self):
        assert units.normalize(Decimal("1.5"), "kg", "g") == Decimal("1500")
        assert units.normalize(250, "mL", "L") == Decimal("0.25")
        assert units.normalize(3, "Nos", "Nos") == Decimal("3")

    def test_normalize_round_trip_is_exact(self):
        there = units.normalize(Decimal("0.333"), "L", "mL")
        assert units.normalize(there, "mL", "L") == Decimal("0.333")

    @pytest.mark.parametrize("source,target", [("L", "kg"), ("Nos", "g"), ("mL", "Nos")])
    def test_cross_family_conversion_fails(self, source, target):
        with pytest.raises(UnitError):
            units.normalize(1, source, target)

    @pytest.mark.parametrize(
        "pack,expected",
        [
            ("150 ML", (Decimal("150"), "mL")),
            ("1kg", (Decimal("1"), "kg")),
            ("2", (Decimal("2"), "Nos")),
            ("0.5 L", (Decimal("0.5"), "L")),
        ],
    )
    def test_parse_pack(self, pack, expected):
        assert units.parse_pack(pack) == expected

    @pytest.mark.parametrize("pack", [None, "", "large", "0 ml", "150 cups"])
    def test_parse_pack_unparseable(self, pack):
        assert units.parse_pack(pack) is None

    def test_display_quantity_shows_metric_as_kg(self):
        assert units.display_quantity(Decimal("1500"), "g") == (Decimal("1.5"), "kg")
        assert units.display_quantity(Decimal("2"), "L") == (Decimal("2"), "kg")
        assert units.display_quantity(Decimal("7"), "Nos") == (Decimal("7"), "Nos")

    def test_format_quantity(self):
        assert units.format_quantity(Decimal("10.000000")) == "10"
        assert units.format_quantity(Decimal("0.150")) == "0.15"
        assert units.format_quantity(Decimal("-2.5")) == "-2.5"


class TestConsumption:

    def test_counted_product_consumes_one_each(self):
        spec = ProductSpec(product_id=1, stock_unit="Nos")
        assert per_unit_consumption(spec) == Decimal("1")
        assert consumption(spec, 3) == Decimal("3")

    def test_metric_pack_converted_into_stock_unit(self):
        spec = ProductSpec(product_id=2, stock_unit="L", pack="500 ML")
        assert per_unit_consumption(spec) == Decimal("0.5")
        assert consumption(spec, 4) == Decimal("2")

    def test_no_qty_multiplies(self):
        spec = ProductSpec(product_id=3, stock_unit="g", pack="150 g", no_qty=Decimal("2"))
        assert consumption(spec, 2) == Decimal("600")

    def test_metric_pack_on_counted_stock_is_descriptive(self):
        spec = ProductSpec(product_id=4, stock_unit="Nos", pack="150 ML", no_qty=Decimal("1"))
        assert per_unit_consumption(spec) == Decimal("1")

    def test_counted_pack_multiplies_on_counted_stock(self):
        spec = ProductSpec(product_id=5, stock_unit="Nos", pack="6")
        assert consumption(spec, 2) == Decimal("12")

    def test_unparseable_pack_counts_as_one_nos(self):
        spec = ProductSpec(product_id=6, stock_unit="Nos", pack="family size")
        assert per_unit_consumption(spec) == Decimal("1")

    def test_pack_from_other_family_is_unit_error(self):
        spec = ProductSpec(product_id=7, stock_unit="kg", pack="150 ML")
        with pytest.raises(UnitError):
            per_unit_consumption(spec)

    def test_zero_quantity_consumes_nothing(self):
        spec = ProductSpec(product_id=8, stock_unit="L", pack="500 ML")
        assert consumption(spec, 0) == Decimal("0")

    def test_combo_expands_into_components(self):
        popcorn = ProductSpec(product_id=1, stock_unit="Nos")
        cola = ProductSpec(product_id=2, stock_unit="L", pack="500 ML")
        combo = ComboSpec(
            combo_id=10,
            components=(
                ComboComponentSpec(product=popcorn, per_combo_quantity=1),
                ComboComponentSpec(product=cola, per_combo_quantity=2),
            ),
        )
        assert combo_consumption(combo, 3) == {1: Decimal("3"), 2: Decimal("3")}
        assert line_consumption(combo, 1) == {1: Decimal("1"), 2: Decimal("1")}

    def test_shared_component_is_batched_across_lines(self):
        popcorn = ProductSpec(product_id=1, stock_unit="Nos")
        combo = ComboSpec(
            combo_id=10,
            components=(ComboComponentSpec(product=popcorn, per_combo_quantity=2),),
        )
        totals = total_consumption([(combo, 2), (popcorn, 1)])
        assert totals == {1: Decimal("5")}
