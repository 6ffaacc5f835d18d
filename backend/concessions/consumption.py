# Overview: Consumption calculator; maps an order line to stock-unit deltas.

"""
Consumption calculator.

Pure and deterministic: takes plain specs (never models, never the ledger)
so both the server and a device can compute identical numbers.

    consumption = order_quantity * packed_amount * no_qty    (in stock unit)

- packed_amount comes from the product's pack string ("150 ML" -> 150 mL),
  converted into the product's stock unit with the fixed table in `units`.
- An unparseable pack counts as 1 Nos.
- When the stock unit is Nos, a metric pack is descriptive only and each
  unit sold consumes no_qty.
- A metric stock unit with a pack from another family is a UnitError.

Combos expand into their components; the result is keyed by component
product id so one stock event can be recorded per component.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from . import units
from .errors import UnitError


@dataclass(frozen=True)
class ProductSpec:
    product_id: int
    stock_unit: str = units.NOS
    pack: str | None = None
    no_qty: Decimal = Decimal(1)
    orderable: bool = True
    name: str = ""


@dataclass(frozen=True)
class ComboComponentSpec:
    product: ProductSpec
    per_combo_quantity: int = 1


@dataclass(frozen=True)
class ComboSpec:
    combo_id: int
    components: tuple[ComboComponentSpec, ...] = field(default_factory=tuple)
    name: str = ""


def per_unit_consumption(product: ProductSpec, target_unit: str | None = None) -> Decimal:
    """Stock consumed by selling one unit of `product`, in `target_unit`."""
    target = units.canonical_unit(target_unit or product.stock_unit)
    no_qty = units.to_decimal(product.no_qty or 1)
    if no_qty <= 0:
        no_qty = Decimal(1)

    parsed = units.parse_pack(product.pack)
    if parsed is None:
        amount, pack_unit = Decimal(1), units.NOS
    else:
        amount, pack_unit = parsed

    if target == units.NOS:
        if pack_unit == units.NOS:
            return amount * no_qty
        return no_qty

    if not units.is_convertible(pack_unit, target):
        raise UnitError(
            f"product {product.product_id}: pack {product.pack!r} cannot be expressed in {target}"
        )
    return units.normalize(amount, pack_unit, target) * no_qty


def consumption(product: ProductSpec, order_quantity, target_unit: str | None = None) -> Decimal:
    qty = units.to_decimal(order_quantity)
    if qty <= 0:
        return Decimal(0)
    return qty * per_unit_consumption(product, target_unit)


def combo_consumption(combo: ComboSpec, order_quantity) -> dict[int, Decimal]:
    """Expand a combo into per-component consumption in each component's stock unit."""
    qty = units.to_decimal(order_quantity)
    result: dict[int, Decimal] = {}
    for component in combo.components:
        needed = qty * component.per_combo_quantity
        amount = consumption(component.product, needed, component.product.stock_unit)
        pid = component.product.product_id
        result[pid] = result.get(pid, Decimal(0)) + amount
    return result


def line_consumption(spec: ProductSpec | ComboSpec, order_quantity) -> dict[int, Decimal]:
    """Consumption of one cart/order line keyed by affected product id."""
    if isinstance(spec, ComboSpec):
        return combo_consumption(spec, order_quantity)
    return {spec.product_id: consumption(spec, order_quantity, spec.stock_unit)}


def total_consumption(lines) -> dict[int, Decimal]:
    """Sum consumption over (spec, quantity) pairs, batching combo components."""
    totals: dict[int, Decimal] = {}
    for spec, quantity in lines:
        for pid, amount in line_consumption(spec, quantity).items():
            totals[pid] = totals.get(pid, Decimal(0)) + amount
    return totals
