# Overview: Stock units, pack-string parsing and fixed conversions.

"""
Stock unit invariants (authoritative)

- Canonical stock units are Nos, g, kg, mL, L.
- Conversions are fixed: 1 kg = 1000 g, 1 L = 1000 mL. Nos converts to nothing.
- Quantities are Decimal end to end; conversions multiply or divide by 1000
  exactly, so converting there and back returns the original value.
- Cross-family conversion (mL -> kg) is never done for storage. Reports may
  ask for a "display" quantity where liquids are shown as kg (1 L ~ 1 kg).
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from .errors import UnitError


NOS = "Nos"
GRAM = "g"
KILOGRAM = "kg"
MILLILITRE = "mL"
LITRE = "L"

STOCK_UNITS = (NOS, GRAM, KILOGRAM, MILLILITRE, LITRE)

# unit -> (family, factor to the family's base unit)
_FAMILY = {
    NOS: ("count", Decimal(1)),
    GRAM: ("mass", Decimal(1)),
    KILOGRAM: ("mass", Decimal(1000)),
    MILLILITRE: ("volume", Decimal(1)),
    LITRE: ("volume", Decimal(1000)),
}

_ALIASES = {
    "nos": NOS, "no": NOS, "num": NOS, "number": NOS, "numbers": NOS,
    "pc": NOS, "pcs": NOS, "piece": NOS, "pieces": NOS, "unit": NOS, "units": NOS,
    "g": GRAM, "gm": GRAM, "gms": GRAM, "gram": GRAM, "grams": GRAM,
    "kg": KILOGRAM, "kgs": KILOGRAM, "kilo": KILOGRAM, "kilogram": KILOGRAM, "kilograms": KILOGRAM,
    "ml": MILLILITRE, "milli": MILLILITRE, "millilitre": MILLILITRE, "milliliter": MILLILITRE,
    "milliliters": MILLILITRE, "millilitres": MILLILITRE,
    "l": LITRE, "ltr": LITRE, "ltrs": LITRE, "litre": LITRE, "liter": LITRE,
    "litres": LITRE, "liters": LITRE,
}

_PACK_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z.]+)?\s*$")


def canonical_unit(raw: str | None) -> str:
    """Map any spelling of a unit ("ML", "ltr", "k.g") to its canonical form."""
    if raw is None:
        raise UnitError("unit is required")
    key = str(raw).strip().replace(".", "").lower()
    if not key:
        raise UnitError("unit is required")
    unit = _ALIASES.get(key)
    if unit is None:
        raise UnitError(f"unknown unit: {raw!r}")
    return unit


def is_convertible(source: str, target: str) -> bool:
    return _FAMILY[canonical_unit(source)][0] == _FAMILY[canonical_unit(target)][0]


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise UnitError("quantity must be a number")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise UnitError(f"quantity must be a number, got {value!r}")


def normalize(quantity, source: str, target: str) -> Decimal:
    """Convert `quantity` from `source` unit to `target` unit."""
    src = canonical_unit(source)
    dst = canonical_unit(target)
    qty = to_decimal(quantity)
    if src == dst:
        return qty
    src_family, src_factor = _FAMILY[src]
    dst_family, dst_factor = _FAMILY[dst]
    if src_family != dst_family:
        raise UnitError(f"cannot convert {src} to {dst}")
    return qty * src_factor / dst_factor


def parse_pack(pack: str | None) -> tuple[Decimal, str] | None:
    """
    Parse a pack quantity string such as "150 ML", "1kg" or "2".

    A bare number is a count. Returns None when the string cannot be parsed
    or names an unknown unit.
    """
    if pack is None:
        return None
    match = _PACK_RE.match(str(pack))
    if not match:
        return None
    amount = Decimal(match.group(1))
    if amount <= 0:
        return None
    unit_raw = match.group(2)
    if not unit_raw:
        return amount, NOS
    try:
        return amount, canonical_unit(unit_raw)
    except UnitError:
        return None


def display_quantity(quantity, unit: str) -> tuple[Decimal, str]:
    """
    Aggregate-report display form: metric quantities shown in kg.

    Liquids are treated as 1 L ~ 1 kg. Never used for storage.
    """
    unit = canonical_unit(unit)
    qty = to_decimal(quantity)
    if unit == NOS:
        return qty, NOS
    if unit in (GRAM, MILLILITRE):
        return qty / Decimal(1000), KILOGRAM
    return qty, KILOGRAM


def format_quantity(value) -> str:
    """Plain string form without exponent or trailing zeros ("10", "0.15")."""
    return format(to_decimal(value).normalize(), "f")
