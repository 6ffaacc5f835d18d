# Overview: Line and order totals with GST and discounts (half-even, 2 dp).

"""
Money invariants (authoritative)

- All monetary values are Decimal rounded to 2 places with ROUND_HALF_EVEN.
- Discount applies to the per-unit price before tax.
- INCLUSIVE: the discounted price already contains tax;
      tax = net * rate / (100 + rate), taxable = net - tax, line_total = net
- EXCLUSIVE: tax is added on top;
      tax = net * rate / 100, taxable = net, line_total = net + tax
- CGST and SGST are half of the tax each; SGST takes the odd cent so that
  cgst + sgst == tax exactly.
- Order: subtotal = sum(taxable), tax = sum(line tax),
  grand_total = subtotal + tax - cart_discount.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_EVEN, InvalidOperation


CENT = Decimal("0.01")
ZERO = Decimal("0.00")

GST_INCLUSIVE = "INCLUSIVE"
GST_EXCLUSIVE = "EXCLUSIVE"
GST_TYPES = (GST_INCLUSIVE, GST_EXCLUSIVE)


def money(value) -> Decimal:
    """Coerce to Decimal and round half-even to cents."""
    if isinstance(value, bool):
        raise ValueError("amount must be a number")
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"amount must be a number, got {value!r}")
    return amount.quantize(CENT, rounding=ROUND_HALF_EVEN)


def normalize_gst_type(raw: str | None) -> str:
    """Accept INCLUSIVE/EXCLUSIVE and the older Include/Exclude spellings."""
    value = (raw or GST_EXCLUSIVE).strip().upper()
    if value.startswith("INCLU"):
        return GST_INCLUSIVE
    if value.startswith("EXCLU"):
        return GST_EXCLUSIVE
    raise ValueError(f"unknown gstType: {raw!r}")


def split_tax(tax: Decimal) -> tuple[Decimal, Decimal]:
    cgst = money(tax / 2)
    return cgst, tax - cgst


@dataclass(frozen=True)
class LineTotals:
    unit_price: Decimal
    unit_price_after_discount: Decimal
    quantity: int
    gross: Decimal
    discount: Decimal
    net: Decimal
    taxable: Decimal
    tax: Decimal
    cgst: Decimal
    sgst: Decimal
    line_total: Decimal

    def to_dict(self) -> dict:
        return {
            "unitPrice": str(self.unit_price),
            "unitPriceAfterDiscount": str(self.unit_price_after_discount),
            "quantity": self.quantity,
            "gross": str(self.gross),
            "discount": str(self.discount),
            "taxable": str(self.taxable),
            "tax": str(self.tax),
            "cgst": str(self.cgst),
            "sgst": str(self.sgst),
            "lineTotal": str(self.line_total),
        }


def price_line(
    unit_price,
    quantity: int,
    *,
    tax_rate=0,
    gst_type: str = GST_EXCLUSIVE,
    discount_percent=0,
) -> LineTotals:
    price = money(unit_price)
    rate = Decimal(str(tax_rate or 0))
    disc = Decimal(str(discount_percent or 0))
    gst = normalize_gst_type(gst_type)
    if price < 0:
        raise ValueError("unit price must be >= 0")
    if rate < 0:
        raise ValueError("tax rate must be >= 0")
    if disc < 0 or disc > 100:
        raise ValueError("discount percent must be between 0 and 100")

    unit_after = money(price - price * disc / 100)
    gross = money(price * quantity)
    net = money(unit_after * quantity)
    discount = gross - net

    if gst == GST_INCLUSIVE:
        tax = money(net * rate / (100 + rate)) if rate else ZERO
        taxable = net - tax
        line_total = net
    else:
        tax = money(net * rate / 100) if rate else ZERO
        taxable = net
        line_total = net + tax

    cgst, sgst = split_tax(tax)
    return LineTotals(
        unit_price=price,
        unit_price_after_discount=unit_after,
        quantity=quantity,
        gross=gross,
        discount=discount,
        net=net,
        taxable=taxable,
        tax=tax,
        cgst=cgst,
        sgst=sgst,
        line_total=line_total,
    )


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    discount: Decimal
    cart_discount: Decimal
    tax: Decimal
    cgst: Decimal
    sgst: Decimal
    grand_total: Decimal

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "discount": str(self.discount),
            "cartDiscount": str(self.cart_discount),
            "tax": str(self.tax),
            "cgst": str(self.cgst),
            "sgst": str(self.sgst),
            "grandTotal": str(self.grand_total),
        }


def order_totals(lines: list[LineTotals], cart_discount=0) -> OrderTotals:
    cart_disc = money(cart_discount or 0)
    if cart_disc < 0:
        raise ValueError("cart discount must be >= 0")
    subtotal = sum((line.taxable for line in lines), ZERO)
    tax = sum((line.tax for line in lines), ZERO)
    discount = sum((line.discount for line in lines), ZERO)
    grand = subtotal + tax - cart_disc
    if grand < 0:
        raise ValueError("cart discount exceeds order total")
    cgst, sgst = split_tax(tax)
    return OrderTotals(
        subtotal=subtotal,
        discount=discount + cart_disc,
        cart_discount=cart_disc,
        tax=tax,
        cgst=cgst,
        sgst=sgst,
        grand_total=grand,
    )


def totals_match(server_total: Decimal, client_total, tolerance="0.01") -> bool:
    try:
        client = money(client_total)
    except ValueError:
        return False
    return abs(server_total - client) <= Decimal(str(tolerance))
