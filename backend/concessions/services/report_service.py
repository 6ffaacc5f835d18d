# Overview: Stock sales report and monthly stock spreadsheet.

from __future__ import annotations

import io
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func

from .. import units
from ..errors import ValidationFailed
from ..extensions import db
from ..models import Order, Product, Theater
from ..models.orders import STATE_COMPLETED, STATE_PAID, STATE_REFUNDED
from ..models.stock import KIND_CANCEL, KIND_SALES, STOCK_SOURCE_CAFE, STOCK_SOURCES
from ..time_utils import month_bounds, parse_iso_datetime
from . import stock_ledger_service


def _period(year: int, month: int, start_date: str | None, end_date: str | None) -> tuple[datetime, datetime]:
    """[start, end) for a report; explicit dates are inclusive days."""
    if not 1 <= month <= 12:
        raise ValidationFailed("month must be between 1 and 12")
    start, end = month_bounds(year, month)
    try:
        if start_date:
            start = parse_iso_datetime(start_date)
        if end_date:
            end = parse_iso_datetime(end_date) + timedelta(days=1)
    except (ValueError, TypeError):
        raise ValidationFailed("startDate and endDate must be YYYY-MM-DD")
    if end <= start:
        raise ValidationFailed("endDate must not be before startDate")
    return start, end


def _products(theater_id: int) -> list[Product]:
    return (
        db.session.query(Product)
        .filter(Product.theater_id == theater_id)
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )


def sales_report(
    theater_id: int,
    year: int,
    month: int,
    *,
    start_date: str | None = None,
    end_date: str | None = None,
) -> dict:
    """
    Units sold per product over a period, net of cancellations, plus order
    revenue for the same period.
    """
    start, end = _period(year, month, start_date, end_date)
    products = {p.id: p for p in _products(theater_id)}
    entries = stock_ledger_service.entries_between(
        theater_id, None, start, end, stock_source=STOCK_SOURCE_CAFE
    )

    per_product: dict[int, dict] = {}
    for entry in entries:
        if entry.kind not in (KIND_SALES, KIND_CANCEL):
            continue
        row = per_product.setdefault(
            entry.product_id,
            {"sold": Decimal(0), "cancelled": Decimal(0)},
        )
        amount = units.to_decimal(entry.normalized_quantity)
        if entry.kind == KIND_SALES:
            row["sold"] += amount
        else:
            row["cancelled"] += amount

    rows = []
    for pid in sorted(per_product, key=lambda p: (products[p].name if p in products else "", p)):
        product = products.get(pid)
        data = per_product[pid]
        net = data["sold"] - data["cancelled"]
        rows.append(
            {
                "productId": pid,
                "name": product.name if product else None,
                "stockUnit": product.stock_unit if product else None,
                "sold": units.format_quantity(data["sold"]),
                "cancelled": units.format_quantity(data["cancelled"]),
                "net": units.format_quantity(net),
            }
        )

    revenue_states = (STATE_PAID, STATE_COMPLETED, STATE_REFUNDED)
    order_count, gross, refunded, tax = (
        db.session.query(
            func.count(Order.id),
            func.coalesce(func.sum(Order.grand_total), 0),
            func.coalesce(func.sum(Order.refunded_amount), 0),
            func.coalesce(func.sum(Order.tax_total), 0),
        )
        .filter(
            Order.theater_id == theater_id,
            Order.state.in_(revenue_states),
            Order.paid_at >= start,
            Order.paid_at < end,
        )
        .one()
    )
    gross = Decimal(str(gross)).quantize(Decimal("0.01"))
    refunded = Decimal(str(refunded)).quantize(Decimal("0.01"))
    return {
        "theaterId": theater_id,
        "period": {"start": start.isoformat(), "end": end.isoformat()},
        "products": rows,
        "orders": {
            "count": order_count,
            "gross": str(gross),
            "refunded": str(refunded),
            "net": str(gross - refunded),
            "tax": str(Decimal(str(tax)).quantize(Decimal("0.01"))),
        },
    }


def stock_rows(
    theater_id: int,
    year: int,
    month: int,
    *,
    as_of: str | None = None,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> list[dict]:
    if stock_source not in STOCK_SOURCES:
        raise ValidationFailed(f"stockSource must be one of {', '.join(STOCK_SOURCES)}")
    start, end = _period(year, month, None, None)
    if as_of:
        try:
            day = parse_iso_datetime(as_of)
        except ValueError:
            raise ValidationFailed("date must be YYYY-MM-DD")
        if day is None or not (start <= day < end):
            raise ValidationFailed("date must fall inside the requested month")
        end = day + timedelta(days=1)

    rows = []
    for product in _products(theater_id):
        summary = stock_ledger_service.range_summary(
            theater_id, product.id, start, end, stock_source=stock_source
        )
        rows.append({"product": product, **summary})
    return rows


COLUMN_LABELS = {
    "opening": "Opening Entry",
    "invord": "Inward",
    "direct": "Direct Purchase",
    "sales": "Sales",
    "addon": "Add-on",
    "adjustment_in": "Adjustment (+)",
    "adjustment_out": "Adjustment (-)",
    "cancel": "Cancelled",
    "expired": "Expired",
    "damage": "Damage",
    "transfer": "Transfer",
}


def stock_workbook(
    theater_id: int,
    year: int,
    month: int,
    *,
    as_of: str | None = None,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> bytes:
    """
    One row per product: opening balance, every kind's total and closing in
    the product's stock unit. The totals rows use the aggregate display unit
    (g/mL/L/kg summed as kg; Nos separately).
    """
    from openpyxl import Workbook
    from openpyxl.styles import Font

    theater = db.session.get(Theater, theater_id)
    rows = stock_rows(theater_id, year, month, as_of=as_of, stock_source=stock_source)
    keys = stock_ledger_service.SUMMARY_KEYS

    wb = Workbook()
    sheet = wb.active
    sheet.title = f"{year}-{month:02d}"
    title = f"{theater.name if theater else theater_id} {stock_source} stock {year}-{month:02d}"
    if as_of:
        title += f" as of {as_of}"
    sheet.append([title])
    sheet["A1"].font = Font(bold=True)

    sheet.append(
        ["Product", "Unit", "Opening Balance"]
        + [COLUMN_LABELS.get(key, key) for key in keys]
        + ["Closing Balance"]
    )
    for cell in sheet[2]:
        cell.font = Font(bold=True)

    empty = {"opening": Decimal(0), "closing": Decimal(0), **{key: Decimal(0) for key in keys}}
    display_totals = {units.KILOGRAM: dict(empty), units.NOS: dict(empty)}
    for row in rows:
        product = row["product"]
        stock_unit = units.canonical_unit(product.stock_unit)
        values = [row["opening"]] + [row["totals"][key] for key in keys] + [row["closing"]]
        sheet.append([product.name, stock_unit] + [float(v) for v in values])

        named = {"opening": row["opening"], "closing": row["closing"], **row["totals"]}
        for key, amount in named.items():
            shown, display_unit = units.display_quantity(amount, stock_unit)
            display_totals[display_unit][key] += shown

    sheet.append([])
    for display_unit, totals in display_totals.items():
        sheet.append(
            [f"Total ({display_unit})", display_unit, float(totals["opening"])]
            + [float(totals[key]) for key in keys]
            + [float(totals["closing"])]
        )
        sheet.cell(row=sheet.max_row, column=1).font = Font(bold=True)

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()
