# Overview: Monthly stock ledger; append signed events, derive balances, roll months over.

"""
Stock ledger invariants (authoritative)

- One StockMonth per (theater, product, stock_source, year, month).
- Entries are append-only. quantity is never negative; the kind decides the
  sign, which is frozen on the row:
      opening, invord, direct, cancel          -> +1
      sales, addon, expired, damage, transfer  -> -1
      adjustment                               -> +1 / -1 by direction
- balance(M) = opening(M) + sum(sign * normalized_quantity) over M's entries,
  folded in (entry_date, sequence) order.
- opening(M) == closing(previous materialized month), or 0 for the first.
- Months are materialized lazily: the first append into a month (or an
  explicit rollover) creates it. Reads of an unmaterialized month derive
  the same numbers without writing.
- closing_balance on StockMonth is a cache, rewritten after every append
  and every reflow. Nothing reads it as truth.
- The ledger does not forbid negative balances. Orders guard sufficiency
  before appending; operators may adjust below zero.

Functions here never commit; the caller owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError

from .. import units
from ..errors import LedgerError
from ..extensions import db
from ..models import Product, StockEntry, StockMonth
from ..models.stock import (
    ENTRY_KINDS,
    KIND_ADDON,
    KIND_ADJUSTMENT,
    KIND_CANCEL,
    KIND_DAMAGE,
    KIND_DIRECT,
    KIND_EXPIRED,
    KIND_INVORD,
    KIND_OPENING,
    KIND_SALES,
    KIND_TRANSFER,
    STOCK_SOURCE_CAFE,
    STOCK_SOURCE_THEATER,
    STOCK_SOURCES,
)
from ..time_utils import month_bounds, utcnow
from .concurrency import lock_for_update


_FIXED_SIGNS = {
    KIND_OPENING: 1,
    KIND_INVORD: 1,
    KIND_DIRECT: 1,
    KIND_CANCEL: 1,
    KIND_SALES: -1,
    KIND_ADDON: -1,
    KIND_EXPIRED: -1,
    KIND_DAMAGE: -1,
    KIND_TRANSFER: -1,
}

DIRECTION_INCREASE = "increase"
DIRECTION_DECREASE = "decrease"

# Report columns: every kind, adjustments split by direction
SUMMARY_KEYS = tuple(
    key
    for kind in ENTRY_KINDS
    for key in ((f"{kind}_in", f"{kind}_out") if kind == KIND_ADJUSTMENT else (kind,))
)


@dataclass
class StockEvent:
    kind: str
    quantity: Decimal
    unit: str | None = None
    entry_date: datetime | None = None
    note: str | None = None
    direction: str | None = None
    order_id: int | None = None
    item_index: int | None = None
    created_by_user_id: int | None = None


@dataclass
class Balance:
    theater_id: int
    product_id: int
    stock_source: str
    year: int
    month: int
    stock_unit: str
    balance: Decimal
    opening_this_month: Decimal
    entries_this_month: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "theater_id": self.theater_id,
            "product_id": self.product_id,
            "stock_source": self.stock_source,
            "year": self.year,
            "month": self.month,
            "stockUnit": self.stock_unit,
            "balance": units.format_quantity(self.balance),
            "openingThisMonth": units.format_quantity(self.opening_this_month),
            "entriesThisMonth": [e.to_dict() for e in self.entries_this_month],
        }


def sign_for(kind: str, direction: str | None = None) -> int:
    if kind == KIND_ADJUSTMENT:
        if direction == DIRECTION_INCREASE:
            return 1
        if direction == DIRECTION_DECREASE:
            return -1
        raise LedgerError("adjustment requires direction 'increase' or 'decrease'")
    try:
        return _FIXED_SIGNS[kind]
    except KeyError:
        raise LedgerError(f"unknown stock entry kind: {kind!r}")


def summary_key(entry: StockEntry) -> str:
    if entry.kind == KIND_ADJUSTMENT:
        return "adjustment_in" if entry.sign > 0 else "adjustment_out"
    return entry.kind


def _check_source(stock_source: str) -> str:
    if stock_source not in STOCK_SOURCES:
        raise LedgerError(f"unknown stock source: {stock_source!r}")
    return stock_source


def _month_query(theater_id: int, product_id: int, stock_source: str):
    return db.session.query(StockMonth).filter(
        StockMonth.theater_id == theater_id,
        StockMonth.product_id == product_id,
        StockMonth.stock_source == stock_source,
    )


def _get_month(theater_id, product_id, stock_source, year, month) -> StockMonth | None:
    return _month_query(theater_id, product_id, stock_source).filter(
        StockMonth.year == year,
        StockMonth.month == month,
    ).first()


def _latest_month_before(theater_id, product_id, stock_source, year, month) -> StockMonth | None:
    return (
        _month_query(theater_id, product_id, stock_source)
        .filter(
            or_(
                StockMonth.year < year,
                and_(StockMonth.year == year, StockMonth.month < month),
            )
        )
        .order_by(StockMonth.year.desc(), StockMonth.month.desc())
        .first()
    )


def _months_after(theater_id, product_id, stock_source, year, month) -> list[StockMonth]:
    return (
        _month_query(theater_id, product_id, stock_source)
        .filter(
            or_(
                StockMonth.year > year,
                and_(StockMonth.year == year, StockMonth.month > month),
            )
        )
        .order_by(StockMonth.year.asc(), StockMonth.month.asc())
        .all()
    )


def month_entries(stock_month: StockMonth, *, until: datetime | None = None) -> list[StockEntry]:
    query = db.session.query(StockEntry).filter(StockEntry.stock_month_id == stock_month.id)
    if until is not None:
        query = query.filter(StockEntry.entry_date <= until)
    return query.order_by(StockEntry.entry_date.asc(), StockEntry.sequence.asc()).all()


def fold(opening, entries) -> Decimal:
    balance = units.to_decimal(opening)
    for entry in entries:
        balance += entry.signed_quantity
    return balance


def closing_of(stock_month: StockMonth) -> Decimal:
    """Closing balance derived from entries (ignores the cached column)."""
    return fold(stock_month.opening_balance, month_entries(stock_month))


def cache_is_consistent(stock_month: StockMonth) -> bool:
    return units.to_decimal(stock_month.closing_balance) == closing_of(stock_month)


def _product(product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None:
        raise LedgerError(f"product {product_id} not found")
    return product


def _opening_for(theater_id, product_id, stock_source, year, month) -> Decimal:
    previous = _latest_month_before(theater_id, product_id, stock_source, year, month)
    if previous is None:
        return Decimal(0)
    return closing_of(previous)


def rollover(
    theater_id: int,
    product_id: int,
    to_year: int,
    to_month: int,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> StockMonth:
    """
    Materialize (theater, product, source, to_year, to_month).

    Opening is the closing of the latest earlier month. Idempotent by the
    target key: an existing month is returned untouched.
    """
    _check_source(stock_source)
    existing = _get_month(theater_id, product_id, stock_source, to_year, to_month)
    if existing is not None:
        return existing

    product = _product(product_id)
    if product.theater_id != theater_id:
        raise LedgerError(f"product {product_id} does not belong to theater {theater_id}")
    previous = _latest_month_before(theater_id, product_id, stock_source, to_year, to_month)
    opening = closing_of(previous) if previous is not None else Decimal(0)
    stock_unit = previous.stock_unit if previous is not None else units.canonical_unit(product.stock_unit)

    stock_month = StockMonth(
        theater_id=theater_id,
        product_id=product_id,
        stock_source=stock_source,
        year=to_year,
        month=to_month,
        stock_unit=stock_unit,
        opening_balance=opening,
        closing_balance=opening,
        next_sequence=1,
    )
    try:
        with db.session.begin_nested():
            db.session.add(stock_month)
    except IntegrityError:
        # Created concurrently by another transaction
        existing = _get_month(theater_id, product_id, stock_source, to_year, to_month)
        if existing is None:
            raise
        return existing
    return stock_month


def lock_month(theater_id, product_id, year, month, *, stock_source=STOCK_SOURCE_CAFE) -> StockMonth:
    """Materialize and lock one month row for an append."""
    rollover(theater_id, product_id, year, month, stock_source=stock_source)
    return lock_for_update(
        _month_query(theater_id, product_id, stock_source).filter(
            StockMonth.year == year,
            StockMonth.month == month,
        )
    ).one()


def lock_months(theater_id: int, product_ids, *, stock_source=STOCK_SOURCE_CAFE, at: datetime | None = None):
    """
    Materialize and lock the current month of several products.

    Rows are locked in product id order so two orders touching the same
    products cannot deadlock each other.
    """
    at = at or utcnow()
    locked = {}
    for pid in sorted(set(product_ids)):
        locked[pid] = lock_month(theater_id, pid, at.year, at.month, stock_source=stock_source)
    return locked


def reflow(theater_id: int, product_id: int, year: int, month: int, *, stock_source=STOCK_SOURCE_CAFE) -> int:
    """
    Re-derive opening and cached closing of every month after (year, month).

    Needed after a back-dated append. Returns the number of months touched.
    """
    anchor = _get_month(theater_id, product_id, stock_source, year, month)
    carry = closing_of(anchor) if anchor is not None else _opening_for(
        theater_id, product_id, stock_source, year, month
    )
    touched = 0
    for later in _months_after(theater_id, product_id, stock_source, year, month):
        closing = fold(carry, month_entries(later))
        if units.to_decimal(later.opening_balance) != carry or units.to_decimal(later.closing_balance) != closing:
            later.opening_balance = carry
            later.closing_balance = closing
            touched += 1
        carry = closing
    if touched:
        db.session.flush()
    return touched


def _validate_event(event: StockEvent, stock_source: str) -> None:
    if event.kind not in ENTRY_KINDS:
        raise LedgerError(f"unknown stock entry kind: {event.kind!r}")
    if event.kind == KIND_TRANSFER and stock_source != STOCK_SOURCE_THEATER:
        raise LedgerError("transfer entries are recorded on theater stock only")
    quantity = units.to_decimal(event.quantity)
    if quantity < 0:
        raise LedgerError("quantity must be non-negative; the kind decides the sign")


def append_event(
    theater_id: int,
    product_id: int,
    event: StockEvent,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
    stock_month: StockMonth | None = None,
) -> Decimal:
    """
    Append one entry and return the product's balance after it.

    event.unit must be the month's stock unit or convertible to it;
    otherwise UnitError. The row is normalized and stored with both the
    entered quantity/unit and the stock-unit quantity.
    """
    _check_source(stock_source)
    _validate_event(event, stock_source)
    sign = sign_for(event.kind, event.direction)

    entry_date = event.entry_date or utcnow()
    if stock_month is None or (stock_month.year, stock_month.month) != (entry_date.year, entry_date.month):
        stock_month = lock_month(
            theater_id, product_id, entry_date.year, entry_date.month, stock_source=stock_source
        )

    if event.kind == KIND_OPENING and month_entries(stock_month):
        raise LedgerError("opening entries are only allowed on an empty month")

    unit = units.canonical_unit(event.unit or stock_month.stock_unit)
    quantity = units.to_decimal(event.quantity)
    normalized = units.normalize(quantity, unit, stock_month.stock_unit)

    entry = StockEntry(
        stock_month_id=stock_month.id,
        theater_id=theater_id,
        product_id=product_id,
        entry_date=entry_date,
        sequence=stock_month.next_sequence,
        kind=event.kind,
        sign=sign,
        quantity=quantity,
        unit=unit,
        normalized_quantity=normalized,
        note=event.note,
        order_id=event.order_id,
        item_index=event.item_index,
        created_by_user_id=event.created_by_user_id,
    )
    stock_month.next_sequence = stock_month.next_sequence + 1
    try:
        with db.session.begin_nested():
            db.session.add(entry)
    except IntegrityError:
        raise LedgerError(
            f"order {event.order_id} line {event.item_index} already has a {event.kind} entry "
            f"for product {product_id}"
        )

    stock_month.closing_balance = closing_of(stock_month)
    db.session.flush()
    reflow(theater_id, product_id, stock_month.year, stock_month.month, stock_source=stock_source)
    return current_balance(theater_id, product_id, stock_source=stock_source)


def get_balance(
    theater_id: int,
    product_id: int,
    as_of: datetime | None = None,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> Balance:
    """
    Balance of one product as of a moment (default now).

    Reads never materialize a month; an untouched month derives its opening
    from the latest earlier month.
    """
    _check_source(stock_source)
    as_of = as_of or utcnow()
    stock_month = _get_month(theater_id, product_id, stock_source, as_of.year, as_of.month)
    if stock_month is not None:
        entries = month_entries(stock_month, until=as_of)
        opening = units.to_decimal(stock_month.opening_balance)
        stock_unit = stock_month.stock_unit
    else:
        previous = _latest_month_before(theater_id, product_id, stock_source, as_of.year, as_of.month)
        entries = []
        if previous is not None:
            opening = closing_of(previous)
            stock_unit = previous.stock_unit
        else:
            opening = Decimal(0)
            stock_unit = units.canonical_unit(_product(product_id).stock_unit)
    return Balance(
        theater_id=theater_id,
        product_id=product_id,
        stock_source=stock_source,
        year=as_of.year,
        month=as_of.month,
        stock_unit=stock_unit,
        balance=fold(opening, entries),
        opening_this_month=opening,
        entries_this_month=entries,
    )


def current_balance(theater_id: int, product_id: int, *, stock_source: str = STOCK_SOURCE_CAFE) -> Decimal:
    return get_balance(theater_id, product_id, stock_source=stock_source).balance


def current_balances(theater_id: int, product_ids, *, stock_source: str = STOCK_SOURCE_CAFE) -> dict[int, Decimal]:
    return {
        pid: current_balance(theater_id, pid, stock_source=stock_source)
        for pid in sorted(set(product_ids))
    }


def balance_before(theater_id: int, product_id: int, moment: datetime, *, stock_source=STOCK_SOURCE_CAFE) -> Decimal:
    """Balance strictly before `moment` (entries dated at `moment` excluded)."""
    stock_month = _get_month(theater_id, product_id, stock_source, moment.year, moment.month)
    if stock_month is None:
        return _opening_for(theater_id, product_id, stock_source, moment.year, moment.month)
    entries = [e for e in month_entries(stock_month) if e.entry_date < moment]
    return fold(stock_month.opening_balance, entries)


def entries_between(
    theater_id: int,
    product_ids,
    start: datetime,
    end: datetime,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> list[StockEntry]:
    """Entries in [start, end) across months, in ledger order."""
    query = db.session.query(StockEntry).join(StockMonth).filter(
        StockEntry.theater_id == theater_id,
        StockMonth.stock_source == stock_source,
        StockEntry.entry_date >= start,
        StockEntry.entry_date < end,
    )
    if product_ids is not None:
        query = query.filter(StockEntry.product_id.in_(list(product_ids)))
    return query.order_by(
        StockEntry.product_id.asc(),
        StockEntry.entry_date.asc(),
        StockMonth.year.asc(),
        StockMonth.month.asc(),
        StockEntry.sequence.asc(),
    ).all()


def range_summary(
    theater_id: int,
    product_id: int,
    start: datetime,
    end: datetime,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> dict:
    """
    Fold a date range that may span months: opening at start, totals per
    kind (in stock unit, unsigned) and closing at end. Adjustments are split
    into adjustment_in and adjustment_out.
    """
    opening = balance_before(theater_id, product_id, start, stock_source=stock_source)
    entries = entries_between(theater_id, [product_id], start, end, stock_source=stock_source)
    totals = {key: Decimal(0) for key in SUMMARY_KEYS}
    for entry in entries:
        totals[summary_key(entry)] += units.to_decimal(entry.normalized_quantity)
    return {
        "opening": opening,
        "totals": totals,
        "closing": fold(opening, entries),
    }


def snapshot(
    theater_id: int,
    product_id: int,
    year: int,
    month: int,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
) -> dict:
    """StockMonth view for one product/month, derived if not materialized."""
    _check_source(stock_source)
    stock_month = _get_month(theater_id, product_id, stock_source, year, month)
    if stock_month is not None:
        entries = month_entries(stock_month)
        opening = units.to_decimal(stock_month.opening_balance)
        stock_unit = stock_month.stock_unit
    else:
        entries = []
        opening = _opening_for(theater_id, product_id, stock_source, year, month)
        previous = _latest_month_before(theater_id, product_id, stock_source, year, month)
        stock_unit = previous.stock_unit if previous else units.canonical_unit(_product(product_id).stock_unit)
    closing = fold(opening, entries)
    start, end = month_bounds(year, month)
    return {
        "theater_id": theater_id,
        "product_id": product_id,
        "stock_source": stock_source,
        "year": year,
        "month": month,
        "period": {"start": start.date().isoformat(), "end": end.date().isoformat()},
        "materialized": stock_month is not None,
        "stockUnit": stock_unit,
        "openingBalance": units.format_quantity(opening),
        "closingBalance": units.format_quantity(closing),
        "entries": [e.to_dict() for e in entries],
    }



def transfer_to_cafe(
    theater_id: int,
    product_id: int,
    quantity,
    *,
    unit: str | None = None,
    note: str | None = None,
    created_by_user_id: int | None = None,
) -> dict:
    """Move stock from the theater back-store ledger into the cafe ledger."""
    moment = utcnow()
    theater_balance = append_event(
        theater_id,
        product_id,
        StockEvent(
            kind=KIND_TRANSFER,
            quantity=quantity,
            unit=unit,
            entry_date=moment,
            note=note,
            created_by_user_id=created_by_user_id,
        ),
        stock_source=STOCK_SOURCE_THEATER,
    )
    cafe_balance = append_event(
        theater_id,
        product_id,
        StockEvent(
            kind=KIND_INVORD,
            quantity=quantity,
            unit=unit,
            entry_date=moment,
            note=note or "transfer from theater stock",
            created_by_user_id=created_by_user_id,
        ),
        stock_source=STOCK_SOURCE_CAFE,
    )
    return {STOCK_SOURCE_THEATER: theater_balance, STOCK_SOURCE_CAFE: cafe_balance}
