from __future__ import annotations

from decimal import Decimal

from ..extensions import db
from ..time_utils import to_utc_z
from ..units import format_quantity


STOCK_SOURCE_CAFE = "cafe"
STOCK_SOURCE_THEATER = "theater"
STOCK_SOURCES = (STOCK_SOURCE_CAFE, STOCK_SOURCE_THEATER)

KIND_OPENING = "opening"
KIND_INVORD = "invord"
KIND_DIRECT = "direct"
KIND_SALES = "sales"
KIND_ADDON = "addon"
KIND_ADJUSTMENT = "adjustment"
KIND_CANCEL = "cancel"
KIND_EXPIRED = "expired"
KIND_DAMAGE = "damage"
KIND_TRANSFER = "transfer"

ENTRY_KINDS = (
    KIND_OPENING,
    KIND_INVORD,
    KIND_DIRECT,
    KIND_SALES,
    KIND_ADDON,
    KIND_ADJUSTMENT,
    KIND_CANCEL,
    KIND_EXPIRED,
    KIND_DAMAGE,
    KIND_TRANSFER,
)


class StockMonth(db.Model):
    """
    One product's stock ledger for one calendar month.

    KEY: (theater, product, stock_source, year, month)

    opening_balance is the previous month's closing (or an explicit
    `opening` entry on the first month). closing_balance is a read cache;
    the ledger fold over entries is the source of truth.
    """
    __tablename__ = "stock_months"
    __table_args__ = (
        db.UniqueConstraint(
            "theater_id", "product_id", "stock_source", "year", "month",
            name="uq_stock_months_key",
        ),
        db.Index("ix_stock_months_product_period", "product_id", "stock_source", "year", "month"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    stock_source = db.Column(db.String(16), nullable=False, default=STOCK_SOURCE_CAFE)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)

    stock_unit = db.Column(db.String(8), nullable=False)
    opening_balance = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    closing_balance = db.Column(db.Numeric(18, 6), nullable=False, default=0)
    next_sequence = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )
    version_id = db.Column(db.Integer, nullable=False, default=1)

    entries = db.relationship(
        "StockEntry",
        backref="stock_month",
        lazy=True,
        order_by="StockEntry.sequence",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self, include_entries: bool = True) -> dict:
        data = {
            "id": self.id,
            "theater_id": self.theater_id,
            "product_id": self.product_id,
            "stock_source": self.stock_source,
            "year": self.year,
            "month": self.month,
            "stock_unit": self.stock_unit,
            "opening_balance": format_quantity(self.opening_balance),
            "closing_balance": format_quantity(self.closing_balance),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_entries:
            data["entries"] = [
                e.to_dict() for e in sorted(self.entries, key=lambda e: (e.entry_date, e.sequence))
            ]
        return data


class StockEntry(db.Model):
    """
    Append-only stock event.

    quantity is always non-negative and recorded in the unit it was entered
    in; normalized_quantity is the same amount in the month's stock unit.
    The kind decides the sign, frozen on the row in `sign`.

    UNIQUE (order_id, item_index, product_id, kind): an order line can be
    applied to a product's ledger at most once per kind.
    """
    __tablename__ = "stock_entries"
    __table_args__ = (
        db.UniqueConstraint(
            "order_id", "item_index", "product_id", "kind",
            name="uq_stock_entries_order_line_kind",
        ),
        db.Index("ix_stock_entries_month_order", "stock_month_id", "entry_date", "sequence"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    stock_month_id = db.Column(db.Integer, db.ForeignKey("stock_months.id"), nullable=False, index=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    entry_date = db.Column(db.DateTime(timezone=True), nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    kind = db.Column(db.String(16), nullable=False, index=True)
    sign = db.Column(db.Integer, nullable=False)

    quantity = db.Column(db.Numeric(18, 6), nullable=False)
    unit = db.Column(db.String(8), nullable=False)
    normalized_quantity = db.Column(db.Numeric(18, 6), nullable=False)

    note = db.Column(db.String(255), nullable=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    item_index = db.Column(db.Integer, nullable=True)
    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    @property
    def signed_quantity(self) -> Decimal:
        return Decimal(self.normalized_quantity) * self.sign

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "date": to_utc_z(self.entry_date),
            "sequence": self.sequence,
            "kind": self.kind,
            "sign": self.sign,
            "quantity": format_quantity(self.quantity),
            "unit": self.unit,
            "normalized_quantity": format_quantity(self.normalized_quantity),
            "note": self.note,
            "order_id": self.order_id,
            "item_index": self.item_index,
        }
