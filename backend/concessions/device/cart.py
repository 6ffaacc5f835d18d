# Overview: Device carts and the stock reservation view behind the quantity selector.

"""
Carts and stock reservation view.

available(p) = server_balance(p) - sum of consumption of p over the cart

Combo lines expand into their components, so a combo and a loose product
sharing a component draw from the same balance. The view only ever
over-restricts: an unknown balance counts as zero and a line whose
consumption cannot be computed blocks its products.

Balances arrive from the product listing (refresh) and from stock.delta
broadcasts. Each write carries the broadcast event id it reflects (the
listing carries latestEventId) and the higher id wins. A delta never
replaces a listing read at the same id, since that listing was read
after the event committed.

Cart lines keep a snapshot of the product or combo as it was listed when
added, so a line can still be rendered and explained after a refresh
drops it from the catalog.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from decimal import Decimal

from .. import pricing, units
from ..consumption import ComboComponentSpec, ComboSpec, ProductSpec, line_consumption, per_unit_consumption
from ..errors import UnitError
from .storage import LocalStore, kiosk_cart_key, offline_pos_cart_key, online_pos_cart_key


logger = logging.getLogger(__name__)

SOURCE_OFFLINE_POS = "offline-pos"
SOURCE_ONLINE_POS = "online-pos"
SOURCE_KIOSK = "kiosk"

CART_KEYS = {
    SOURCE_OFFLINE_POS: offline_pos_cart_key,
    SOURCE_ONLINE_POS: online_pos_cart_key,
    SOURCE_KIOSK: kiosk_cart_key,
}


@dataclass
class CartLine:
    quantity: int
    product_id: int | None = None
    combo_id: int | None = None
    error: str | None = None
    snapshot: dict | None = None

    @property
    def key(self) -> tuple[str, int]:
        if self.combo_id is not None:
            return ("combo", self.combo_id)
        return ("product", self.product_id)

    def to_dict(self) -> dict:
        return asdict(self)

    def to_item(self) -> dict:
        if self.combo_id is not None:
            return {"comboId": self.combo_id, "quantity": self.quantity}
        return {"productId": self.product_id, "quantity": self.quantity}


class CartStore:
    """Persistent cart for one (theater, source); only the tab bound to that source writes it."""

    def __init__(self, store: LocalStore, theater_id, source: str):
        if source not in CART_KEYS:
            raise ValueError(f"unknown order source: {source!r}")
        self.store = store
        self.theater_id = theater_id
        self.source = source
        self.key = CART_KEYS[source](theater_id)

    def lines(self) -> list[CartLine]:
        return [CartLine(**raw) for raw in self.store.get(self.key, [])]

    def save(self, lines: list[CartLine]) -> None:
        self.store.set(self.key, [line.to_dict() for line in lines if line.quantity > 0])

    def clear(self) -> None:
        self.store.delete(self.key)

    def set_quantity(
        self,
        quantity: int,
        *,
        product_id: int | None = None,
        combo_id: int | None = None,
        snapshot: dict | None = None,
    ) -> list[CartLine]:
        target = CartLine(quantity=quantity, product_id=product_id, combo_id=combo_id, snapshot=snapshot)
        lines = self.lines()
        for line in lines:
            if line.key == target.key:
                line.quantity = quantity
                line.error = None
                if snapshot is not None:
                    line.snapshot = snapshot
                break
        else:
            lines.append(target)
        self.save(lines)
        return [line for line in lines if line.quantity > 0]


@dataclass
class _Balance:
    value: Decimal
    version: int


@dataclass
class StockReservationView:
    products: dict[int, ProductSpec] = field(default_factory=dict)
    product_rows: dict[int, dict] = field(default_factory=dict)
    combos: dict[int, ComboSpec] = field(default_factory=dict)
    combo_rows: dict[int, dict] = field(default_factory=dict)
    balances: dict[int, _Balance] = field(default_factory=dict)
    fetched_at: float | None = None
    refresh_interval: float = 15.0

    # ---------------------------------------------------------------- loading

    @staticmethod
    def _product_spec(row: dict) -> ProductSpec:
        return ProductSpec(
            product_id=int(row["id"]),
            stock_unit=units.canonical_unit(row.get("stock_unit") or units.NOS),
            pack=row.get("pack_quantity"),
            no_qty=units.to_decimal(row.get("no_qty") or 1),
            orderable=bool(row.get("orderable", True)),
            name=row.get("name") or "",
        )

    def load_catalog(self, product_rows: list[dict], combo_rows: list[dict], fetched_at: float, version: int = 0) -> None:
        """Replace the catalog and merge the listing's balances as of event id `version`."""
        self.products = {}
        self.product_rows = {}
        for row in product_rows:
            spec = self._product_spec(row)
            self.products[spec.product_id] = spec
            self.product_rows[spec.product_id] = row
            self.merge_balance(spec.product_id, row.get("balance"), version, listing=True)

        self.combos = {}
        self.combo_rows = {}
        for row in combo_rows:
            components = []
            for component in row.get("components") or []:
                spec = self.products.get(int(component["productId"]))
                if spec is None:
                    # Component not listed (inactive); the combo cannot be sold
                    components = []
                    break
                components.append(ComboComponentSpec(product=spec, per_combo_quantity=int(component["perComboQuantity"])))
            if not components:
                continue
            combo = ComboSpec(combo_id=int(row["id"]), components=tuple(components), name=row.get("name") or "")
            self.combos[combo.combo_id] = combo
            self.combo_rows[combo.combo_id] = row
        self.fetched_at = fetched_at

    @classmethod
    def from_listing(
        cls,
        product_rows: list[dict],
        combo_rows: list[dict],
        fetched_at: float,
        version: int = 0,
        **kwargs,
    ) -> "StockReservationView":
        view = cls(**kwargs)
        view.load_catalog(product_rows, combo_rows, fetched_at, version)
        return view

    def refresh(self, client, *, now: float | None = None) -> None:
        """Re-read products, balances and combos from the server."""
        stamp = now if now is not None else time.time()
        listing = client.get_products(stock_source="cafe")
        combos = client.get_combos()
        self.load_catalog(listing.get("products") or [], combos, stamp, int(listing.get("latestEventId") or 0))
        logger.debug("stock view refreshed: %d products, %d combos", len(self.products), len(self.combos))

    def needs_refresh(self, now: float | None = None) -> bool:
        now = now if now is not None else time.time()
        return self.fetched_at is None or now - self.fetched_at >= self.refresh_interval

    # ---------------------------------------------------------------- balances

    def merge_balance(self, product_id: int, balance, version: int, *, listing: bool = False) -> bool:
        """Keep the newer of the stored and incoming balance. Returns True when applied."""
        if balance is None:
            return False
        version = int(version)
        current = self.balances.get(product_id)
        if current is not None:
            if current.version > version or (current.version == version and not listing):
                return False
        self.balances[product_id] = _Balance(units.to_decimal(balance), version)
        return True

    def apply_stock_delta(self, data: dict, event_id: int) -> bool:
        """Apply the stock.delta broadcast with id `event_id` (cafe stock only)."""
        if data.get("stockSource", "cafe") != "cafe":
            return False
        try:
            product_id = int(data["productId"])
        except (KeyError, TypeError, ValueError):
            return False
        return self.merge_balance(product_id, data.get("newBalance"), event_id)

    def balance(self, product_id: int) -> Decimal:
        entry = self.balances.get(product_id)
        return entry.value if entry is not None else Decimal(0)

    # ---------------------------------------------------------------- consumption

    def _spec(self, line: CartLine):
        if line.combo_id is not None:
            return self.combos.get(line.combo_id)
        return self.products.get(line.product_id)

    def _line_needs(self, line: CartLine) -> dict[int, Decimal] | None:
        spec = self._spec(line)
        if spec is None:
            return None
        try:
            return line_consumption(spec, line.quantity)
        except UnitError:
            return None

    def _affected(self, line: CartLine) -> list[int]:
        if line.combo_id is not None:
            combo = self.combos.get(line.combo_id)
            return [c.product.product_id for c in combo.components] if combo else []
        return [line.product_id]

    def cart_consumption(self, lines: list[CartLine]) -> dict[int, Decimal] | None:
        """Total consumption per product, or None when some line cannot be computed."""
        totals: dict[int, Decimal] = {}
        for line in lines:
            needs = self._line_needs(line)
            if needs is None:
                return None
            for pid, amount in needs.items():
                totals[pid] = totals.get(pid, Decimal(0)) + amount
        return totals

    def available(self, product_id: int, lines: list[CartLine]) -> Decimal:
        used = Decimal(0)
        for line in lines:
            needs = self._line_needs(line)
            if needs is None:
                if product_id in self._affected(line):
                    return Decimal(0)
                continue
            used += needs.get(product_id, Decimal(0))
        return self.balance(product_id) - used

    def _fits(self, lines: list[CartLine]) -> bool:
        needs = self.cart_consumption(lines)
        if needs is None:
            return False
        return all(self.balance(pid) >= amount for pid, amount in needs.items())

    def _orderable(self, line: CartLine) -> bool:
        if line.combo_id is not None:
            combo = self.combos.get(line.combo_id)
            row = self.combo_rows.get(line.combo_id) or {}
            return combo is not None and bool(row.get("orderable", True)) and all(
                c.product.orderable for c in combo.components
            )
        spec = self.products.get(line.product_id)
        return spec is not None and spec.orderable

    def can_increment(self, lines: list[CartLine], *, product_id: int | None = None, combo_id: int | None = None) -> bool:
        """False when one more unit would drive any affected product below zero."""
        target = CartLine(quantity=1, product_id=product_id, combo_id=combo_id)
        if not self._orderable(target):
            return False
        trial = []
        found = False
        for line in lines:
            if line.key == target.key:
                trial.append(CartLine(quantity=line.quantity + 1, product_id=product_id, combo_id=combo_id))
                found = True
            else:
                trial.append(line)
        if not found:
            trial.append(target)
        return self._fits(trial)

    def out_of_stock(self, lines: list[CartLine], *, product_id: int | None = None, combo_id: int | None = None) -> bool:
        """True when the remaining stock cannot cover even one more unit."""
        if combo_id is not None:
            combo = self.combos.get(combo_id)
            if combo is None:
                return True
            try:
                needs = line_consumption(combo, 1)
            except UnitError:
                return True
            return any(self.available(pid, lines) < amount for pid, amount in needs.items())

        spec = self.products.get(product_id)
        if spec is None:
            return True
        try:
            per_unit = per_unit_consumption(spec)
        except UnitError:
            return True
        return self.available(product_id, lines) < per_unit

    # ---------------------------------------------------------------- cart maintenance

    def snapshot(self, *, product_id: int | None = None, combo_id: int | None = None) -> dict | None:
        """What a cart line keeps of the listed product or combo; None when not listed."""
        if combo_id is not None:
            row = self.combo_rows.get(combo_id)
            if row is None:
                return None
            return {
                "name": row.get("name") or "",
                "pricing": {
                    "offerPrice": row.get("offer_price"),
                    "taxRate": row.get("tax_rate"),
                    "gstType": row.get("gst_type"),
                    "discountPercent": row.get("discount_percent"),
                },
                "components": [dict(c) for c in row.get("components") or []],
            }
        row = self.product_rows.get(product_id)
        if row is None:
            return None
        return {
            "name": row.get("name") or "",
            "stockUnit": row.get("stock_unit"),
            "pack": row.get("pack_quantity"),
            "noQty": row.get("no_qty"),
            "pricing": dict(row.get("pricing") or {}),
        }

    def revalidate(self, lines: list[CartLine]) -> tuple[list[CartLine], list[dict]]:
        """
        Drop lines that are no longer orderable and clamp quantities to what
        stock allows, earlier lines first. Kept lines get a fresh snapshot;
        removed ones are named from the snapshot they were added with.
        Returns (lines, changes).
        """
        kept: list[CartLine] = []
        changes: list[dict] = []
        for line in lines:
            name = (line.snapshot or {}).get("name")
            if not self._orderable(line):
                change = {"line": line.key, "action": "removed", "reason": "not available"}
                if name:
                    change["name"] = name
                changes.append(change)
                continue
            quantity = line.quantity
            while quantity > 0 and not self._fits(kept + [CartLine(quantity, line.product_id, line.combo_id)]):
                quantity -= 1
            if quantity == 0:
                change = {"line": line.key, "action": "removed", "reason": "out of stock"}
                if name:
                    change["name"] = name
                changes.append(change)
                continue
            if quantity != line.quantity:
                changes.append({"line": line.key, "action": "clamped", "from": line.quantity, "to": quantity})
            snapshot = self.snapshot(product_id=line.product_id, combo_id=line.combo_id) or line.snapshot
            kept.append(CartLine(quantity, line.product_id, line.combo_id, line.error, snapshot))
        return kept, changes

    def annotate_rejection(self, lines: list[CartLine], error) -> list[CartLine]:
        """
        Mark the lines named by a server rejection so the cart can reopen
        with the offending items highlighted.
        """
        details = getattr(error, "details", None) or {}
        message = getattr(error, "message", None) or str(error)
        short_products = {}
        for row in details.get("products") or []:
            if isinstance(row, dict) and row.get("productId") is not None:
                short_products[int(row["productId"])] = row
        named = set(short_products)
        if details.get("productId") is not None:
            named.add(int(details["productId"]))
        for pid in details.get("productIds") or []:
            named.add(int(pid))
        item_index = details.get("itemIndex")
        combo_id = details.get("comboId")

        annotated = []
        for index, line in enumerate(lines):
            hit = (
                index == item_index
                or (combo_id is not None and line.combo_id == combo_id)
                or any(pid in named for pid in self._affected(line))
            )
            note = None
            if hit:
                note = message
                for pid in self._affected(line):
                    row = short_products.get(pid)
                    if row is not None:
                        note = f"{message}: {row.get('available')} {row.get('stockUnit') or ''} left".rstrip()
                        break
            annotated.append(CartLine(line.quantity, line.product_id, line.combo_id, note, line.snapshot))
        return annotated

    # ---------------------------------------------------------------- pricing

    def _price_args(self, line: CartLine) -> tuple:
        """(unit price, tax rate, gst type, discount) from the listing, else the line snapshot."""
        snapshot = line.snapshot or {}
        if line.combo_id is not None:
            row = self.combo_rows.get(line.combo_id)
            if row is not None:
                return (row["offer_price"], row.get("tax_rate"), row.get("gst_type"), row.get("discount_percent"))
            prices = snapshot.get("pricing") or {}
            return (prices.get("offerPrice"), prices.get("taxRate"), prices.get("gstType"), prices.get("discountPercent"))
        row = self.product_rows.get(line.product_id)
        prices = (row.get("pricing") if row is not None else snapshot.get("pricing")) or {}
        unit_price = prices.get("salePrice") or prices.get("basePrice")
        return (unit_price, prices.get("taxRate"), prices.get("gstType"), prices.get("discountPercentage"))

    def quote(self, lines: list[CartLine], cart_discount=0) -> pricing.OrderTotals:
        """Client-side totals; the server recomputes and compares."""
        priced = []
        for line in lines:
            unit_price, tax_rate, gst_type, discount = self._price_args(line)
            priced.append(
                pricing.price_line(
                    unit_price or 0,
                    line.quantity,
                    tax_rate=tax_rate or 0,
                    gst_type=gst_type or pricing.GST_EXCLUSIVE,
                    discount_percent=discount or 0,
                )
            )
        return pricing.order_totals(priced, cart_discount)


def build_order_payload(
    view: StockReservationView,
    lines: list[CartLine],
    *,
    theater_id: int,
    source: str,
    payment_method: str,
    customer_name: str | None = None,
    cart_discount=0,
    notes: str | None = None,
) -> dict:
    """The frozen submission body, client totals included."""
    totals = view.quote(lines, cart_discount)
    payload = {
        "theaterId": theater_id,
        "source": source,
        "paymentMethod": payment_method,
        "items": [line.to_item() for line in lines if line.quantity > 0],
        "clientTotal": str(totals.grand_total),
        "totals": totals.to_dict(),
        "cartDiscount": str(pricing.money(cart_discount or 0)),
    }
    if customer_name:
        payload["customerName"] = customer_name
    if notes:
        payload["notes"] = notes
    return payload
