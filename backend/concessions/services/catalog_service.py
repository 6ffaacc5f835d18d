# Overview: Catalog reads for order placement and listings; resolves balance and image once.

from __future__ import annotations

from decimal import Decimal

from sqlalchemy import func

from .. import units
from ..consumption import ComboComponentSpec, ComboSpec, ProductSpec, per_unit_consumption
from ..errors import ConflictError, LedgerError, NotFound, UnitError, ValidationFailed
from ..extensions import db
from ..models import Category, ComboOffer, KioskType, Product, StockEntry
from ..models.stock import STOCK_SOURCE_CAFE, STOCK_SOURCES
from ..validation import (
    PRODUCT_POLICY,
    enforce_rules_product,
    product_patch_from_request,
    validate_payload,
)
from . import stock_ledger_service


STATUS_FILTERS = ("active", "inactive", "available", "unavailable", "orderable")
STOCK_FILTERS = ("in", "out")


def product_spec(product: Product) -> ProductSpec:
    return ProductSpec(
        product_id=product.id,
        stock_unit=units.canonical_unit(product.stock_unit),
        pack=product.pack_quantity,
        no_qty=units.to_decimal(product.no_qty if product.no_qty is not None else 1),
        orderable=product.orderable,
        name=product.name,
    )


def combo_spec(combo: ComboOffer) -> ComboSpec:
    """
    Build the calculator's view of a combo.

    Raises ValidationFailed when a component cannot be resolved.
    """
    components = []
    for component in combo.components:
        product = component.product
        if product is None or product.theater_id != combo.theater_id:
            raise ValidationFailed(
                f"combo {combo.id} references unknown product {component.product_id}",
                {"comboId": combo.id, "productId": component.product_id},
            )
        components.append(
            ComboComponentSpec(product=product_spec(product), per_combo_quantity=component.per_combo_quantity)
        )
    if not components:
        raise ValidationFailed(f"combo {combo.id} has no components", {"comboId": combo.id})
    return ComboSpec(combo_id=combo.id, components=tuple(components), name=combo.name)


def combo_orderable(combo: ComboOffer) -> bool:
    if not combo.is_active or not combo.components:
        return False
    return all(c.product is not None and c.product.orderable for c in combo.components)


def resolve_balance(product: Product, balances: dict[int, Decimal]) -> Decimal:
    """
    The one place a listing decides a product's balance.

    `balances` comes from the ledger; a product missing from it is a bug in
    the caller, not a zero balance.
    """
    try:
        return balances[product.id]
    except KeyError:
        raise LedgerError(f"no ledger balance resolved for product {product.id}")


def resolve_image(product: Product) -> str | None:
    for image in product.images or []:
        if isinstance(image, str) and image.strip():
            return image.strip()
        if isinstance(image, dict):
            url = image.get("url") or image.get("imageUrl")
            if url:
                return url
    return product.image_url or None


def get_product(theater_id: int, product_id: int) -> Product:
    product = db.session.get(Product, product_id)
    if product is None or product.theater_id != theater_id:
        raise NotFound(f"Product {product_id} not found", {"productId": product_id})
    return product


def product_listing_row(product: Product, balance: Decimal, lookups: dict) -> dict:
    spec = product_spec(product)
    try:
        per_unit = per_unit_consumption(spec)
    except UnitError:
        per_unit = None
    category = lookups["categories"].get(product.category_id)
    kiosk_type = lookups["kiosk_types"].get(product.kiosk_type_id)
    row = product.to_dict()
    row.update(
        {
            "category": category.name if category else None,
            "kiosk_type": kiosk_type.name if kiosk_type else None,
            "image": resolve_image(product),
            "balance": units.format_quantity(balance),
            "perUnitConsumption": units.format_quantity(per_unit) if per_unit is not None else None,
            "outOfStock": per_unit is None or balance < per_unit,
        }
    )
    return row


def load_lookups(theater_id: int) -> dict:
    categories = db.session.query(Category).filter_by(theater_id=theater_id).all()
    kiosk_types = db.session.query(KioskType).filter_by(theater_id=theater_id).all()
    return {
        "categories": {c.id: c for c in categories},
        "kiosk_types": {k.id: k for k in kiosk_types},
    }


def list_products(
    theater_id: int,
    *,
    stock_source: str = STOCK_SOURCE_CAFE,
    page: int = 1,
    limit: int = 50,
    q: str | None = None,
    category: str | None = None,
    status: str | None = None,
    stock: str | None = None,
) -> dict:
    if stock_source not in STOCK_SOURCES:
        raise ValidationFailed(f"stockSource must be one of {', '.join(STOCK_SOURCES)}")
    if status and status not in STATUS_FILTERS:
        raise ValidationFailed(f"status must be one of {', '.join(STATUS_FILTERS)}")
    if stock and stock not in STOCK_FILTERS:
        raise ValidationFailed(f"stock must be one of {', '.join(STOCK_FILTERS)}")
    page = max(page, 1)
    limit = min(max(limit, 1), 500)

    query = db.session.query(Product).filter(Product.theater_id == theater_id)
    if q:
        query = query.filter(func.lower(Product.name).contains(q.strip().lower()))
    if category:
        if category.isdigit():
            query = query.filter(Product.category_id == int(category))
        else:
            query = query.join(Category, Category.id == Product.category_id).filter(
                func.lower(Category.name) == category.strip().lower()
            )
    if status == "active":
        query = query.filter(Product.is_active.is_(True))
    elif status == "inactive":
        query = query.filter(Product.is_active.is_(False))
    elif status == "available":
        query = query.filter(Product.is_available.is_(True))
    elif status == "unavailable":
        query = query.filter(Product.is_available.is_(False))
    elif status == "orderable":
        query = query.filter(Product.is_active.is_(True), Product.is_available.is_(True))

    products = query.order_by(Product.name.asc(), Product.id.asc()).all()
    balances = stock_ledger_service.current_balances(
        theater_id, [p.id for p in products], stock_source=stock_source
    )
    lookups = load_lookups(theater_id)
    rows = [product_listing_row(p, resolve_balance(p, balances), lookups) for p in products]
    if stock == "in":
        rows = [r for r in rows if not r["outOfStock"]]
    elif stock == "out":
        rows = [r for r in rows if r["outOfStock"]]

    total = len(rows)
    start = (page - 1) * limit
    return {
        "products": rows[start:start + limit],
        "stockSource": stock_source,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def list_categories(theater_id: int) -> list[dict]:
    rows = (
        db.session.query(Category)
        .filter_by(theater_id=theater_id, is_active=True)
        .order_by(Category.sort_order.asc(), Category.name.asc())
        .all()
    )
    return [c.to_dict() for c in rows]


def list_kiosk_types(theater_id: int) -> list[dict]:
    rows = (
        db.session.query(KioskType)
        .filter_by(theater_id=theater_id, is_active=True)
        .order_by(KioskType.sort_order.asc(), KioskType.name.asc())
        .all()
    )
    return [k.to_dict() for k in rows]


def list_combos(theater_id: int) -> list[dict]:
    combos = (
        db.session.query(ComboOffer)
        .filter_by(theater_id=theater_id)
        .order_by(ComboOffer.sort_order.asc(), ComboOffer.name.asc())
        .all()
    )
    rows = []
    for combo in combos:
        row = combo.to_dict()
        row["orderable"] = combo_orderable(combo)
        rows.append(row)
    return rows


def update_product(theater_id: int, product_id: int, payload: dict) -> Product:
    """
    Admin edit of one product. Caller commits.

    A client-supplied version_id must match the stored one. The stock unit
    is frozen once the product has ledger entries.
    """
    product = get_product(theater_id, product_id)
    patch = validate_payload(
        model=Product,
        payload=product_patch_from_request(payload),
        policy=PRODUCT_POLICY,
        partial=True,
    )
    enforce_rules_product(patch)

    expected_version = patch.pop("version_id", None)
    if expected_version is not None and expected_version != product.version_id:
        raise ConflictError(
            "Product was modified by someone else",
            {"productId": product_id, "versionId": product.version_id},
        )

    if "stock_unit" in patch and patch["stock_unit"] != product.stock_unit:
        has_entries = (
            db.session.query(StockEntry.id).filter(StockEntry.product_id == product.id).first()
            is not None
        )
        if has_entries:
            raise ValidationFailed(
                "stock unit cannot change once the product has stock entries",
                {"productId": product_id, "field": "stock_unit"},
            )

    for key in ("category_id", "kiosk_type_id"):
        ref_id = patch.get(key)
        if ref_id is None:
            continue
        model = Category if key == "category_id" else KioskType
        ref = db.session.get(model, ref_id)
        if ref is None or ref.theater_id != theater_id:
            raise ValidationFailed(f"{key} {ref_id} not found", {"field": key})

    for key, value in patch.items():
        setattr(product, key, value)
    db.session.flush()
    return product
