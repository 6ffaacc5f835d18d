from __future__ import annotations
from datetime import datetime
from decimal import Decimal, InvalidOperation

from dataclasses import dataclass
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeMeta

from . import units
from .errors import UnitError, ValidationFailed
from .models.orders import ORDER_SOURCES
from .pricing import money, normalize_gst_type
from .time_utils import parse_iso_datetime


# Maximum price per unit: 99,99,999.99 INR
MAX_PRICE = Decimal("9999999.99")
MAX_LINE_QUANTITY = 10_000
MAX_LINES = 200


@dataclass(frozen=True)
class ModelValidationPolicy:
    """
    Central policy layer:
    - writable_fields: what clients are allowed to set (security boundary)
    - required_on_create: fields required for POST
    """
    writable_fields: set[str]
    required_on_create: set[str] = None  # type: ignore


def _columns_by_key(model: DeclarativeMeta) -> dict[str, Any]:
    mapper = model.__mapper__
    return {c.key: c for c in mapper.columns}


def _coerce_value(col, value: Any):
    coltype = col.type

    if value is None:
        return None

    # Integers - strict validation to reject floats and scientific notation
    if isinstance(coltype, Integer):
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped or "e" in stripped.lower() or "." in stripped:
                raise ValidationFailed(f"{col.key} must be a plain integer")
            try:
                return int(stripped)
            except ValueError:
                raise ValidationFailed(f"{col.key} must be an integer")
        raise ValidationFailed(f"{col.key} must be an integer")

    # Decimals (prices, rates, noQty) - accept numbers and numeric strings
    if isinstance(coltype, Numeric):
        if isinstance(value, bool):
            raise ValidationFailed(f"{col.key} must be a number")
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValidationFailed(f"{col.key} must be a number")
        if not result.is_finite():
            raise ValidationFailed(f"{col.key} must be a finite number")
        return result

    if isinstance(coltype, Boolean):
        if isinstance(value, bool):
            return value
        return bool(value)

    if isinstance(coltype, DateTime):
        if isinstance(value, datetime):
            return value
        if isinstance(value, str):
            try:
                dt = parse_iso_datetime(value)
            except ValueError:
                raise ValidationFailed(f"{col.key} must be an ISO-8601 datetime")
            if dt is None:
                raise ValidationFailed(f"{col.key} must be an ISO-8601 datetime")
            return dt
        raise ValidationFailed(f"{col.key} must be a datetime")

    if isinstance(coltype, JSON):
        if not isinstance(value, (list, dict)):
            raise ValidationFailed(f"{col.key} must be a list or object")
        return value

    if isinstance(coltype, (String, Text)):
        return str(value).strip()

    return value


def validate_payload(
    *,
    model: DeclarativeMeta,
    payload: dict,
    policy: ModelValidationPolicy,
    partial: bool,
) -> dict:
    """
    Validates + normalizes incoming JSON against:
    - SQLAlchemy column metadata (nullable, type, String length)
    - a policy allowlist (writable_fields)
    - required_on_create (if partial=False)
    Returns a cleaned patch dict with only writable fields.
    """
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid JSON payload")

    required = policy.required_on_create or set()
    if not partial:
        missing = [f for f in required if f not in payload]
        if missing:
            raise ValidationFailed(f"Missing required fields: {', '.join(sorted(missing))}")

    cols = _columns_by_key(model)

    for k in payload.keys():
        if k not in policy.writable_fields:
            raise ValidationFailed(f"Field not allowed: {k}")
        if k not in cols:
            raise ValidationFailed(f"Unknown field: {k}")

    patch: dict = {}

    for k, raw in payload.items():
        col = cols[k]

        if raw is None:
            if not col.nullable:
                raise ValidationFailed(f"{k} cannot be null")
            patch[k] = None
            continue

        val = _coerce_value(col, raw)

        if isinstance(col.type, (String, Text)) and not col.nullable:
            if isinstance(val, str) and val == "":
                raise ValidationFailed(f"{k} cannot be blank")

        if isinstance(col.type, String) and col.type.length and isinstance(val, str):
            if len(val) > col.type.length:
                raise ValidationFailed(f"{k} exceeds max length {col.type.length}")

        patch[k] = val

    return patch


PRODUCT_POLICY = ModelValidationPolicy(
    writable_fields={
        "name",
        "description",
        "sku",
        "category_id",
        "kiosk_type_id",
        "stock_unit",
        "pack_quantity",
        "no_qty",
        "base_price",
        "sale_price",
        "discount_percent",
        "tax_rate",
        "gst_type",
        "is_veg",
        "dietary_tags",
        "image_url",
        "images",
        "is_active",
        "is_available",
        "version_id",
    },
)

# camelCase keys used by the front-ends -> column names
PRODUCT_FIELD_ALIASES = {
    "categoryId": "category_id",
    "kioskTypeId": "kiosk_type_id",
    "stockUnit": "stock_unit",
    "packQuantity": "pack_quantity",
    "noQty": "no_qty",
    "basePrice": "base_price",
    "salePrice": "sale_price",
    "discountPercentage": "discount_percent",
    "taxRate": "tax_rate",
    "gstType": "gst_type",
    "isVeg": "is_veg",
    "dietaryTags": "dietary_tags",
    "imageUrl": "image_url",
    "isActive": "is_active",
    "isAvailable": "is_available",
    "versionId": "version_id",
}


def product_patch_from_request(payload: dict) -> dict:
    """Flatten the `pricing` block and map camelCase keys onto columns."""
    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid JSON payload")
    flat = {k: v for k, v in payload.items() if k != "pricing"}
    pricing = payload.get("pricing")
    if pricing is not None:
        if not isinstance(pricing, dict):
            raise ValidationFailed("pricing must be an object")
        flat.update(pricing)
    return {PRODUCT_FIELD_ALIASES.get(k, k): v for k, v in flat.items()}


def enforce_rules_product(patch: dict) -> None:
    """
    Business rules that are not captured by SQLAlchemy metadata alone.
    Normalizes stock_unit and gst_type in place.
    """
    for key in ("base_price", "sale_price"):
        if patch.get(key) is not None:
            price = money(patch[key])
            if price < 0:
                raise ValidationFailed(f"{key} must be >= 0")
            if price > MAX_PRICE:
                raise ValidationFailed(f"{key} cannot exceed {MAX_PRICE}")
            patch[key] = price

    for key in ("discount_percent", "tax_rate"):
        if key in patch:
            if patch[key] is None:
                raise ValidationFailed(f"{key} cannot be null")
            if patch[key] < 0 or patch[key] > 100:
                raise ValidationFailed(f"{key} must be between 0 and 100")

    if "no_qty" in patch and patch["no_qty"] <= 0:
        raise ValidationFailed("no_qty must be > 0")

    if "stock_unit" in patch:
        try:
            patch["stock_unit"] = units.canonical_unit(patch["stock_unit"])
        except UnitError as exc:
            raise ValidationFailed(str(exc), {"field": "stock_unit"})

    if "gst_type" in patch:
        try:
            patch["gst_type"] = normalize_gst_type(patch["gst_type"])
        except ValueError as exc:
            raise ValidationFailed(str(exc), {"field": "gst_type"})

    if patch.get("pack_quantity"):
        if units.parse_pack(patch["pack_quantity"]) is None:
            raise ValidationFailed(
                f"pack_quantity {patch['pack_quantity']!r} is not a quantity with a known unit",
                {"field": "pack_quantity"},
            )


# --- Order submissions ---------------------------------------------------

@dataclass(frozen=True)
class OrderLineInput:
    quantity: int
    product_id: int | None = None
    combo_id: int | None = None


@dataclass(frozen=True)
class OrderSubmission:
    theater_id: int
    fingerprint: str
    source: str
    customer_label: str
    payment_method: str
    items: tuple[OrderLineInput, ...]
    client_total: Decimal | None = None
    cart_discount: Decimal = Decimal("0.00")
    notes: str | None = None
    offline_queued: bool = False
    client_created_at: datetime | None = None


def _as_int(value, name: str, *, minimum: int | None = None) -> int:
    if isinstance(value, bool) or value is None:
        raise ValidationFailed(f"{name} must be an integer")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValidationFailed(f"{name} must be an integer")
        value = int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped.lstrip("-").isdigit():
            raise ValidationFailed(f"{name} must be an integer")
        value = int(stripped)
    if not isinstance(value, int):
        raise ValidationFailed(f"{name} must be an integer")
    if minimum is not None and value < minimum:
        raise ValidationFailed(f"{name} must be >= {minimum}")
    return value


def _parse_line(index: int, raw) -> OrderLineInput:
    if not isinstance(raw, dict):
        raise ValidationFailed(f"items[{index}] must be an object", {"itemIndex": index})
    product_id = raw.get("productId", raw.get("product_id"))
    combo_id = raw.get("comboId", raw.get("combo_id"))
    if (product_id is None) == (combo_id is None):
        raise ValidationFailed(
            f"items[{index}] needs exactly one of productId or comboId",
            {"itemIndex": index},
        )
    try:
        quantity = _as_int(raw.get("quantity"), f"items[{index}].quantity", minimum=1)
    except ValidationFailed as exc:
        raise ValidationFailed(exc.message, {"itemIndex": index})
    if quantity > MAX_LINE_QUANTITY:
        raise ValidationFailed(f"items[{index}].quantity is too large", {"itemIndex": index})
    return OrderLineInput(
        quantity=quantity,
        product_id=_as_int(product_id, f"items[{index}].productId") if product_id is not None else None,
        combo_id=_as_int(combo_id, f"items[{index}].comboId") if combo_id is not None else None,
    )


def parse_order_submission(payload: dict, *, default_source: str | None = None) -> OrderSubmission:
    """
    Validate the shape of an order body. Catalog and stock rules are
    checked by the order service.
    """
    if not isinstance(payload, dict):
        raise ValidationFailed("Invalid JSON payload")

    theater_id = _as_int(payload.get("theaterId", payload.get("theater_id")), "theaterId")

    fingerprint = payload.get("fingerprint")
    if not isinstance(fingerprint, str) or not fingerprint.strip():
        raise ValidationFailed("fingerprint is required")
    fingerprint = fingerprint.strip()
    if len(fingerprint) > 128:
        raise ValidationFailed("fingerprint exceeds max length 128")

    source = payload.get("source") or default_source
    if source not in ORDER_SOURCES:
        raise ValidationFailed(f"source must be one of {', '.join(ORDER_SOURCES)}")

    customer_label = payload.get("customerName", payload.get("customer_label"))
    if customer_label is None:
        customer_label = source
    if not isinstance(customer_label, str) or not customer_label.strip():
        raise ValidationFailed("customer name is required")
    customer_label = customer_label.strip()[:120]

    payment_method = str(payload.get("paymentMethod") or "cash").strip().lower()

    raw_items = payload.get("items")
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationFailed("order must contain at least one item")
    if len(raw_items) > MAX_LINES:
        raise ValidationFailed(f"order cannot contain more than {MAX_LINES} lines")
    items = tuple(_parse_line(i, raw) for i, raw in enumerate(raw_items))

    client_total = None
    totals = payload.get("totals") or {}
    raw_total = payload.get("clientTotal", totals.get("grandTotal") if isinstance(totals, dict) else None)
    if raw_total is not None:
        try:
            client_total = money(raw_total)
        except ValueError:
            raise ValidationFailed("clientTotal must be a number")

    raw_discount = payload.get("cartDiscount", 0)
    try:
        cart_discount = money(raw_discount or 0)
    except ValueError:
        raise ValidationFailed("cartDiscount must be a number")
    if cart_discount < 0:
        raise ValidationFailed("cartDiscount must be >= 0")

    notes = payload.get("notes")
    if notes is not None and not isinstance(notes, str):
        raise ValidationFailed("notes must be a string")

    created_raw = payload.get("clientCreatedAt")
    client_created_at = None
    if created_raw:
        try:
            client_created_at = parse_iso_datetime(str(created_raw))
        except ValueError:
            raise ValidationFailed("clientCreatedAt must be an ISO-8601 datetime")

    return OrderSubmission(
        theater_id=theater_id,
        fingerprint=fingerprint,
        source=source,
        customer_label=customer_label,
        payment_method=payment_method,
        items=items,
        client_total=client_total,
        cart_discount=cart_discount,
        notes=notes,
        offline_queued=bool(payload.get("offlineQueued", False)),
        client_created_at=client_created_at,
    )
