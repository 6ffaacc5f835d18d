# backend/concessions/routes/products.py
"""Catalog API routes: products with resolved balances, categories, kiosk types, combos."""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import ensure_theater_access, require_auth, require_role
from ..errors import PipelineError
from ..extensions import db
from ..models.auth import ADMIN_ROLES
from ..models.stock import STOCK_SOURCE_CAFE
from ..services import broadcast_service, catalog_service, stock_ledger_service
from ..services.concurrency import run_with_retry


products_bp = Blueprint("products", __name__, url_prefix="/api")


@products_bp.get("/theater-products/<int:theater_id>")
@require_auth
def list_products_route(theater_id: int):
    """
    Query params: stockSource (cafe|theater), page, limit, q, category,
    status (active|inactive|available|unavailable|orderable), stock (in|out).

    latestEventId is read before the balances, so every stock.delta with a
    higher id is newer than the listed balance.
    """
    try:
        ensure_theater_access(theater_id)
        latest_event_id = broadcast_service.latest_event_id(theater_id)
        result = catalog_service.list_products(
            theater_id,
            stock_source=request.args.get("stockSource", STOCK_SOURCE_CAFE),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 50, type=int),
            q=request.args.get("q"),
            category=request.args.get("category"),
            status=request.args.get("status"),
            stock=request.args.get("stock"),
        )
        result["latestEventId"] = latest_event_id
        return jsonify(result), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list products")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.put("/theater-products/<int:theater_id>/<int:product_id>")
@require_auth
@require_role(*ADMIN_ROLES)
def update_product_route(theater_id: int, product_id: int):
    """
    Admin edit. Body fields follow the product shape (pricing block or flat
    fields); pass version_id to guard against concurrent edits.
    """
    try:
        ensure_theater_access(theater_id)
        data = request.get_json(silent=True) or {}

        def _op():
            product = catalog_service.update_product(theater_id, product_id, data)
            db.session.commit()
            return product

        product = run_with_retry(_op)
        balance = stock_ledger_service.current_balance(theater_id, product.id)
        row = catalog_service.product_listing_row(product, balance, catalog_service.load_lookups(theater_id))
        current_app.logger.info(
            "product updated: theater_id=%s product_id=%s user_id=%s",
            theater_id,
            product_id,
            g.current_user.id,
        )
        return jsonify({"product": row}), 200
    except PipelineError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update product")
        return jsonify({"error": "Internal server error"}), 500


@products_bp.get("/theater-categories/<int:theater_id>")
@require_auth
def list_categories_route(theater_id: int):
    ensure_theater_access(theater_id)
    return jsonify({"categories": catalog_service.list_categories(theater_id)}), 200


@products_bp.get("/theater-kiosk-types/<int:theater_id>")
@require_auth
def list_kiosk_types_route(theater_id: int):
    ensure_theater_access(theater_id)
    return jsonify({"kioskTypes": catalog_service.list_kiosk_types(theater_id)}), 200


@products_bp.get("/combo-offers/<int:theater_id>")
@require_auth
def list_combos_route(theater_id: int):
    ensure_theater_access(theater_id)
    return jsonify({"combos": catalog_service.list_combos(theater_id)}), 200
