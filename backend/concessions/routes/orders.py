# backend/concessions/routes/orders.py
"""
Order API routes.

POST /orders/theater is idempotent by fingerprint: a replay returns the
stored order with existing=true and status 200 instead of 201.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import ensure_theater_access, require_auth, require_role
from ..errors import ForbiddenError, PipelineError
from ..models.auth import ADMIN_ROLES, ORDERING_ROLES, ROLE_KIOSK, ROLE_SUPER_ADMIN, STAFF_ROLES
from ..models.orders import SOURCE_KIOSK, SOURCE_ONLINE_POS
from ..services import order_service
from ..validation import parse_order_submission


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _kiosk_only() -> bool:
    return bool(g.roles) and all(role == ROLE_KIOSK for role in g.roles)


@orders_bp.post("/theater")
@require_auth
@require_role(*ORDERING_ROLES)
def create_order_route():
    """
    Body: {theaterId, fingerprint, source, customerName, paymentMethod,
    items[{productId|comboId, quantity}], clientTotal|totals.grandTotal,
    cartDiscount?, notes?, offlineQueued?, clientCreatedAt?}
    """
    try:
        kiosk_session = _kiosk_only()
        submission = parse_order_submission(
            request.get_json(silent=True),
            default_source=SOURCE_KIOSK if kiosk_session else SOURCE_ONLINE_POS,
        )
        ensure_theater_access(submission.theater_id)
        if kiosk_session and submission.source != SOURCE_KIOSK:
            raise ForbiddenError("Kiosk sessions may only place kiosk orders")

        result = order_service.create_order(submission, actor_user_id=g.current_user.id)
        return jsonify(result.to_dict()), 200 if result.existing else 201
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/theater/<int:theater_id>")
@require_auth
@require_role(*ORDERING_ROLES)
def list_orders_route(theater_id: int):
    """Query params: status (comma list), source, fingerprint (comma list), date, page, limit."""
    try:
        ensure_theater_access(theater_id)
        result = order_service.list_orders(
            theater_id,
            status=request.args.get("status"),
            source=request.args.get("source"),
            fingerprint=request.args.get("fingerprint"),
            date=request.args.get("date"),
            page=request.args.get("page", 1, type=int),
            limit=request.args.get("limit", 50, type=int),
        )
        return jsonify(result), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/theater/<int:theater_id>/<int:order_id>")
@require_auth
@require_role(*ORDERING_ROLES)
def get_order_route(theater_id: int, order_id: int):
    ensure_theater_access(theater_id)
    order = order_service.get_order(theater_id, order_id)
    return jsonify({"order": order.to_dict(include_items=True)}), 200


@orders_bp.get("/theater/<int:theater_id>/<int:order_id>/receipt")
@require_auth
@require_role(*ORDERING_ROLES)
def receipt_route(theater_id: int, order_id: int):
    ensure_theater_access(theater_id)
    order = order_service.get_order(theater_id, order_id)
    return jsonify({"receipt": order_service.receipt(order)}), 200


@orders_bp.post("/theater/<int:theater_id>/<int:order_id>/cancel")
@require_auth
@require_role(*STAFF_ROLES)
def cancel_order_route(theater_id: int, order_id: int):
    """
    Body: {reason?, refund?, adminOverride?}

    Paid orders need refund=true or adminOverride=true; overrides are
    restricted to managers and admins.
    """
    try:
        ensure_theater_access(theater_id)
        data = request.get_json(silent=True) or {}
        admin_override = bool(data.get("adminOverride", False))
        if admin_override and not any(role in g.roles for role in ADMIN_ROLES + (ROLE_SUPER_ADMIN,)):
            raise ForbiddenError("adminOverride requires a manager or admin")
        order = order_service.cancel_order(
            theater_id,
            order_id,
            reason=data.get("reason"),
            refund=bool(data.get("refund", False)),
            admin_override=admin_override,
            actor_user_id=g.current_user.id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/theater/<int:theater_id>/<int:order_id>/refund")
@require_auth
@require_role(*ADMIN_ROLES)
def refund_order_route(theater_id: int, order_id: int):
    """Body: {amount?} (defaults to the remaining refundable amount)."""
    try:
        ensure_theater_access(theater_id)
        data = request.get_json(silent=True) or {}
        order = order_service.refund_order(
            theater_id,
            order_id,
            data.get("amount"),
            actor_user_id=g.current_user.id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/theater/<int:theater_id>/<int:order_id>/complete")
@require_auth
@require_role(*STAFF_ROLES)
def complete_order_route(theater_id: int, order_id: int):
    try:
        ensure_theater_access(theater_id)
        order = order_service.mark_completed(theater_id, order_id, actor_user_id=g.current_user.id)
        return jsonify({"order": order.to_dict()}), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to complete order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/theater/<int:theater_id>/<int:order_id>/recover")
@require_auth
@require_role(*ADMIN_ROLES)
def recover_order_route(theater_id: int, order_id: int):
    """Return a sync_failed order to service."""
    try:
        ensure_theater_access(theater_id)
        order_service.get_order(theater_id, order_id)
        order = order_service.recover_quarantined(order_id, actor_user_id=g.current_user.id)
        return jsonify({"order": order.to_dict()}), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        current_app.logger.exception("Failed to recover order")
        return jsonify({"error": "Internal server error"}), 500
