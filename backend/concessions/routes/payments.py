# backend/concessions/routes/payments.py
"""
Payment API routes.

The server never sees card or UPI details: the device gets an intent
handle, completes checkout with the gateway, and posts the gateway's
callback fields back for signature verification.
"""

from flask import Blueprint, current_app, g, jsonify, request

from ..decorators import ensure_theater_access, require_auth, require_role
from ..errors import PipelineError, ValidationFailed
from ..extensions import db
from ..models.auth import ADMIN_ROLES, ORDERING_ROLES
from ..services import payment_config_service, payment_service


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


def _int_field(data: dict, *names: str, required: bool = True) -> int | None:
    for name in names:
        value = data.get(name)
        if value is None or value == "":
            continue
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ValidationFailed(f"{name} must be an integer", {"field": name})
    if required:
        raise ValidationFailed(f"{names[0]} is required", {"field": names[0]})
    return None


def _theater_id(data: dict) -> int:
    theater_id = _int_field(data, "theaterId", "theater_id", required=False)
    if theater_id is None:
        theater_id = g.theater_id
    if theater_id is None:
        raise ValidationFailed("theaterId is required", {"field": "theaterId"})
    ensure_theater_access(theater_id)
    return theater_id


@payments_bp.post("/create-order")
@require_auth
@require_role(*ORDERING_ROLES)
def create_intent_route():
    """
    Body: {theaterId?, orderId, method (upi|online)}

    Returns the intent (handle, public key id, amount in paise, expiry).
    Calling again for the same order returns the same intent.
    """
    try:
        data = request.get_json(silent=True) or {}
        theater_id = _theater_id(data)
        order_id = _int_field(data, "orderId", "order_id")
        method = str(data.get("method") or data.get("paymentMethod") or "").strip().lower()
        if not method:
            raise ValidationFailed("method is required", {"field": "method"})
        intent = payment_service.create_intent(
            theater_id, order_id, method, actor_user_id=g.current_user.id
        )
        return jsonify({"payment": intent.to_dict()}), 201
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to create payment intent")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/launch")
@require_auth
@require_role(*ORDERING_ROLES)
def launch_route():
    """Body: {theaterId?, orderId}. Marks the intent as handed to the gateway checkout."""
    try:
        data = request.get_json(silent=True) or {}
        theater_id = _theater_id(data)
        order = payment_service.mark_in_gateway(theater_id, _int_field(data, "orderId", "order_id"))
        return jsonify({"order": order.to_dict()}), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to launch payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/verify")
@require_auth
@require_role(*ORDERING_ROLES)
def verify_route():
    """
    Body: gateway callback fields
    {razorpay_order_id, razorpay_payment_id, razorpay_signature}
    or {intentHandle, paymentId, signature}, plus theaterId? and orderId?.
    """
    try:
        data = request.get_json(silent=True) or {}
        theater_id = _theater_id(data)
        result = payment_service.verify_payment(
            theater_id,
            payment_id=data.get("razorpay_payment_id") or data.get("paymentId"),
            signature=data.get("razorpay_signature") or data.get("signature"),
            handle=data.get("razorpay_order_id") or data.get("intentHandle"),
            order_id=_int_field(data, "orderId", "order_id", required=False),
            actor_user_id=g.current_user.id,
        )
        return jsonify(result.to_dict()), 200
    except PipelineError as e:
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to verify payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/config/<int:theater_id>/<channel>")
@require_auth
def payment_config_route(theater_id: int, channel: str):
    """Accepted methods and public gateway key for one channel. Kiosk never lists cash."""
    ensure_theater_access(theater_id)
    return jsonify(payment_config_service.public_config(theater_id, channel)), 200


@payments_bp.put("/config/<int:theater_id>/<channel>")
@require_auth
@require_role(*ADMIN_ROLES)
def update_payment_config_route(theater_id: int, channel: str):
    """Body: {gatewayEnabled?, keyId?, keySecret?, acceptedMethods?, provider?}"""
    try:
        ensure_theater_access(theater_id)
        data = request.get_json(silent=True) or {}
        accepted = data.get("acceptedMethods")
        if accepted is not None and not isinstance(accepted, list):
            raise ValidationFailed("acceptedMethods must be a list", {"field": "acceptedMethods"})
        enabled = data.get("gatewayEnabled")
        payment_config_service.upsert_config(
            theater_id,
            channel,
            gateway_enabled=bool(enabled) if enabled is not None else None,
            key_id=data.get("keyId"),
            key_secret=data.get("keySecret"),
            accepted=accepted,
            provider=data.get("provider"),
        )
        db.session.commit()
        current_app.logger.info(
            "payment config updated: theater_id=%s channel=%s user_id=%s",
            theater_id,
            channel,
            g.current_user.id,
        )
        return jsonify(payment_config_service.public_config(theater_id, channel)), 200
    except PipelineError as e:
        db.session.rollback()
        return jsonify(e.to_dict()), e.http_status
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to update payment config")
        return jsonify({"error": "Internal server error"}), 500
