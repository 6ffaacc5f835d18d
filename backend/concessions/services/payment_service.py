# Overview: Payment coordinator; gateway intents, signature verification, expiry sweep.

"""
Payment coordination

- create_intent() is idempotent per order: the first call asks the gateway
  for a handle, later calls return the same intent while it is valid.
- verify_payment() checks HMAC-SHA256(secret, "order_id|payment_id").
  Success confirms the order (stock applied in the same transaction).
  Failure marks the payment `failed`; the order stays pending_payment and
  may be retried until the intent expires.
- A second verification of the same (order, payment id) returns the cached
  result and writes nothing.
- sweep_expired_intents() cancels pending orders whose intent (or, for a
  gateway order that never got one, whose creation) is older than the TTL.

Signatures, card and UPI handles are never stored or logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..errors import (
    ConflictError,
    GatewayError,
    InsufficientStock,
    InvalidTransition,
    LedgerError,
    NotFound,
    PaymentExpired,
    PaymentVerificationFailed,
    PipelineError,
    TransientError,
    ValidationFailed,
)
from ..extensions import db
from ..models import Order, PaymentAttempt, PaymentIntent
from ..models.orders import (
    CANCEL_PATH_EXPIRED,
    PAYMENT_FAILED,
    PAYMENT_IN_GATEWAY,
    PAYMENT_INTENT_CREATED,
    STATE_CANCELLED,
    STATE_PENDING_PAYMENT,
)
from ..models.payments import INTENT_CREATED, INTENT_EXPIRED, INTENT_FAILED, INTENT_VERIFIED
from ..time_utils import utcnow
from . import gateway as gateway_module
from . import order_service
from .concurrency import lock_for_update, run_with_retry
from .payment_config_service import GATEWAY_METHODS, accepted_methods, gateway_credentials


@dataclass
class VerificationResult:
    order: Order
    intent: PaymentIntent
    cached: bool

    def to_dict(self) -> dict:
        return {
            "verified": True,
            "cached": self.cached,
            "order": self.order.to_dict(),
            "payment": self.intent.to_dict(),
        }


def _ttl() -> timedelta:
    return timedelta(seconds=int(current_app.config.get("PAYMENT_INTENT_TTL_SECONDS", 900)))


def _log_failure(action: str, exc: PipelineError, *, order_id=None, fingerprint=None, actor=None) -> None:
    current_app.logger.warning(
        "payment %s failed: kind=%s order_id=%s fingerprint=%s actor=%s reason=%s",
        action,
        exc.kind,
        order_id,
        fingerprint,
        actor,
        exc.message,
    )


def _record_attempt(intent: PaymentIntent, outcome: str, *, payment_id: str | None, reason: str | None = None) -> None:
    intent.attempts = (intent.attempts or 0) + 1
    db.session.add(
        PaymentAttempt(
            intent_id=intent.id,
            payment_id=payment_id,
            outcome=outcome,
            reason=reason,
            occurred_at=utcnow(),
        )
    )


def _is_expired(intent: PaymentIntent, now) -> bool:
    return intent.expires_at is not None and intent.expires_at <= now


# =============================================================================
# INTENTS
# =============================================================================

def create_intent(theater_id: int, order_id: int, method: str, *, actor_user_id=None) -> PaymentIntent:
    """Create (or return) the gateway intent for a pending order."""
    actor = f"user:{actor_user_id}" if actor_user_id else "anonymous"

    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None or order.theater_id != theater_id:
            raise NotFound(f"Order {order_id} not found", {"orderId": order_id})

        now = utcnow()
        intent = db.session.query(PaymentIntent).filter_by(order_id=order.id).first()
        if intent is not None:
            if intent.status == INTENT_VERIFIED:
                return intent
            if intent.status == INTENT_EXPIRED or _is_expired(intent, now):
                raise PaymentExpired(
                    "Payment window has expired",
                    {"orderId": order.id, "expiresAt": intent.to_dict()["expires_at"]},
                )
            if order.state == STATE_PENDING_PAYMENT:
                return intent

        if order.state == STATE_CANCELLED and order.cancel_path == CANCEL_PATH_EXPIRED:
            raise PaymentExpired("Payment window has expired", {"orderId": order.id})

        if method not in GATEWAY_METHODS:
            raise ValidationFailed(
                f"{method} does not use the payment gateway",
                {"paymentMethod": method, "gatewayMethods": list(GATEWAY_METHODS)},
            )
        allowed = accepted_methods(order.theater_id, order.source)
        if method not in allowed:
            raise ValidationFailed(
                f"{method} is not accepted on {order.source}",
                {"paymentMethod": method, "acceptedMethods": allowed},
            )

        order_service.attach_payment(order, method=method)

        amount_paise = int(order.grand_total * 100)
        try:
            key_id, key_secret = gateway_credentials(order.theater_id, order.source)
            gateway = gateway_module.get_gateway()
            handle = gateway.create_order(
                amount_paise=amount_paise,
                currency="INR",
                receipt=order.order_number,
                key_id=key_id,
                key_secret=key_secret,
            )
        except GatewayError as exc:
            raise TransientError("Payment gateway unavailable", {"orderId": order.id}) from exc

        intent = PaymentIntent(
            order_id=order.id,
            theater_id=order.theater_id,
            channel=order.source,
            method=method,
            provider=gateway.name,
            gateway_order_id=handle,
            key_id=key_id,
            amount=order.grand_total,
            currency="INR",
            status=INTENT_CREATED,
            created_at=now,
            expires_at=now + _ttl(),
        )
        db.session.add(intent)
        db.session.commit()
        return intent

    try:
        intent = run_with_retry(_op)
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("create_intent", exc, order_id=order_id, actor=actor)
        raise
    current_app.logger.info("payment intent ready: order_id=%s intent_id=%s", order_id, intent.id)
    return intent


def mark_in_gateway(theater_id: int, order_id: int) -> Order:
    """The device opened the gateway checkout for this order's intent."""
    def _op():
        order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
        if order is None or order.theater_id != theater_id:
            raise NotFound(f"Order {order_id} not found", {"orderId": order_id})
        if order.state != STATE_PENDING_PAYMENT or order.payment_status not in (
            PAYMENT_INTENT_CREATED,
            PAYMENT_IN_GATEWAY,
            PAYMENT_FAILED,
        ):
            raise InvalidTransition(
                "Order has no open payment intent",
                {"orderId": order.id, "state": order.state, "payment": order.payment_status},
            )
        order.payment_status = PAYMENT_IN_GATEWAY
        db.session.commit()
        return order

    try:
        return run_with_retry(_op)
    except PipelineError:
        db.session.rollback()
        raise


# =============================================================================
# VERIFICATION
# =============================================================================

def _find_intent(theater_id: int, *, handle: str | None, order_id: int | None) -> PaymentIntent:
    query = db.session.query(PaymentIntent).filter(PaymentIntent.theater_id == theater_id)
    if handle:
        query = query.filter(PaymentIntent.gateway_order_id == handle)
    elif order_id is not None:
        query = query.filter(PaymentIntent.order_id == order_id)
    else:
        raise ValidationFailed("intentHandle or orderId is required")
    intent = lock_for_update(query).first()
    if intent is None:
        raise NotFound("Payment intent not found", {"intentHandle": handle, "orderId": order_id})
    if order_id is not None and intent.order_id != order_id:
        raise ValidationFailed("intentHandle does not belong to this order", {"orderId": order_id})
    return intent


def verify_payment(
    theater_id: int,
    *,
    payment_id: str,
    signature: str,
    handle: str | None = None,
    order_id: int | None = None,
    actor_user_id=None,
) -> VerificationResult:
    """
    Verify a gateway callback and confirm the order.

    Raises PaymentVerificationFailed on a bad signature (order stays
    pending_payment), PaymentExpired after the TTL, InsufficientStock when
    stock ran out between create and payment.
    """
    actor = f"user:{actor_user_id}" if actor_user_id else "anonymous"
    if not payment_id or not signature:
        raise ValidationFailed("paymentId and signature are required")

    def _op() -> VerificationResult:
        intent = _find_intent(theater_id, handle=handle, order_id=order_id)
        order = lock_for_update(db.session.query(Order).filter_by(id=intent.order_id)).one()

        if intent.status == INTENT_VERIFIED:
            if intent.payment_id == payment_id:
                return VerificationResult(order=order, intent=intent, cached=True)
            raise ConflictError(
                "Order was already paid with a different payment",
                {"orderId": order.id},
            )

        now = utcnow()
        if intent.status == INTENT_EXPIRED or _is_expired(intent, now) or order.state == STATE_CANCELLED:
            raise PaymentExpired("Payment window has expired", {"orderId": order.id})
        if order.state != STATE_PENDING_PAYMENT:
            raise InvalidTransition(
                f"Order {order.order_number} is not awaiting payment",
                {"orderId": order.id, "state": order.state},
            )

        _, secret = gateway_credentials(order.theater_id, intent.channel)
        if not gateway_module.verify_signature(intent.gateway_order_id, payment_id, signature, secret):
            intent.status = INTENT_FAILED
            intent.failure_reason = "signature mismatch"
            order.payment_status = PAYMENT_FAILED
            _record_attempt(intent, "rejected", payment_id=payment_id, reason="signature mismatch")
            db.session.commit()
            raise PaymentVerificationFailed(
                "Payment signature could not be verified",
                {"orderId": order.id, "state": order.state},
            )

        intent.status = INTENT_VERIFIED
        intent.payment_id = payment_id
        intent.verified_at = now
        intent.failure_reason = None
        _record_attempt(intent, "verified", payment_id=payment_id)
        order_service.apply_payment(order, method=intent.method, actor_user_id=actor_user_id)
        db.session.commit()
        return VerificationResult(order=order, intent=intent, cached=False)

    try:
        result = run_with_retry(_op)
    except InsufficientStock as exc:
        db.session.rollback()
        _record_stock_rejection(theater_id, handle=handle, order_id=order_id, payment_id=payment_id)
        _log_failure("verify", exc, order_id=order_id, actor=actor)
        raise
    except (LedgerError, GatewayError) as exc:
        db.session.rollback()
        intent = _find_intent(theater_id, handle=handle, order_id=order_id)
        if isinstance(exc, LedgerError):
            order_service.quarantine(intent.order_id, str(exc), actor=actor)
        error = TransientError("Payment could not be finalized", {"orderId": intent.order_id})
        _log_failure("verify", error, order_id=intent.order_id, actor=actor)
        raise error from exc
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("verify", exc, order_id=order_id, actor=actor)
        raise

    if not result.cached:
        current_app.logger.info(
            "payment verified: order_id=%s number=%s state=%s",
            result.order.id,
            result.order.order_number,
            result.order.state,
        )
    return result


def _record_stock_rejection(theater_id: int, *, handle, order_id, payment_id) -> None:
    def _op():
        intent = _find_intent(theater_id, handle=handle, order_id=order_id)
        intent.failure_reason = "insufficient stock at confirmation"
        _record_attempt(intent, "stock_rejected", payment_id=payment_id, reason=intent.failure_reason)
        db.session.commit()

    run_with_retry(_op)


# =============================================================================
# EXPIRY
# =============================================================================

def sweep_expired_intents(now=None) -> int:
    """
    Auto-cancel pending orders whose payment window closed.

    Covers intents past expires_at and gateway-method orders that never got
    an intent within the TTL. Returns the number of orders cancelled.
    """
    now = now or utcnow()
    ttl = _ttl()

    def _op() -> int:
        cancelled = 0
        expired_intents = (
            db.session.query(PaymentIntent)
            .filter(
                PaymentIntent.status.in_([INTENT_CREATED, INTENT_FAILED]),
                PaymentIntent.expires_at <= now,
            )
            .order_by(PaymentIntent.id.asc())
            .all()
        )
        for intent in expired_intents:
            intent.status = INTENT_EXPIRED
            order = lock_for_update(db.session.query(Order).filter_by(id=intent.order_id)).one()
            if order.state == STATE_PENDING_PAYMENT:
                order_service.expire_unpaid(order)
                cancelled += 1

        stale_orders = (
            db.session.query(Order)
            .outerjoin(PaymentIntent, PaymentIntent.order_id == Order.id)
            .filter(
                Order.state == STATE_PENDING_PAYMENT,
                PaymentIntent.id.is_(None),
                Order.created_at <= now - ttl,
            )
            .all()
        )
        for order in stale_orders:
            order_service.expire_unpaid(order, reason="no payment started before expiry")
            cancelled += 1

        db.session.commit()
        return cancelled

    count = run_with_retry(_op)
    if count:
        current_app.logger.info("payment sweep cancelled %s order(s)", count)
    return count
