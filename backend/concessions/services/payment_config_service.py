# Overview: Per-theater, per-channel payment settings and accepted methods.

from __future__ import annotations

from flask import current_app

from ..errors import GatewayError, ValidationFailed
from ..extensions import db
from ..models import TheaterPaymentConfig
from ..models.tenancy import CHANNEL_KIOSK, CHANNELS


METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_UPI = "upi"
METHOD_ONLINE = "online"

# Settled at the counter; the order is paid on creation
DIRECT_METHODS = (METHOD_CASH, METHOD_CARD)
# Go through a gateway intent and signature verification
GATEWAY_METHODS = (METHOD_UPI, METHOD_ONLINE)
PAYMENT_METHODS = DIRECT_METHODS + GATEWAY_METHODS

DEFAULT_ACCEPTED = {
    "online-pos": [METHOD_CASH, METHOD_CARD, METHOD_UPI],
    "offline-pos": [METHOD_CASH, METHOD_CARD, METHOD_UPI],
    CHANNEL_KIOSK: [METHOD_UPI, METHOD_ONLINE, METHOD_CARD],
}


def _check_channel(channel: str) -> str:
    if channel not in CHANNELS:
        raise ValidationFailed(f"channel must be one of {', '.join(CHANNELS)}")
    return channel


def _row(theater_id: int, channel: str) -> TheaterPaymentConfig | None:
    return (
        db.session.query(TheaterPaymentConfig)
        .filter_by(theater_id=theater_id, channel=channel)
        .first()
    )


def accepted_methods(theater_id: int, channel: str) -> list[str]:
    """
    Methods a channel may use. Kiosk never accepts cash; gateway methods
    require the gateway to be enabled for the channel.
    """
    _check_channel(channel)
    row = _row(theater_id, channel)
    methods = list(row.accepted_methods) if row and row.accepted_methods else list(DEFAULT_ACCEPTED[channel])
    gateway_enabled = bool(row and row.gateway_enabled)
    result = []
    for method in methods:
        if method not in PAYMENT_METHODS or method in result:
            continue
        if channel == CHANNEL_KIOSK and method == METHOD_CASH:
            continue
        if method in GATEWAY_METHODS and not gateway_enabled:
            continue
        result.append(method)
    return result


def public_config(theater_id: int, channel: str) -> dict:
    _check_channel(channel)
    row = _row(theater_id, channel)
    key_id = (row.key_id if row and row.key_id else None) or current_app.config.get("RAZORPAY_KEY_ID") or None
    return {
        "theaterId": theater_id,
        "channel": channel,
        "provider": row.provider if row else "razorpay",
        "gatewayEnabled": bool(row and row.gateway_enabled),
        "keyId": key_id if row and row.gateway_enabled else None,
        "acceptedMethods": accepted_methods(theater_id, channel),
    }


def gateway_credentials(theater_id: int, channel: str) -> tuple[str | None, str]:
    """(key_id, key_secret) for the channel; the theater's row wins over app config."""
    row = _row(theater_id, channel)
    key_id = (row.key_id if row else None) or current_app.config.get("RAZORPAY_KEY_ID") or None
    secret = (row.key_secret if row else None) or current_app.config.get("RAZORPAY_KEY_SECRET")
    if not secret:
        raise GatewayError(f"no gateway secret configured for theater {theater_id} channel {channel}")
    return key_id, secret


def upsert_config(
    theater_id: int,
    channel: str,
    *,
    gateway_enabled: bool | None = None,
    key_id: str | None = None,
    key_secret: str | None = None,
    accepted: list[str] | None = None,
    provider: str | None = None,
) -> TheaterPaymentConfig:
    """Create or update a channel's config. Caller commits."""
    _check_channel(channel)
    if accepted is not None:
        unknown = [m for m in accepted if m not in PAYMENT_METHODS]
        if unknown:
            raise ValidationFailed(f"unknown payment methods: {', '.join(unknown)}")
        if channel == CHANNEL_KIOSK and METHOD_CASH in accepted:
            raise ValidationFailed("kiosk cannot accept cash")
    row = _row(theater_id, channel)
    if row is None:
        row = TheaterPaymentConfig(
            theater_id=theater_id,
            channel=channel,
            accepted_methods=list(DEFAULT_ACCEPTED[channel]),
        )
        db.session.add(row)
    if gateway_enabled is not None:
        row.gateway_enabled = gateway_enabled
    if key_id is not None:
        row.key_id = key_id
    if key_secret is not None:
        row.key_secret = key_secret
    if accepted is not None:
        row.accepted_methods = list(accepted)
    if provider is not None:
        row.provider = provider
    db.session.flush()
    return row
