# Overview: Payment gateway boundary; intent creation and callback signature checks.

"""
Gateway boundary.

The server never sees card or UPI details. It asks the gateway for an
order handle and later checks the callback signature:

    signature = HMAC-SHA256(key_secret, f"{gateway_order_id}|{payment_id}")

LocalGateway mints handles in-process (development, tests, kiosks without a
configured provider). RazorpayGateway calls the Orders API.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets

import httpx
from flask import current_app

from ..errors import GatewayError


def sign(gateway_order_id: str, payment_id: str, secret: str) -> str:
    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    if not (gateway_order_id and payment_id and signature and secret):
        return False
    expected = sign(gateway_order_id, payment_id, secret)
    return hmac.compare_digest(expected, signature.strip().lower())


class LocalGateway:
    name = "local"

    def create_order(self, *, amount_paise: int, currency: str, receipt: str, key_id, key_secret) -> str:
        if amount_paise <= 0:
            raise GatewayError("amount must be positive")
        return f"order_{secrets.token_hex(7)}"


class RazorpayGateway:
    name = "razorpay"

    def __init__(self, api_base: str, timeout: float, transport: httpx.BaseTransport | None = None):
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def create_order(self, *, amount_paise: int, currency: str, receipt: str, key_id, key_secret) -> str:
        if not key_id:
            raise GatewayError("gateway key id is not configured")
        try:
            with httpx.Client(
                base_url=self.api_base,
                auth=(key_id, key_secret),
                timeout=self.timeout,
                transport=self.transport,
            ) as client:
                response = client.post(
                    "/orders",
                    json={"amount": amount_paise, "currency": currency, "receipt": receipt},
                )
        except httpx.HTTPError as exc:
            raise GatewayError(f"gateway unreachable: {exc.__class__.__name__}") from exc
        if response.status_code >= 400:
            raise GatewayError(f"gateway rejected order creation with HTTP {response.status_code}")
        try:
            handle = response.json()["id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise GatewayError("gateway returned an unusable response") from exc
        return handle


def get_gateway():
    """Gateway selected by PAYMENT_GATEWAY; tests may set PAYMENT_GATEWAY_INSTANCE."""
    instance = current_app.config.get("PAYMENT_GATEWAY_INSTANCE")
    if instance is not None:
        return instance
    kind = current_app.config.get("PAYMENT_GATEWAY", "local")
    if kind == "razorpay":
        return RazorpayGateway(
            current_app.config["RAZORPAY_API_BASE"],
            current_app.config["RAZORPAY_TIMEOUT_SECONDS"],
        )
    if kind == "local":
        return LocalGateway()
    raise GatewayError(f"unknown payment gateway: {kind!r}")
