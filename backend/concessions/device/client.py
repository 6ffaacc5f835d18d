# Overview: Fingerprinted HTTP client used by every device-side component.

"""
Device HTTP client.

Every order submission carries a fingerprint chosen by the device
(random 128 bits + device id + millisecond timestamp). The server stores it
with the order and answers a replay with the existing order and
existing=true, so a retry after a lost response never double-charges
stock.

Error handling:
- Transport errors and 5xx responses are `transient`.
- Wire errors keep the server's `kind`.
- 401 clears the stored token and raises SessionExpired.
- Non-queue calls retry transient failures with backoff; a `conflict`
  is retried once. Queue submissions do not retry here, the drainer owns
  their backoff.
"""

from __future__ import annotations

import logging
import secrets
import time

import httpx

from .config import DeviceConfig
from .storage import AUTH_TOKEN_KEY, LocalStore


logger = logging.getLogger(__name__)

KIND_TRANSIENT = "transient"
KIND_CONFLICT = "conflict"
KIND_AUTH = "auth"


class ApiError(Exception):
    def __init__(self, kind: str, status: int | None, message: str, payload: dict | None = None):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.message = message
        self.payload = payload or {}

    @property
    def details(self) -> dict:
        details = self.payload.get("details")
        return details if isinstance(details, dict) else {}

    @property
    def transient(self) -> bool:
        return self.kind == KIND_TRANSIENT

    def __repr__(self):
        return f"ApiError(kind={self.kind!r}, status={self.status!r}, message={self.message!r})"


class SessionExpired(ApiError):
    """The server rejected the stored token; the user must sign in again."""

    def __init__(self, message: str = "Session expired", payload: dict | None = None):
        super().__init__(KIND_AUTH, 401, message, payload)


def new_fingerprint(device_id: str, *, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"{secrets.token_hex(16)}-{device_id}-{stamp}"


def error_from_response(response: httpx.Response) -> ApiError:
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    message = body.get("error") or f"HTTP {response.status_code}"
    if response.status_code >= 500:
        kind = KIND_TRANSIENT
    else:
        kind = body.get("kind") or (KIND_AUTH if response.status_code in (401, 403) else "validation")
    return ApiError(kind, response.status_code, message, body)


class FingerprintedClient:
    def __init__(
        self,
        config: DeviceConfig,
        store: LocalStore,
        *,
        transport: httpx.BaseTransport | None = None,
        sleep=time.sleep,
    ):
        self.config = config
        self.store = store
        self.sleep = sleep
        self._http = httpx.Client(
            base_url=config.base_url.rstrip("/"),
            timeout=config.request_timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    # ---------------------------------------------------------------- token

    @property
    def token(self) -> str | None:
        return self.store.get(AUTH_TOKEN_KEY)

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        token = self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    # ---------------------------------------------------------------- requests

    def _send_once(self, method: str, path: str, *, json=None, params=None, authenticated: bool = True) -> dict:
        try:
            response = self._http.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._headers() if authenticated else {"Content-Type": "application/json"},
            )
        except httpx.TransportError as exc:
            raise ApiError(KIND_TRANSIENT, None, f"network error: {exc}") from exc

        if response.status_code == 401 and authenticated:
            self.store.delete(AUTH_TOKEN_KEY)
            error = error_from_response(response)
            raise SessionExpired(error.message, error.payload)
        if response.status_code >= 400:
            raise error_from_response(response)
        try:
            return response.json()
        except ValueError:
            raise ApiError(KIND_TRANSIENT, response.status_code, "response body is not JSON")

    def request(self, method: str, path: str, *, json=None, params=None, retry: bool = True, authenticated: bool = True) -> dict:
        attempts = self.config.max_transient_attempts if retry else 1
        conflict_retried = False
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._send_once(method, path, json=json, params=params, authenticated=authenticated)
            except SessionExpired:
                raise
            except ApiError as exc:
                if retry and exc.kind == KIND_CONFLICT and not conflict_retried:
                    conflict_retried = True
                    logger.info("retrying after conflict: %s %s", method, path)
                    continue
                if exc.transient and attempt < attempts:
                    delay = min(
                        self.config.backoff_cap_seconds,
                        self.config.backoff_base_seconds * (2 ** (attempt - 1)),
                    )
                    logger.info("transient failure on %s %s, retrying in %.1fs: %s", method, path, delay, exc.message)
                    self.sleep(delay)
                    continue
                raise

    # ---------------------------------------------------------------- auth

    def login(self, username: str, password: str) -> dict:
        data = self.request(
            "POST",
            "/auth/login",
            json={"username": username, "password": password},
            retry=False,
            authenticated=False,
        )
        self.store.set(AUTH_TOKEN_KEY, data["token"])
        logger.info("signed in: username=%s theater_id=%s", username, data.get("theaterId"))
        return data

    def logout(self) -> None:
        try:
            self.request("POST", "/auth/logout", retry=False)
        finally:
            self.store.delete(AUTH_TOKEN_KEY)

    # ---------------------------------------------------------------- orders

    def new_fingerprint(self) -> str:
        return new_fingerprint(self.config.device_id)

    def create_order(self, payload: dict, *, retry: bool = True) -> dict:
        """
        POST /orders/theater. The payload must already carry its
        fingerprint; retries reuse it unchanged.
        """
        if not payload.get("fingerprint"):
            raise ValueError("order payload requires a fingerprint")
        return self.request("POST", "/orders/theater", json=payload, retry=retry)

    def list_orders(self, *, fingerprint: str | None = None, status: str | None = None, **params) -> dict:
        query = {k: v for k, v in params.items() if v is not None}
        if fingerprint:
            query["fingerprint"] = fingerprint
        if status:
            query["status"] = status
        return self.request("GET", f"/orders/theater/{self.config.theater_id}", params=query)

    def get_order(self, order_id: int) -> dict:
        return self.request("GET", f"/orders/theater/{self.config.theater_id}/{order_id}")

    # ---------------------------------------------------------------- catalog

    def get_products(self, *, stock_source: str = "cafe", limit: int = 500) -> dict:
        return self.request(
            "GET",
            f"/theater-products/{self.config.theater_id}",
            params={"stockSource": stock_source, "limit": limit},
        )

    def get_combos(self) -> list[dict]:
        return self.request("GET", f"/combo-offers/{self.config.theater_id}")["combos"]

    # ---------------------------------------------------------------- payments

    def get_payment_config(self, channel: str) -> dict:
        return self.request("GET", f"/payments/config/{self.config.theater_id}/{channel}")

    def create_intent(self, order_id: int, method: str) -> dict:
        return self.request(
            "POST",
            "/payments/create-order",
            json={"theaterId": self.config.theater_id, "orderId": order_id, "method": method},
        )["payment"]

    def verify_payment(self, callback: dict, *, order_id: int | None = None) -> dict:
        body = dict(callback)
        body["theaterId"] = self.config.theater_id
        if order_id is not None:
            body["orderId"] = order_id
        return self.request("POST", "/payments/verify", json=body)

    # ---------------------------------------------------------------- broadcast

    def open_stream(self, last_event_id: int | None = None):
        """Context manager over the raw server-sent-events response."""
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        if last_event_id is not None:
            headers["Last-Event-ID"] = str(last_event_id)
        return self._http.stream(
            "GET",
            "/notifications/stream",
            params={"theaterId": self.config.theater_id},
            headers=headers,
            timeout=httpx.Timeout(self.config.request_timeout, read=None),
        )

    def events_after(self, after: int = 0, *, limit: int = 200) -> dict:
        return self.request(
            "GET",
            "/notifications/events",
            params={"theaterId": self.config.theater_id, "after": after, "limit": limit},
            retry=False,
        )
