# Overview: Durable FIFO of orders placed offline, and the drainer that delivers them.

"""
Offline order queue.

Storage: one value under pending_orders_<theaterId>

    {"items": [PendingOrder...], "lastSyncAt": float|None, "drainerStatus": str}

Items keep enqueue order. Every status change is a compare-and-swap on the
item's status under the store lock, so two tabs can never both move the
same item out of `queued`.

Status flow:

    queued --(drainer takes head)--> syncing --(server ack)--> removed
                                        |---(transient)--> queued (backoff)
                                        |---(terminal)---> failed
    failed --(retry)--> queued      failed --(discard)--> removed
    queued, never attempted --(delete)--> removed

A failed head blocks the queue until the operator retries or discards it.
Only one drainer per device runs at a time (a storage lease); a duplicate
drainer would be harmless anyway because the server dedupes fingerprints.
"""

from __future__ import annotations

import asyncio
import logging
import random
import secrets
import time
from dataclasses import asdict, dataclass

from .client import KIND_CONFLICT, ApiError, FingerprintedClient, SessionExpired, new_fingerprint
from .config import DeviceConfig
from .storage import LocalStore, pending_orders_key, sales_updated_key, stock_updated_key


logger = logging.getLogger(__name__)

STATUS_QUEUED = "queued"
STATUS_SYNCING = "syncing"
STATUS_SYNCED = "synced"
STATUS_FAILED = "failed"

DRAINER_IDLE = "idle"
DRAINER_DRAINING = "draining"
DRAINER_WAITING = "waiting"
DRAINER_BLOCKED = "blocked"
DRAINER_AUTH_REQUIRED = "auth_required"
DRAINER_STANDBY = "standby"

LEASE_NAME = "order_drainer"


@dataclass
class PendingOrder:
    fingerprint: str
    payload: dict
    status: str = STATUS_QUEUED
    attempts: int = 0
    enqueued_at: float = 0.0
    last_attempt_at: float | None = None
    next_attempt_at: float = 0.0
    last_error: dict | None = None
    server_order: dict | None = None

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "PendingOrder":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


class QueueError(Exception):
    """The requested queue operation is not allowed in the item's current status."""


def backoff_delay(attempts: int, *, base: float, cap: float, rng=random.random) -> float:
    """Exponential backoff with jitter: a random point in [d/2, d], d = min(cap, base * 2^(n-1))."""
    ceiling = min(cap, base * (2 ** max(attempts - 1, 0)))
    return ceiling / 2 + rng() * ceiling / 2


class OfflineOrderQueue:
    def __init__(self, store: LocalStore, theater_id, device_id: str, *, clock=time.time):
        self.store = store
        self.theater_id = theater_id
        self.device_id = device_id
        self.clock = clock
        self.key = pending_orders_key(theater_id)

    # ---------------------------------------------------------------- reads

    def _state(self) -> dict:
        state = self.store.get(self.key) or {}
        return {
            "items": list(state.get("items") or []),
            "lastSyncAt": state.get("lastSyncAt"),
            "drainerStatus": state.get("drainerStatus") or DRAINER_IDLE,
        }

    def items(self) -> list[PendingOrder]:
        return [PendingOrder.from_dict(raw) for raw in self._state()["items"]]

    def get(self, fingerprint: str) -> PendingOrder | None:
        for item in self.items():
            if item.fingerprint == fingerprint:
                return item
        return None

    def head(self) -> PendingOrder | None:
        items = self.items()
        return items[0] if items else None

    def __len__(self):
        return len(self._state()["items"])

    def status(self) -> dict:
        state = self._state()
        counts = {STATUS_QUEUED: 0, STATUS_SYNCING: 0, STATUS_FAILED: 0}
        for raw in state["items"]:
            counts[raw.get("status")] = counts.get(raw.get("status"), 0) + 1
        return {
            "queued": counts[STATUS_QUEUED],
            "syncing": counts[STATUS_SYNCING],
            "failed": counts[STATUS_FAILED],
            "lastSyncAt": state["lastSyncAt"],
            "drainerStatus": state["drainerStatus"],
        }

    # ---------------------------------------------------------------- writes

    def _mutate(self, fn):
        def apply(state):
            state = state or {}
            state.setdefault("items", [])
            fn(state)
            return state

        return self.store.update(self.key, apply)

    def enqueue(self, payload: dict, *, fingerprint: str | None = None) -> PendingOrder:
        """Freeze the submission (totals included) and append it to the queue."""
        frozen = dict(payload)
        frozen["fingerprint"] = fingerprint or frozen.get("fingerprint") or new_fingerprint(self.device_id)
        frozen["offlineQueued"] = True
        now = self.clock()
        frozen.setdefault("clientCreatedAt", time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(now)))
        item = PendingOrder(fingerprint=frozen["fingerprint"], payload=frozen, enqueued_at=now, next_attempt_at=now)

        def add(state):
            if any(raw["fingerprint"] == item.fingerprint for raw in state["items"]):
                return
            state["items"].append(item.to_dict())

        self._mutate(add)
        logger.info("order queued offline: fingerprint=%s", item.fingerprint)
        return item

    def _compare_and_set(self, fingerprint: str, expected: tuple[str, ...], change) -> PendingOrder:
        """
        Apply `change(raw)` to one item if its status is in `expected`.
        `change` returns None to remove the item. Raises QueueError otherwise.
        """
        result = {}

        def apply(state):
            for index, raw in enumerate(state["items"]):
                if raw["fingerprint"] != fingerprint:
                    continue
                if raw["status"] not in expected:
                    result["error"] = f"order {fingerprint} is {raw['status']}"
                    return
                updated = change(dict(raw))
                if updated is None:
                    del state["items"][index]
                    result["item"] = raw
                else:
                    state["items"][index] = updated
                    result["item"] = updated
                return
            result["error"] = f"order {fingerprint} is not queued"

        self._mutate(apply)
        if "error" in result:
            raise QueueError(result["error"])
        return PendingOrder.from_dict(result["item"])

    def mark_syncing(self, fingerprint: str) -> PendingOrder:
        now = self.clock()

        def change(raw):
            raw["status"] = STATUS_SYNCING
            raw["attempts"] = raw.get("attempts", 0) + 1
            raw["last_attempt_at"] = now
            return raw

        return self._compare_and_set(fingerprint, (STATUS_QUEUED,), change)

    def mark_synced(self, fingerprint: str, server_order: dict | None) -> PendingOrder:
        """The server acknowledged the order; the item leaves the queue."""
        item = self._compare_and_set(fingerprint, (STATUS_SYNCING,), lambda raw: None)
        item.status = STATUS_SYNCED
        item.server_order = server_order
        now = self.clock()

        def stamp(state):
            state["lastSyncAt"] = now

        self._mutate(stamp)
        return item

    def schedule_retry(self, fingerprint: str, error: ApiError | None, delay: float) -> PendingOrder:
        next_at = self.clock() + delay

        def change(raw):
            raw["status"] = STATUS_QUEUED
            raw["next_attempt_at"] = next_at
            if error is not None:
                raw["last_error"] = {"kind": error.kind, "status": error.status, "message": error.message}
            return raw

        return self._compare_and_set(fingerprint, (STATUS_SYNCING,), change)

    def release(self, fingerprint: str) -> PendingOrder:
        """Put a syncing item back without charging the attempt (auth lost mid-send)."""

        def change(raw):
            raw["status"] = STATUS_QUEUED
            raw["attempts"] = max(raw.get("attempts", 1) - 1, 0)
            return raw

        return self._compare_and_set(fingerprint, (STATUS_SYNCING,), change)

    def mark_failed(self, fingerprint: str, error: ApiError) -> PendingOrder:
        def change(raw):
            raw["status"] = STATUS_FAILED
            raw["last_error"] = {
                "kind": error.kind,
                "status": error.status,
                "message": error.message,
                "details": error.details,
            }
            return raw

        item = self._compare_and_set(fingerprint, (STATUS_SYNCING,), change)
        logger.warning(
            "queued order rejected: fingerprint=%s kind=%s message=%s",
            fingerprint,
            error.kind,
            error.message,
        )
        return item

    def delete(self, fingerprint: str) -> PendingOrder:
        """User cancellation of an item that was never sent."""

        def change(raw):
            if raw.get("attempts", 0) > 0:
                return raw
            return None

        item = self._compare_and_set(fingerprint, (STATUS_QUEUED,), change)
        if item.attempts > 0:
            raise QueueError(f"order {fingerprint} was already sent once; it can no longer be deleted")
        logger.info("queued order deleted: fingerprint=%s", fingerprint)
        return item

    def discard(self, fingerprint: str) -> PendingOrder:
        item = self._compare_and_set(fingerprint, (STATUS_FAILED,), lambda raw: None)
        logger.info("failed order discarded: fingerprint=%s", fingerprint)
        return item

    def retry(self, fingerprint: str) -> PendingOrder:
        now = self.clock()

        def change(raw):
            raw["status"] = STATUS_QUEUED
            raw["next_attempt_at"] = now
            return raw

        return self._compare_and_set(fingerprint, (STATUS_FAILED,), change)

    def recover_stale(self) -> list[str]:
        """Return every `syncing` item to `queued` (the previous drainer died mid-send)."""
        recovered = []

        def apply(state):
            for raw in state["items"]:
                if raw["status"] == STATUS_SYNCING:
                    raw["status"] = STATUS_QUEUED
                    recovered.append(raw["fingerprint"])

        self._mutate(apply)
        if recovered:
            logger.info("requeued %d order(s) left syncing", len(recovered))
        return recovered

    def set_drainer_status(self, status: str) -> None:
        def apply(state):
            state["drainerStatus"] = status

        self._mutate(apply)


class OfflineOrderDrainer:
    def __init__(
        self,
        queue: OfflineOrderQueue,
        client: FingerprintedClient,
        config: DeviceConfig,
        *,
        clock=time.time,
        rng=random.random,
    ):
        self.queue = queue
        self.client = client
        self.config = config
        self.clock = clock
        self.rng = rng
        self.owner = f"{config.device_id}:{secrets.token_hex(4)}"
        self.auth_blocked = False
        self._wake: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def _touch_flags(self) -> None:
        store = self.queue.store
        store.touch_flag(sales_updated_key(self.queue.theater_id))
        store.touch_flag(stock_updated_key(self.queue.theater_id))

    def drain_once(self) -> dict:
        """
        Deliver queued orders head-first until the queue empties or the head
        cannot be sent yet. Returns {"sent", "status"}.
        """
        if self.auth_blocked:
            return {"sent": 0, "status": DRAINER_AUTH_REQUIRED}
        if not self.queue.store.acquire_lease(LEASE_NAME, self.owner, self.config.lease_seconds):
            return {"sent": 0, "status": DRAINER_STANDBY}

        sent = 0
        status = DRAINER_IDLE
        self.queue.set_drainer_status(DRAINER_DRAINING)
        while True:
            head = self.queue.head()
            if head is None:
                status = DRAINER_IDLE
                break
            if head.status == STATUS_FAILED:
                status = DRAINER_BLOCKED
                break
            if head.status == STATUS_SYNCING:
                # We hold the lease, so nobody else is sending it
                self.queue.recover_stale()
                continue
            if head.next_attempt_at > self.clock():
                status = DRAINER_WAITING
                break

            item = self.queue.mark_syncing(head.fingerprint)
            try:
                response = self.client.create_order(item.payload, retry=False)
            except SessionExpired:
                self.queue.release(item.fingerprint)
                self.auth_blocked = True
                status = DRAINER_AUTH_REQUIRED
                logger.warning("drain paused: session expired")
                break
            except ApiError as exc:
                if exc.transient or exc.kind == KIND_CONFLICT:
                    delay = backoff_delay(
                        item.attempts,
                        base=self.config.backoff_base_seconds,
                        cap=self.config.backoff_cap_seconds,
                        rng=self.rng,
                    )
                    self.queue.schedule_retry(item.fingerprint, exc, delay)
                    logger.info(
                        "queued order deferred: fingerprint=%s attempts=%s retry_in=%.1fs reason=%s",
                        item.fingerprint,
                        item.attempts,
                        delay,
                        exc.message,
                    )
                    status = DRAINER_WAITING
                else:
                    self.queue.mark_failed(item.fingerprint, exc)
                    status = DRAINER_BLOCKED
                break

            order = response.get("order") or {}
            self.queue.mark_synced(item.fingerprint, order)
            sent += 1
            self._touch_flags()
            logger.info(
                "queued order synced: fingerprint=%s order_id=%s existing=%s",
                item.fingerprint,
                order.get("id"),
                bool(response.get("existing")),
            )

        self.queue.set_drainer_status(status)
        return {"sent": sent, "status": status}

    # ---------------------------------------------------------------- triggers

    def _notify(self) -> None:
        if self._wake is None or self._loop is None:
            return
        self._loop.call_soon_threadsafe(self._wake.set)

    def notify_online(self) -> None:
        """Connectivity came back."""
        self._notify()

    def notify_auth_refreshed(self) -> None:
        """The user signed in again."""
        self.auth_blocked = False
        self._notify()

    def notify_enqueued(self) -> None:
        self._notify()

    def _next_wait(self, result: dict) -> float | None:
        if result["status"] == DRAINER_AUTH_REQUIRED:
            return None
        if result["status"] == DRAINER_WAITING:
            head = self.queue.head()
            if head is not None:
                return min(max(head.next_attempt_at - self.clock(), 0.0), self.config.backoff_cap_seconds)
        return self.config.drain_poll_seconds

    async def run(self, stop_event: asyncio.Event) -> None:
        """Drain until stop_event is set. Storage and network calls run off the loop."""
        self._loop = asyncio.get_running_loop()
        self._wake = asyncio.Event()
        self.queue.recover_stale()
        try:
            while not stop_event.is_set():
                try:
                    result = await asyncio.to_thread(self.drain_once)
                except Exception:
                    logger.exception("drain pass failed")
                    result = {"sent": 0, "status": DRAINER_WAITING}

                wake = asyncio.ensure_future(self._wake.wait())
                stop = asyncio.ensure_future(stop_event.wait())
                try:
                    await asyncio.wait(
                        {wake, stop},
                        timeout=self._next_wait(result),
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    wake.cancel()
                    stop.cancel()
                self._wake.clear()
        finally:
            self.queue.store.release_lease(LEASE_NAME, self.owner)
            self._wake = None
            self._loop = None


def checkout(
    client: FingerprintedClient,
    queue: OfflineOrderQueue,
    payload: dict,
    *,
    cart=None,
) -> tuple[str, dict | PendingOrder]:
    """
    Submit an order now, or queue it when the server cannot be reached.

    Returns ("sent", response) or ("queued", PendingOrder); either way the
    (theater, source) cart passed in is cleared. Terminal rejections
    propagate as ApiError and leave the cart alone so it can annotate them.
    """
    body = dict(payload)
    body.setdefault("fingerprint", client.new_fingerprint())
    try:
        outcome = "sent", client.create_order(body, retry=False)
    except SessionExpired:
        raise
    except ApiError as exc:
        if not exc.transient:
            raise
        logger.info("server unreachable, queueing order: fingerprint=%s", body["fingerprint"])
        outcome = "queued", queue.enqueue(body, fingerprint=body["fingerprint"])
    if cart is not None:
        cart.clear()
    return outcome
