# Overview: Server-push consumer with reconnect backoff and a polling fallback.

"""
Broadcast consumer (device half).

Reads the theater's server-sent-events stream and hands each event to the
stock reservation view and any registered handlers.

- Delivery is at-least-once; events are deduped by id.
- A reconnect resumes from the highest id seen (Last-Event-ID).
- Stock deltas are versioned by event id, so a late or replayed delta
  never overwrites a newer balance.
- Polling without a seen id starts at the server's latest id instead of
  replaying retained history.
- Transport errors reconnect with exponential backoff.
- Once the stream has been unavailable for stream_fallback_after_seconds,
  the consumer polls /notifications/events every fallback_poll_seconds,
  still probing the stream before each poll.
- A rejected token stops the consumer with status session_expired.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque

import httpx

from .client import ApiError, FingerprintedClient, SessionExpired, error_from_response
from .storage import AUTH_TOKEN_KEY, sales_updated_key, stock_updated_key


logger = logging.getLogger(__name__)

EVENT_STOCK_DELTA = "stock.delta"
ORDER_EVENTS = ("order.created", "order.paid", "order.cancelled")

STATUS_CONNECTING = "connecting"
STATUS_STREAMING = "streaming"
STATUS_POLLING = "polling"
STATUS_SESSION_EXPIRED = "session_expired"
STATUS_STOPPED = "stopped"

SEEN_WINDOW = 1000


def parse_sse(lines):
    """Yield {"id", "event", "data"} for each complete frame; comments are skipped."""
    frame = {"id": None, "event": "message", "data": []}
    for raw in lines:
        line = raw.rstrip("\r")
        if line == "":
            if frame["data"]:
                yield {"id": frame["id"], "event": frame["event"], "data": "\n".join(frame["data"])}
            frame = {"id": None, "event": "message", "data": []}
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "id":
            frame["id"] = value
        elif name == "event":
            frame["event"] = value
        elif name == "data":
            frame["data"].append(value)
    if frame["data"]:
        yield {"id": frame["id"], "event": frame["event"], "data": "\n".join(frame["data"])}


class BroadcastClient:
    def __init__(self, client: FingerprintedClient, *, view=None, monotonic=time.monotonic):
        self.client = client
        self.config = client.config
        self.store = client.store
        self.view = view
        self.monotonic = monotonic
        self.handlers: dict[str, list] = {}
        self.last_event_id: int | None = None
        self.status = STATUS_CONNECTING
        self.failures = 0
        self.unavailable_since: float | None = None
        self._seen: set[int] = set()
        self._seen_order: deque = deque()

    def on(self, event_type: str, handler) -> None:
        self.handlers.setdefault(event_type, []).append(handler)

    # ---------------------------------------------------------------- dispatch

    def dispatch(self, event: dict) -> bool:
        """Apply one event. Returns False for a replayed id."""
        try:
            event_id = int(event["id"])
        except (KeyError, TypeError, ValueError):
            logger.warning("ignoring broadcast event without id: %r", event)
            return False
        if event_id in self._seen:
            return False
        self._seen.add(event_id)
        self._seen_order.append(event_id)
        if len(self._seen_order) > SEEN_WINDOW:
            self._seen.discard(self._seen_order.popleft())
        if self.last_event_id is None or event_id > self.last_event_id:
            self.last_event_id = event_id

        event_type = event.get("type")
        data = event.get("data") or {}
        theater_id = self.config.theater_id
        if event_type == EVENT_STOCK_DELTA:
            if self.view is not None:
                self.view.apply_stock_delta(data, event_id)
            self.store.touch_flag(stock_updated_key(theater_id))
        elif event_type in ORDER_EVENTS:
            self.store.touch_flag(sales_updated_key(theater_id))

        for handler in self.handlers.get(event_type, []) + self.handlers.get("*", []):
            handler(event)
        return True

    # ---------------------------------------------------------------- transports

    def consume_stream(self) -> int:
        """Read one stream response to its end. Returns the number of new events."""
        applied = 0
        try:
            with self.client.open_stream(self.last_event_id) as response:
                if response.status_code == 401:
                    self.store.delete(AUTH_TOKEN_KEY)
                    raise SessionExpired()
                if response.status_code >= 400:
                    response.read()
                    raise error_from_response(response)

                self.status = STATUS_STREAMING
                self.failures = 0
                self.unavailable_since = None
                for frame in parse_sse(response.iter_lines()):
                    try:
                        event = json.loads(frame["data"])
                    except ValueError:
                        logger.warning("ignoring malformed broadcast frame id=%s", frame["id"])
                        continue
                    if frame["id"] is not None:
                        event.setdefault("id", frame["id"])
                    if self.dispatch(event):
                        applied += 1
        except httpx.TransportError as exc:
            raise ApiError("transient", None, f"stream interrupted: {exc}") from exc
        return applied

    def poll_once(self) -> int:
        """
        Fetch and apply events after the last seen id. A consumer that has
        never seen an event only anchors at the server's latest id, since the
        product listing already covers everything before it.
        """
        if self.last_event_id is None:
            data = self.client.events_after(0, limit=1)
            self.last_event_id = int(data.get("latestEventId") or 0)
            return 0
        data = self.client.events_after(self.last_event_id)
        applied = 0
        for event in data.get("events") or []:
            if self.dispatch(event):
                applied += 1
        return applied

    # ---------------------------------------------------------------- loop

    def _stream_failed(self, exc: ApiError) -> float:
        now = self.monotonic()
        self.failures += 1
        if self.unavailable_since is None:
            self.unavailable_since = now
        if self.status != STATUS_POLLING and now - self.unavailable_since >= self.config.stream_fallback_after_seconds:
            logger.warning("broadcast stream unavailable, falling back to polling: %s", exc.message)
            self.status = STATUS_POLLING
        elif self.status != STATUS_POLLING:
            self.status = STATUS_CONNECTING
        return min(
            self.config.reconnect_cap_seconds,
            self.config.reconnect_base_seconds * (2 ** (self.failures - 1)),
        )

    def step(self) -> float | None:
        """
        One connect-or-poll cycle. Returns the delay before the next cycle,
        or None when the consumer must stop.
        """
        if self.status in (STATUS_SESSION_EXPIRED, STATUS_STOPPED):
            return None
        try:
            self.consume_stream()
            return 0.0
        except SessionExpired:
            self.status = STATUS_SESSION_EXPIRED
            logger.warning("broadcast stopped: session expired")
            return None
        except ApiError as exc:
            delay = self._stream_failed(exc)

        if self.status != STATUS_POLLING:
            return delay
        try:
            self.poll_once()
        except SessionExpired:
            self.status = STATUS_SESSION_EXPIRED
            logger.warning("broadcast stopped: session expired")
            return None
        except ApiError as exc:
            logger.info("broadcast poll failed: %s", exc.message)
        return self.config.fallback_poll_seconds

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            delay = await asyncio.to_thread(self.step)
            if delay is None:
                break
            if delay > 0:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        if self.status != STATUS_SESSION_EXPIRED:
            self.status = STATUS_STOPPED
