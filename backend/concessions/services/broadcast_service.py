# Overview: Theater-scoped push events; outbox rows, SSE framing, polling reads, pruning.

"""
Real-time broadcast (server half).

publish() only adds a BroadcastEvent row to the current session; it becomes
visible when the caller's transaction commits, together with the order
transition that caused it. A rolled back transition broadcasts nothing.

The stream tails broadcast_events by id. Event ids are the resume token:
a reconnecting client sends Last-Event-ID and receives every later event
(at-least-once; clients dedupe by id).
"""

from __future__ import annotations

import json
import time
from datetime import timedelta

from ..extensions import db
from ..models import BroadcastEvent
from ..models.broadcast import (
    EVENT_ORDER_CANCELLED,
    EVENT_ORDER_CREATED,
    EVENT_ORDER_PAID,
    EVENT_STOCK_DELTA,
    EVENT_TYPES,
)
from ..time_utils import utcnow
from ..units import format_quantity


DEFAULT_BATCH = 200


def publish(theater_id: int, event_type: str, payload: dict) -> BroadcastEvent:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown broadcast event type: {event_type!r}")
    event = BroadcastEvent(
        theater_id=theater_id,
        event_type=event_type,
        payload=payload,
        created_at=utcnow(),
    )
    db.session.add(event)
    return event


def _order_payload(order) -> dict:
    return {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "state": order.state,
        "source": order.source,
        "grandTotal": str(order.grand_total),
    }


def order_event(order, event_type: str) -> BroadcastEvent:
    return publish(order.theater_id, event_type, _order_payload(order))


def order_created(order) -> BroadcastEvent:
    return order_event(order, EVENT_ORDER_CREATED)


def order_paid(order) -> BroadcastEvent:
    return order_event(order, EVENT_ORDER_PAID)


def order_cancelled(order) -> BroadcastEvent:
    return order_event(order, EVENT_ORDER_CANCELLED)


def stock_delta(theater_id: int, product_id: int, new_balance, *, stock_unit: str, stock_source: str) -> BroadcastEvent:
    return publish(
        theater_id,
        EVENT_STOCK_DELTA,
        {
            "productId": product_id,
            "newBalance": format_quantity(new_balance),
            "stockUnit": stock_unit,
            "stockSource": stock_source,
        },
    )


def events_after(theater_id: int, after_id: int = 0, *, limit: int = DEFAULT_BATCH) -> list[BroadcastEvent]:
    return (
        db.session.query(BroadcastEvent)
        .filter(BroadcastEvent.theater_id == theater_id, BroadcastEvent.id > after_id)
        .order_by(BroadcastEvent.id.asc())
        .limit(limit)
        .all()
    )


def latest_event_id(theater_id: int) -> int:
    latest = (
        db.session.query(BroadcastEvent.id)
        .filter(BroadcastEvent.theater_id == theater_id)
        .order_by(BroadcastEvent.id.desc())
        .first()
    )
    return latest[0] if latest else 0


def format_sse(event: BroadcastEvent) -> str:
    data = json.dumps(event.to_dict(), separators=(",", ":"))
    return f"id: {event.id}\nevent: {event.event_type}\ndata: {data}\n\n"


def iter_stream(
    theater_id: int,
    *,
    last_event_id: int | None,
    heartbeat_seconds: float,
    poll_interval: float,
    max_seconds: float | None = None,
    clock=time.monotonic,
    sleep=time.sleep,
):
    """
    Yield SSE frames for one theater until max_seconds elapses.

    Without a resume token the stream starts at the newest event, so a
    fresh client only sees what happens after it connected.
    """
    cursor = last_event_id if last_event_id is not None else latest_event_id(theater_id)
    # End the read transaction so later polls see new commits
    db.session.rollback()

    started = clock()
    last_sent = started
    yield "retry: 3000\n\n"
    while True:
        events = events_after(theater_id, cursor)
        db.session.rollback()
        for event in events:
            cursor = event.id
            last_sent = clock()
            yield format_sse(event)

        now = clock()
        if max_seconds is not None and now - started >= max_seconds:
            return
        if now - last_sent >= heartbeat_seconds:
            last_sent = now
            yield ": keep-alive\n\n"
        if not events:
            sleep(poll_interval)


def prune(older_than_hours: int) -> int:
    """Delete events older than the retention window. Caller commits."""
    cutoff = utcnow() - timedelta(hours=older_than_hours)
    return (
        db.session.query(BroadcastEvent)
        .filter(BroadcastEvent.created_at < cutoff)
        .delete(synchronize_session=False)
    )
