# backend/concessions/routes/notifications.py
"""
Real-time broadcast routes.

/stream is a server-sent-events channel scoped to the session's theater.
Each event carries its id; clients resume by sending it back as
Last-Event-ID (or ?after=). One response lasts at most
BROADCAST_MAX_STREAM_SECONDS, then the client reconnects.

/events is the polling fallback and returns the same payloads.
"""

from flask import Blueprint, Response, current_app, g, jsonify, request, stream_with_context

from ..decorators import ensure_theater_access, require_auth, require_stream_auth
from ..errors import ValidationFailed
from ..services import broadcast_service


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


def _theater_id() -> int:
    theater_id = request.args.get("theaterId", type=int)
    if theater_id is None:
        theater_id = g.theater_id
    if theater_id is None:
        raise ValidationFailed("theaterId is required", {"field": "theaterId"})
    ensure_theater_access(theater_id)
    return theater_id


def _resume_token() -> int | None:
    raw = request.headers.get("Last-Event-ID") or request.args.get("after")
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError:
        raise ValidationFailed("Last-Event-ID must be an integer event id")
    return max(value, 0)


@notifications_bp.get("/stream")
@require_stream_auth
def stream_route():
    theater_id = _theater_id()
    last_event_id = _resume_token()
    config = current_app.config
    current_app.logger.info(
        "broadcast stream opened: theater_id=%s user_id=%s resume=%s",
        theater_id,
        g.current_user.id,
        last_event_id,
    )
    frames = broadcast_service.iter_stream(
        theater_id,
        last_event_id=last_event_id,
        heartbeat_seconds=config["BROADCAST_HEARTBEAT_SECONDS"],
        poll_interval=config["BROADCAST_POLL_INTERVAL_SECONDS"],
        max_seconds=config["BROADCAST_MAX_STREAM_SECONDS"],
    )
    return Response(
        stream_with_context(frames),
        mimetype="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@notifications_bp.get("/events")
@require_auth
def events_route():
    """Events after ?after=<id> (default 0), oldest first, at most ?limit."""
    theater_id = _theater_id()
    after = _resume_token() or 0
    limit = min(max(request.args.get("limit", broadcast_service.DEFAULT_BATCH, type=int), 1), 500)
    events = broadcast_service.events_after(theater_id, after, limit=limit)
    return jsonify({
        "events": [e.to_dict() for e in events],
        "lastEventId": events[-1].id if events else after,
        "latestEventId": broadcast_service.latest_event_id(theater_id),
    }), 200
