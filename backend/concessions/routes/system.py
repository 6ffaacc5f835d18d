# backend/concessions/routes/system.py
"""
System health and version endpoints.
"""

import sys
import time

from flask import Blueprint, current_app

from ..extensions import db
from ..models import BroadcastEvent, Order, SessionToken, Theater
from ..models.orders import STATE_PENDING_PAYMENT, STATE_SYNC_FAILED
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        theater_count = db.session.query(Theater).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"theaters": theater_count},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error",
        }


def check_pipeline_health() -> dict:
    """
    Quarantined orders and pending payments past their window mean a
    sweeper or recovery job is not running.
    """
    start_time = time.time()
    try:
        quarantined = db.session.query(Order).filter(Order.state == STATE_SYNC_FAILED).count()
        pending = db.session.query(Order).filter(Order.state == STATE_PENDING_PAYMENT).count()
        active_sessions = db.session.query(SessionToken).filter(
            SessionToken.is_revoked.is_(False),
            SessionToken.expires_at > utcnow(),
        ).count()
        latest_event = db.session.query(db.func.max(BroadcastEvent.id)).scalar() or 0
        elapsed_ms = (time.time() - start_time) * 1000
        details = {
            "quarantined_orders": quarantined,
            "pending_payment_orders": pending,
            "active_sessions": active_sessions,
            "latest_event_id": latest_event,
        }
        if quarantined:
            return {
                "status": "degraded",
                "latency_ms": round(elapsed_ms, 2),
                "warning": f"{quarantined} order(s) in sync_failed",
                "details": details,
            }
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2), "details": details}
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Pipeline health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Pipeline check error",
        }


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded
    - 503: one or more checks unhealthy
    """
    start_time = time.time()
    database_health = check_database_health()
    pipeline_health = check_pipeline_health()

    all_checks = [database_health, pipeline_health]
    if any(check["status"] == "unhealthy" for check in all_checks):
        overall_status, http_status = "unhealthy", 503
    elif any(check["status"] == "degraded" for check in all_checks):
        overall_status, http_status = "degraded", 200
    else:
        overall_status, http_status = "healthy", 200

    return {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round((time.time() - start_time) * 1000, 2),
        "checks": {
            "database": database_health,
            "pipeline": pipeline_health,
        },
    }, http_status


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"
    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
