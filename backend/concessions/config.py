# backend/concessions/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///concessions.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Session tokens (bound to one theater and a role set)
    SESSION_TTL_HOURS = int(os.environ.get("SESSION_TTL_HOURS", "12"))

    # Payment gateway: "local" mints handles in-process, "razorpay" calls the API
    PAYMENT_GATEWAY = os.environ.get("PAYMENT_GATEWAY", "local")
    RAZORPAY_KEY_ID = os.environ.get("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET = os.environ.get("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_API_BASE = os.environ.get("RAZORPAY_API_BASE", "https://api.razorpay.com/v1")
    RAZORPAY_TIMEOUT_SECONDS = float(os.environ.get("RAZORPAY_TIMEOUT_SECONDS", "10"))
    PAYMENT_INTENT_TTL_SECONDS = int(os.environ.get("PAYMENT_INTENT_TTL_SECONDS", "900"))

    # Server-side totals may differ from client totals by at most this much
    TOTAL_TOLERANCE = "0.01"

    # Real-time broadcast
    BROADCAST_HEARTBEAT_SECONDS = float(os.environ.get("BROADCAST_HEARTBEAT_SECONDS", "20"))
    BROADCAST_POLL_INTERVAL_SECONDS = float(os.environ.get("BROADCAST_POLL_INTERVAL_SECONDS", "1.0"))
    BROADCAST_RETENTION_HOURS = int(os.environ.get("BROADCAST_RETENTION_HOURS", "48"))
    # A single stream response ends after this long; clients resume with Last-Event-ID
    BROADCAST_MAX_STREAM_SECONDS = float(os.environ.get("BROADCAST_MAX_STREAM_SECONDS", "300"))

    # Browser origins allowed by the CORS hook
    CORS_ALLOWED_ORIGINS = tuple(
        o.strip()
        for o in os.environ.get(
            "CORS_ALLOWED_ORIGINS",
            "http://localhost:5173,http://127.0.0.1:5173,http://localhost:4173,http://127.0.0.1:4173",
        ).split(",")
        if o.strip()
    )
