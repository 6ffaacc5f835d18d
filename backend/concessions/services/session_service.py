# Overview: Service-layer operations for session; bearer tokens bound to a theater and roles.

"""
Session tokens.

Tokens are 32 random bytes (hex) handed to the client once; only the
SHA-256 is stored. The theater and role set are captured when the session
is created and do not change for its lifetime.
"""

import hashlib
import secrets
from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..errors import AuthError
from ..extensions import db
from ..models import SessionToken, User
from ..time_utils import utcnow


@dataclass
class SessionContext:
    user: User
    session: SessionToken
    theater_id: int | None
    roles: list[str]


def generate_token() -> str:
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _ttl() -> timedelta:
    return timedelta(hours=int(current_app.config.get("SESSION_TTL_HOURS", 12)))


def create_session(user: User) -> tuple[SessionToken, str]:
    """
    Returns (session_record, plaintext_token). Caller commits.
    """
    plaintext = generate_token()
    now = utcnow()
    session = SessionToken(
        user_id=user.id,
        theater_id=user.theater_id,
        roles=list(user.roles or []),
        token_hash=hash_token(plaintext),
        created_at=now,
        last_used_at=now,
        expires_at=now + _ttl(),
        is_revoked=False,
    )
    db.session.add(session)
    db.session.flush()
    return session, plaintext


def validate_session(token: str) -> SessionContext:
    """
    Resolve a bearer token. Raises AuthError when the token is unknown,
    revoked or expired, or its user was deactivated.
    """
    if not token:
        raise AuthError("Authentication required")
    session = (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )
    if session is None:
        raise AuthError("Invalid or expired token")

    now = utcnow()
    if session.expires_at.replace(tzinfo=None) <= now:
        raise AuthError("Invalid or expired token")

    user = session.user
    if user is None or not user.is_active:
        session.is_revoked = True
        session.revoked_at = now
        db.session.commit()
        raise AuthError("Invalid or expired token")

    session.last_used_at = now
    db.session.commit()
    return SessionContext(
        user=user,
        session=session,
        theater_id=session.theater_id,
        roles=list(session.roles or []),
    )


def revoke_session(token: str) -> bool:
    """Returns True if a live session was revoked. Caller commits."""
    session = (
        db.session.query(SessionToken)
        .filter_by(token_hash=hash_token(token), is_revoked=False)
        .first()
    )
    if session is None:
        return False
    session.is_revoked = True
    session.revoked_at = utcnow()
    return True


def cleanup_expired_sessions(older_than_days: int = 30) -> int:
    """Delete expired or revoked sessions created before the cutoff."""
    cutoff = utcnow() - timedelta(days=older_than_days)
    deleted = (
        db.session.query(SessionToken)
        .filter(
            db.or_(SessionToken.expires_at < utcnow(), SessionToken.is_revoked.is_(True)),
            SessionToken.created_at < cutoff,
        )
        .delete(synchronize_session=False)
    )
    db.session.commit()
    return deleted
