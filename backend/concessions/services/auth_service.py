# Overview: Service-layer operations for auth; staff and kiosk accounts.

"""
Authentication for staff and kiosk accounts.

Passwords are hashed with bcrypt (cost factor 12). A user belongs to one
theater, except super admins (theater_id NULL) who may act on any theater.
Session tokens are managed separately (see session_service.py).
"""

import re

import bcrypt

from ..errors import AuthError, NotFound, ValidationFailed
from ..extensions import db
from ..models import Theater, User
from ..models.auth import ROLE_SUPER_ADMIN, ROLES


MIN_PASSWORD_LENGTH = 8
_USERNAME_RE = re.compile(r"^[A-Za-z0-9_.@-]{3,64}$")


def validate_password_strength(password: str) -> None:
    """
    Minimum 8 characters with at least one letter and one digit.

    Raises ValidationFailed if requirements not met.
    """
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationFailed(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Za-z]", password):
        raise ValidationFailed("Password must contain at least one letter")
    if not re.search(r"\d", password):
        raise ValidationFailed("Password must contain at least one digit")


def hash_password(password: str) -> str:
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=12)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """bcrypt.checkpw is timing-safe; malformed hashes verify as False."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_user(
    username: str,
    password: str,
    roles: list[str],
    theater_id: int | None = None,
) -> User:
    """
    Create an account. Caller commits.

    Raises ValidationFailed on unknown roles, a taken username, a weak
    password, or a non-super-admin without a theater.
    """
    username = (username or "").strip()
    if not _USERNAME_RE.match(username):
        raise ValidationFailed("Username must be 3-64 characters of letters, digits or _.@-")

    roles = list(dict.fromkeys(roles or []))
    unknown = [r for r in roles if r not in ROLES]
    if unknown or not roles:
        raise ValidationFailed(
            f"roles must be a non-empty subset of {', '.join(ROLES)}",
            {"unknown": unknown},
        )

    if theater_id is None and ROLE_SUPER_ADMIN not in roles:
        raise ValidationFailed("theater_id is required for theater-scoped accounts")
    if theater_id is not None:
        theater = db.session.get(Theater, theater_id)
        if theater is None:
            raise NotFound(f"Theater {theater_id} not found", {"theaterId": theater_id})
        if not theater.is_active:
            raise ValidationFailed("Theater is not active")

    if db.session.query(User.id).filter_by(username=username).first() is not None:
        raise ValidationFailed("Username already exists", {"username": username})

    user = User(
        username=username,
        password_hash=hash_password(password),
        roles=roles,
        theater_id=theater_id,
        is_active=True,
    )
    db.session.add(user)
    db.session.flush()
    return user


def authenticate(username: str, password: str) -> User:
    """
    Check credentials. Raises AuthError with one generic message for every
    failure so the response does not reveal which part was wrong.
    """
    user = (
        db.session.query(User)
        .filter(User.username == (username or "").strip(), User.is_active.is_(True))
        .first()
    )
    if user is None or not verify_password(password, user.password_hash):
        raise AuthError("Invalid username or password")
    if user.theater_id is not None and (user.theater is None or not user.theater.is_active):
        raise AuthError("Invalid username or password")
    return user
