from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


ROLE_SUPER_ADMIN = "super_admin"
ROLE_THEATER_ADMIN = "theater_admin"
ROLE_MANAGER = "manager"
ROLE_CASHIER = "cashier"
ROLE_KIOSK = "kiosk"

ROLES = (ROLE_SUPER_ADMIN, ROLE_THEATER_ADMIN, ROLE_MANAGER, ROLE_CASHIER, ROLE_KIOSK)


class User(db.Model):
    """
    Staff or kiosk account.

    theater_id is NULL only for super admins, who may act on any theater.
    """
    __tablename__ = "users"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=True, index=True)
    username = db.Column(db.String(64), nullable=False, unique=True, index=True)
    password_hash = db.Column(db.String(255), nullable=False)
    roles = db.Column(db.JSON, nullable=False, default=list)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    theater = db.relationship("Theater", backref=db.backref("users", lazy=True))

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "theater_id": self.theater_id,
            "username": self.username,
            "roles": list(self.roles or []),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class SessionToken(db.Model):
    """
    Opaque bearer token bound to one theater and a role set.

    Only the SHA-256 of the token is stored.
    """
    __tablename__ = "session_tokens"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=True, index=True)
    roles = db.Column(db.JSON, nullable=False, default=list)
    token_hash = db.Column(db.String(64), nullable=False, unique=True, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False)
    is_revoked = db.Column(db.Boolean, nullable=False, default=False)
    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship("User", backref=db.backref("sessions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "theater_id": self.theater_id,
            "roles": list(self.roles or []),
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "is_revoked": self.is_revoked,
        }


# Role sets used by route guards; super_admin passes every guard
ADMIN_ROLES = (ROLE_THEATER_ADMIN, ROLE_MANAGER)
STAFF_ROLES = (ROLE_THEATER_ADMIN, ROLE_MANAGER, ROLE_CASHIER)
ORDERING_ROLES = STAFF_ROLES + (ROLE_KIOSK,)
