from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


CHANNEL_ONLINE_POS = "online-pos"
CHANNEL_OFFLINE_POS = "offline-pos"
CHANNEL_KIOSK = "kiosk"
CHANNELS = (CHANNEL_ONLINE_POS, CHANNEL_OFFLINE_POS, CHANNEL_KIOSK)


class Theater(db.Model):
    """
    A theater (one concessions counter set).

    Everything the order pipeline owns is scoped to one theater: products,
    stock months, orders, payment config, broadcast events and sessions.
    """
    __tablename__ = "theaters"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    code = db.Column(db.String(32), nullable=True, unique=True, index=True)
    address = db.Column(db.String(255), nullable=True)
    phone = db.Column(db.String(32), nullable=True)
    gstin = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Theater id={self.id} name={self.name!r}>"

    @property
    def order_prefix(self) -> str:
        name = (self.name or "").strip()
        if len(name) >= 2:
            return name[:2].upper()
        if len(name) == 1:
            return (name + name).upper()
        return "OR"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "address": self.address,
            "phone": self.phone,
            "gstin": self.gstin,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }

    def receipt_info(self) -> dict:
        return {
            "name": self.name,
            "address": self.address,
            "phone": self.phone,
            "gstin": self.gstin,
        }


class TheaterPaymentConfig(db.Model):
    """
    Per-theater, per-channel payment settings.

    The gateway secret never leaves the server; to_dict() exposes the
    public key id only.
    """
    __tablename__ = "theater_payment_configs"
    __table_args__ = (
        db.UniqueConstraint("theater_id", "channel", name="uq_payment_config_theater_channel"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    channel = db.Column(db.String(16), nullable=False)
    provider = db.Column(db.String(32), nullable=False, default="razorpay")
    gateway_enabled = db.Column(db.Boolean, nullable=False, default=False)
    key_id = db.Column(db.String(128), nullable=True)
    key_secret = db.Column(db.String(255), nullable=True)
    accepted_methods = db.Column(db.JSON, nullable=False, default=list)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    theater = db.relationship("Theater", backref=db.backref("payment_configs", lazy=True))

    def to_dict(self) -> dict:
        return {
            "theater_id": self.theater_id,
            "channel": self.channel,
            "provider": self.provider,
            "gateway_enabled": self.gateway_enabled,
            "key_id": self.key_id,
            "accepted_methods": list(self.accepted_methods or []),
        }
