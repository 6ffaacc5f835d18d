from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


INTENT_CREATED = "created"
INTENT_VERIFIED = "verified"
INTENT_FAILED = "failed"
INTENT_EXPIRED = "expired"


class PaymentIntent(db.Model):
    """
    Gateway intent tied 1:1 to an order in pending_payment.

    The intent is created once per order; repeated create calls return this
    row. payment_id/signature of the last successful verification are kept
    so a replayed verification returns the cached result.
    """
    __tablename__ = "payment_intents"
    __table_args__ = (
        db.UniqueConstraint("order_id", name="uq_payment_intents_order"),
        db.UniqueConstraint("gateway_order_id", name="uq_payment_intents_handle"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    channel = db.Column(db.String(16), nullable=False)
    method = db.Column(db.String(16), nullable=False)
    provider = db.Column(db.String(32), nullable=False)
    gateway_order_id = db.Column(db.String(64), nullable=False)
    key_id = db.Column(db.String(128), nullable=True)
    amount = db.Column(db.Numeric(12, 2), nullable=False)
    currency = db.Column(db.String(3), nullable=False, default="INR")
    status = db.Column(db.String(16), nullable=False, default=INTENT_CREATED, index=True)

    payment_id = db.Column(db.String(64), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    expires_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    verified_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    order = db.relationship("Order", backref=db.backref("payment_intent", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "channel": self.channel,
            "method": self.method,
            "provider": self.provider,
            "intent_handle": self.gateway_order_id,
            "key_id": self.key_id,
            "amount": str(self.amount),
            "amount_paise": int(self.amount * 100),
            "currency": self.currency,
            "status": self.status,
            "attempts": self.attempts,
            "failure_reason": self.failure_reason,
            "created_at": to_utc_z(self.created_at),
            "expires_at": to_utc_z(self.expires_at),
            "verified_at": to_utc_z(self.verified_at),
        }


class PaymentAttempt(db.Model):
    """
    Append-only log of verification attempts against an intent.

    Signatures are never stored; only whether they matched.
    """
    __tablename__ = "payment_attempts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    intent_id = db.Column(db.Integer, db.ForeignKey("payment_intents.id"), nullable=False, index=True)
    payment_id = db.Column(db.String(64), nullable=True)
    outcome = db.Column(db.String(16), nullable=False)
    reason = db.Column(db.String(255), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False)

    intent = db.relationship("PaymentIntent", backref=db.backref("attempt_log", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "intent_id": self.intent_id,
            "payment_id": self.payment_id,
            "outcome": self.outcome,
            "reason": self.reason,
            "occurred_at": to_utc_z(self.occurred_at),
        }
