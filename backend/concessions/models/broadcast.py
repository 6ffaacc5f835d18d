from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


EVENT_ORDER_CREATED = "order.created"
EVENT_ORDER_PAID = "order.paid"
EVENT_ORDER_CANCELLED = "order.cancelled"
EVENT_STOCK_DELTA = "stock.delta"
EVENT_TYPES = (EVENT_ORDER_CREATED, EVENT_ORDER_PAID, EVENT_ORDER_CANCELLED, EVENT_STOCK_DELTA)


class BroadcastEvent(db.Model):
    """
    Theater-scoped push event.

    Rows are written in the same transaction as the order transition that
    caused them; the stream tails this table by id, and the id doubles as
    the client's resume token.
    """
    __tablename__ = "broadcast_events"
    __table_args__ = (
        db.Index("ix_broadcast_events_theater_id", "theater_id", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False)
    event_type = db.Column(db.String(32), nullable=False)
    payload = db.Column(db.JSON, nullable=False, default=dict)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.event_type,
            "theater_id": self.theater_id,
            "data": self.payload,
            "created_at": to_utc_z(self.created_at),
        }
