from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z
from ..units import format_quantity


SOURCE_ONLINE_POS = "online-pos"
SOURCE_OFFLINE_POS = "offline-pos"
SOURCE_KIOSK = "kiosk"
ORDER_SOURCES = (SOURCE_ONLINE_POS, SOURCE_OFFLINE_POS, SOURCE_KIOSK)

STATE_DRAFT = "draft"
STATE_PENDING_PAYMENT = "pending_payment"
STATE_PAID = "paid"
STATE_COMPLETED = "completed"
STATE_CANCELLED = "cancelled"
STATE_REFUNDED = "refunded"
STATE_SYNC_FAILED = "sync_failed"
ORDER_STATES = (
    STATE_DRAFT,
    STATE_PENDING_PAYMENT,
    STATE_PAID,
    STATE_COMPLETED,
    STATE_CANCELLED,
    STATE_REFUNDED,
    STATE_SYNC_FAILED,
)
TERMINAL_STATES = (STATE_COMPLETED, STATE_CANCELLED, STATE_REFUNDED)

PAYMENT_NONE = "none"
PAYMENT_INTENT_CREATED = "intent_created"
PAYMENT_IN_GATEWAY = "in_gateway"
PAYMENT_VERIFIED = "verified"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"
PAYMENT_STATES = (
    PAYMENT_NONE,
    PAYMENT_INTENT_CREATED,
    PAYMENT_IN_GATEWAY,
    PAYMENT_VERIFIED,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
)

CANCEL_PATH_UNPAID = "unpaid"
CANCEL_PATH_REFUND = "refund"
CANCEL_PATH_ADMIN_OVERRIDE = "admin_override"
CANCEL_PATH_EXPIRED = "intent_expired"


class Order(db.Model):
    """
    Concessions order.

    LIFECYCLE: draft -> pending_payment -> paid -> completed
               pending_payment | paid | completed -> cancelled
               paid | completed -> refunded
               any non-terminal -> sync_failed (quarantine)

    The fingerprint is chosen by the client; a replay with the same
    fingerprint returns this row instead of creating another.

    stock_applied_at is set in the same transaction that writes the
    order's `sales` entries. A paid order with stock_applied_at NULL is
    waiting for its stock to be applied.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("fingerprint", name="uq_orders_fingerprint"),
        db.UniqueConstraint("theater_id", "order_number", name="uq_orders_theater_number"),
        db.Index("ix_orders_theater_state_created", "theater_id", "state", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False, index=True)
    order_number = db.Column(db.String(32), nullable=False)
    fingerprint = db.Column(db.String(128), nullable=False)
    source = db.Column(db.String(16), nullable=False, index=True)
    customer_label = db.Column(db.String(120), nullable=False)
    notes = db.Column(db.Text, nullable=True)

    state = db.Column(db.String(16), nullable=False, default=STATE_DRAFT, index=True)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_NONE)
    payment_method = db.Column(db.String(16), nullable=False, default="cash")

    # Server-computed totals (authoritative)
    subtotal = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    discount_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cart_discount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    tax_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cgst = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    sgst = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    grand_total = db.Column(db.Numeric(12, 2), nullable=False, default=0)

    # Client-submitted total and queue provenance
    client_total = db.Column(db.Numeric(12, 2), nullable=True)
    offline_queued = db.Column(db.Boolean, nullable=False, default=False)
    totals_note = db.Column(db.String(255), nullable=True)

    refunded_amount = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    cancel_reason = db.Column(db.String(255), nullable=True)
    cancel_path = db.Column(db.String(16), nullable=True)
    failure_reason = db.Column(db.String(255), nullable=True)
    state_before_failure = db.Column(db.String(16), nullable=True)

    created_by_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False)
    placed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    refunded_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_applied_at = db.Column(db.DateTime(timezone=True), nullable=True)
    stock_restored_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    theater = db.relationship("Theater", backref=db.backref("orders", lazy=True))
    items = db.relationship(
        "OrderItem",
        backref="order",
        lazy=True,
        order_by="OrderItem.item_index",
        cascade="all, delete-orphan",
    )
    __mapper_args__ = {"version_id_col": version_id}

    def totals_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "discount": str(self.discount_total),
            "cartDiscount": str(self.cart_discount),
            "tax": str(self.tax_total),
            "cgst": str(self.cgst),
            "sgst": str(self.sgst),
            "grandTotal": str(self.grand_total),
        }

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "theater_id": self.theater_id,
            "order_number": self.order_number,
            "fingerprint": self.fingerprint,
            "source": self.source,
            "customer_label": self.customer_label,
            "notes": self.notes,
            "state": self.state,
            "payment": {
                "status": self.payment_status,
                "method": self.payment_method,
                "refunded_amount": str(self.refunded_amount),
            },
            "totals": self.totals_dict(),
            "client_total": str(self.client_total) if self.client_total is not None else None,
            "offline_queued": self.offline_queued,
            "totals_note": self.totals_note,
            "cancel_reason": self.cancel_reason,
            "cancel_path": self.cancel_path,
            "failure_reason": self.failure_reason,
            "created_by_user_id": self.created_by_user_id,
            "created_at": to_utc_z(self.created_at),
            "placed_at": to_utc_z(self.placed_at),
            "paid_at": to_utc_z(self.paid_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "refunded_at": to_utc_z(self.refunded_at),
            "stock_applied": self.stock_applied_at is not None,
            "version_id": self.version_id,
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class OrderItem(db.Model):
    """
    One order line: a product or a combo, never both.

    Price, tax and the per-unit stock consumption are captured when the
    order is placed and frozen on the row; later catalog edits do not
    change what the order consumed or cost.
    """
    __tablename__ = "order_items"
    __table_args__ = (
        db.UniqueConstraint("order_id", "item_index", name="uq_order_items_index"),
        db.CheckConstraint(
            "(product_id IS NULL) <> (combo_id IS NULL)",
            name="ck_order_items_product_xor_combo",
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    item_index = db.Column(db.Integer, nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True, index=True)
    combo_id = db.Column(db.Integer, db.ForeignKey("combo_offers.id"), nullable=True, index=True)
    name = db.Column(db.String(200), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False)
    tax_rate = db.Column(db.Numeric(5, 2), nullable=False, default=0)
    gst_type = db.Column(db.String(16), nullable=False)
    discount_percent = db.Column(db.Numeric(5, 2), nullable=False, default=0)

    unit_price_after_discount = db.Column(db.Numeric(12, 2), nullable=False)
    taxable_amount = db.Column(db.Numeric(12, 2), nullable=False)
    tax_amount = db.Column(db.Numeric(12, 2), nullable=False)
    cgst = db.Column(db.Numeric(12, 2), nullable=False)
    sgst = db.Column(db.Numeric(12, 2), nullable=False)
    line_total = db.Column(db.Numeric(12, 2), nullable=False)

    # Plain products: the product's stock unit and per-unit consumption.
    # Combos: stock_unit is NULL; component_consumption maps each component
    # product id to {"stockUnit", "perUnit"} for one combo sold.
    stock_unit = db.Column(db.String(8), nullable=True)
    per_unit_stock_consumption = db.Column(db.Numeric(18, 6), nullable=True)
    component_consumption = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "item_index": self.item_index,
            "product_id": self.product_id,
            "combo_id": self.combo_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": str(self.unit_price),
            "tax_rate": str(self.tax_rate),
            "gst_type": self.gst_type,
            "discount_percent": str(self.discount_percent),
            "unit_price_after_discount": str(self.unit_price_after_discount),
            "taxable_amount": str(self.taxable_amount),
            "tax_amount": str(self.tax_amount),
            "cgst": str(self.cgst),
            "sgst": str(self.sgst),
            "line_total": str(self.line_total),
            "stock_unit": self.stock_unit,
            "per_unit_stock_consumption": (
                format_quantity(self.per_unit_stock_consumption)
                if self.per_unit_stock_consumption is not None
                else None
            ),
            "component_consumption": self.component_consumption,
        }


class OrderSequence(db.Model):
    """
    Per-theater order number counter.

    Allocation increments next_value with a single UPDATE in the caller's
    transaction, so a rolled back order does not burn a number.
    """
    __tablename__ = "order_sequences"
    __table_args__ = (
        db.UniqueConstraint("theater_id", name="uq_order_sequences_theater"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    theater_id = db.Column(db.Integer, db.ForeignKey("theaters.id"), nullable=False)
    prefix = db.Column(db.String(8), nullable=False)
    next_value = db.Column(db.Integer, nullable=False, default=1)
