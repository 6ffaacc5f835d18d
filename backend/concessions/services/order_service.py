# Overview: Order state machine; create, pay, complete, cancel, refund, quarantine.

"""
Order lifecycle (authoritative)

    draft -> pending_payment -> paid -> completed
    pending_payment | paid | completed -> cancelled
    paid | completed -> refunded
    draft | pending_payment | paid -> sync_failed -> (recover) paid | pending_payment

- create() prices every line on the server, checks stock sufficiency for
  every product touched (combo components batched) and either stops in
  pending_payment (gateway methods) or goes straight to paid (cash, card).
- A fingerprint identifies one submission. A replay returns the stored order
  with existing=True and writes nothing.
- Stock is written only when an order becomes paid: one `sales` entry per
  (line, product). The state change, the entries and the broadcast rows
  share one transaction.
- Cancelling a paid/completed order writes `cancel` entries (restore) and
  needs refund or admin override; the chosen path is stored.
- A full refund restores stock the same way; partial refunds are money only.
- A ledger failure while applying stock quarantines the order in
  sync_failed (fresh transaction) and surfaces as `transient`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from flask import current_app
from sqlalchemy.exc import IntegrityError

from .. import units
from ..consumption import ComboSpec, ProductSpec, line_consumption, per_unit_consumption
from ..errors import (
    InsufficientStock,
    InvalidTransition,
    LedgerError,
    NotFound,
    PipelineError,
    TotalMismatch,
    TransientError,
    UnitError,
    ValidationFailed,
)
from ..extensions import db
from ..models import ComboOffer, Order, OrderItem, Product, Theater
from ..models.orders import (
    CANCEL_PATH_ADMIN_OVERRIDE,
    CANCEL_PATH_EXPIRED,
    CANCEL_PATH_REFUND,
    CANCEL_PATH_UNPAID,
    ORDER_SOURCES,
    ORDER_STATES,
    PAYMENT_INTENT_CREATED,
    PAYMENT_NONE,
    PAYMENT_REFUNDED,
    PAYMENT_VERIFIED,
    STATE_CANCELLED,
    STATE_COMPLETED,
    STATE_DRAFT,
    STATE_PAID,
    STATE_PENDING_PAYMENT,
    STATE_REFUNDED,
    STATE_SYNC_FAILED,
)
from ..models.stock import KIND_CANCEL, KIND_SALES, STOCK_SOURCE_CAFE
from ..pricing import LineTotals, money, normalize_gst_type, order_totals, price_line, totals_match
from ..time_utils import parse_iso_datetime, utcnow
from ..validation import OrderSubmission
from . import broadcast_service, catalog_service, stock_ledger_service
from .concurrency import lock_for_update, run_with_retry
from .payment_config_service import DIRECT_METHODS, GATEWAY_METHODS, PAYMENT_METHODS, accepted_methods
from .sequence_service import next_order_number


ALLOWED_TRANSITIONS = {
    STATE_DRAFT: {STATE_PENDING_PAYMENT, STATE_CANCELLED, STATE_SYNC_FAILED},
    STATE_PENDING_PAYMENT: {STATE_PAID, STATE_CANCELLED, STATE_SYNC_FAILED},
    STATE_PAID: {STATE_COMPLETED, STATE_CANCELLED, STATE_REFUNDED, STATE_SYNC_FAILED},
    STATE_COMPLETED: {STATE_CANCELLED, STATE_REFUNDED},
    STATE_SYNC_FAILED: {STATE_PAID, STATE_PENDING_PAYMENT, STATE_CANCELLED},
    STATE_CANCELLED: set(),
    STATE_REFUNDED: set(),
}


@dataclass
class PricedLine:
    index: int
    name: str
    quantity: int
    spec: ProductSpec | ComboSpec
    totals: LineTotals
    tax_rate: Decimal
    gst_type: str
    discount_percent: Decimal
    consumption: dict[int, Decimal]
    product_id: int | None = None
    combo_id: int | None = None
    component_consumption: dict | None = None


@dataclass
class CreateResult:
    order: Order
    existing: bool
    notes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = {"order": self.order.to_dict(), "existing": self.existing}
        if self.existing:
            data["kind"] = "duplicate"
        if self.notes:
            data["notes"] = list(self.notes)
        return data


# =============================================================================
# LOGGING
# =============================================================================

def _log_failure(action: str, exc: PipelineError, *, order_id=None, fingerprint=None, actor=None) -> None:
    current_app.logger.warning(
        "order %s failed: kind=%s order_id=%s fingerprint=%s actor=%s reason=%s",
        action,
        exc.kind,
        order_id,
        fingerprint,
        actor,
        exc.message,
    )


def _log_transition(order: Order, action: str) -> None:
    current_app.logger.info(
        "order %s: id=%s number=%s state=%s",
        action,
        order.id,
        order.order_number,
        order.state,
    )


def _actor(actor_user_id) -> str:
    return f"user:{actor_user_id}" if actor_user_id else "anonymous"


# =============================================================================
# STATE TRANSITIONS
# =============================================================================

def _transition(order: Order, new_state: str) -> None:
    if new_state not in ORDER_STATES:
        raise ValueError(f"unknown order state: {new_state!r}")
    if new_state not in ALLOWED_TRANSITIONS.get(order.state, set()):
        raise InvalidTransition(
            f"Order {order.order_number} cannot move from {order.state} to {new_state}",
            {"orderId": order.id, "from": order.state, "to": new_state},
        )
    order.state = new_state


def find_by_fingerprint(fingerprint: str) -> Order | None:
    return db.session.query(Order).filter_by(fingerprint=fingerprint).first()


def get_order(theater_id: int, order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if order is None or order.theater_id != theater_id:
        raise NotFound(f"Order {order_id} not found", {"orderId": order_id})
    return order


def _lock_order(order_id: int) -> Order:
    order = lock_for_update(db.session.query(Order).filter_by(id=order_id)).first()
    if order is None:
        raise NotFound(f"Order {order_id} not found", {"orderId": order_id})
    return order


# =============================================================================
# PRICING AND CONSUMPTION
# =============================================================================

def _price_product_line(theater_id: int, index: int, line) -> PricedLine:
    product = db.session.get(Product, line.product_id)
    if product is None or product.theater_id != theater_id:
        raise ValidationFailed(
            f"Unknown product {line.product_id}",
            {"itemIndex": index, "productId": line.product_id},
        )
    if not product.orderable:
        raise ValidationFailed(
            f"{product.name} is not available",
            {"itemIndex": index, "productId": product.id},
        )
    spec = catalog_service.product_spec(product)
    try:
        consumption = line_consumption(spec, line.quantity)
    except UnitError as exc:
        raise ValidationFailed(str(exc), {"itemIndex": index, "productId": product.id})
    totals = price_line(
        product.selling_price,
        line.quantity,
        tax_rate=product.tax_rate,
        gst_type=product.gst_type,
        discount_percent=product.discount_percent,
    )
    return PricedLine(
        index=index,
        name=product.name,
        quantity=line.quantity,
        spec=spec,
        totals=totals,
        tax_rate=Decimal(product.tax_rate or 0),
        gst_type=_gst_type(product.gst_type),
        discount_percent=Decimal(product.discount_percent or 0),
        consumption=consumption,
        product_id=product.id,
    )


def _price_combo_line(theater_id: int, index: int, line) -> PricedLine:
    combo = db.session.get(ComboOffer, line.combo_id)
    if combo is None or combo.theater_id != theater_id:
        raise ValidationFailed(
            f"Unknown combo {line.combo_id}",
            {"itemIndex": index, "comboId": line.combo_id},
        )
    if not combo.is_active:
        raise ValidationFailed(f"{combo.name} is not available", {"itemIndex": index, "comboId": combo.id})
    try:
        spec = catalog_service.combo_spec(combo)
    except ValidationFailed as exc:
        raise ValidationFailed(exc.message, {"itemIndex": index, **exc.details})
    unavailable = [c.product.product_id for c in spec.components if not c.product.orderable]
    if unavailable:
        raise ValidationFailed(
            f"{combo.name} contains unavailable products",
            {"itemIndex": index, "comboId": combo.id, "productIds": unavailable},
        )
    try:
        consumption = line_consumption(spec, line.quantity)
        per_combo_units: dict[int, Decimal] = {}
        stock_units = {}
        for c in spec.components:
            pid = c.product.product_id
            amount = per_unit_consumption(c.product) * c.per_combo_quantity
            per_combo_units[pid] = per_combo_units.get(pid, Decimal(0)) + amount
            stock_units[pid] = c.product.stock_unit
    except UnitError as exc:
        raise ValidationFailed(str(exc), {"itemIndex": index, "comboId": combo.id})
    per_combo = {
        str(pid): {"stockUnit": stock_units[pid], "perUnit": units.format_quantity(amount)}
        for pid, amount in per_combo_units.items()
    }
    totals = price_line(
        combo.offer_price,
        line.quantity,
        tax_rate=combo.tax_rate,
        gst_type=combo.gst_type,
        discount_percent=combo.discount_percent,
    )
    return PricedLine(
        index=index,
        name=combo.name,
        quantity=line.quantity,
        spec=spec,
        totals=totals,
        tax_rate=Decimal(combo.tax_rate or 0),
        gst_type=_gst_type(combo.gst_type),
        discount_percent=Decimal(combo.discount_percent or 0),
        consumption=consumption,
        combo_id=combo.id,
        component_consumption=per_combo,
    )


def _gst_type(raw: str) -> str:
    try:
        return normalize_gst_type(raw)
    except ValueError as exc:
        raise ValidationFailed(str(exc))


def price_submission(submission: OrderSubmission) -> list[PricedLine]:
    priced = []
    for index, line in enumerate(submission.items):
        if line.product_id is not None:
            priced.append(_price_product_line(submission.theater_id, index, line))
        else:
            priced.append(_price_combo_line(submission.theater_id, index, line))
    return priced


def required_stock(lines: list[PricedLine]) -> dict[int, Decimal]:
    """Consumption per product across all lines, combo components batched."""
    needs: dict[int, Decimal] = {}
    for line in lines:
        for pid, amount in line.consumption.items():
            needs[pid] = needs.get(pid, Decimal(0)) + amount
    return needs


def check_sufficiency(theater_id: int, needs: dict[int, Decimal]) -> dict[int, Decimal]:
    """Raise InsufficientStock listing every short product; return balances."""
    balances = stock_ledger_service.current_balances(theater_id, needs.keys(), stock_source=STOCK_SOURCE_CAFE)
    short = []
    for pid in sorted(needs):
        required = needs[pid]
        if required <= 0:
            continue
        available = balances[pid]
        if available < required:
            product = db.session.get(Product, pid)
            short.append(
                {
                    "productId": pid,
                    "name": product.name if product else None,
                    "required": units.format_quantity(required),
                    "available": units.format_quantity(available),
                    "stockUnit": product.stock_unit if product else None,
                }
            )
    if short:
        raise InsufficientStock("Insufficient stock", {"products": short})
    return balances


def _resolve_payment_method(submission: OrderSubmission) -> str:
    method = submission.payment_method
    if method not in PAYMENT_METHODS:
        raise ValidationFailed(
            f"paymentMethod must be one of {', '.join(PAYMENT_METHODS)}",
            {"paymentMethod": method},
        )
    allowed = accepted_methods(submission.theater_id, submission.source)
    if method not in allowed:
        raise ValidationFailed(
            f"{method} is not accepted on {submission.source}",
            {"paymentMethod": method, "acceptedMethods": allowed},
        )
    return method


def _line_items(lines: list[PricedLine]) -> list[OrderItem]:
    items = []
    for line in lines:
        is_product = line.product_id is not None
        per_unit = None
        if is_product:
            per_unit = line.consumption[line.product_id] / line.quantity
        items.append(
            OrderItem(
                item_index=line.index,
                product_id=line.product_id,
                combo_id=line.combo_id,
                name=line.name,
                quantity=line.quantity,
                unit_price=line.totals.unit_price,
                tax_rate=line.tax_rate,
                gst_type=line.gst_type,
                discount_percent=line.discount_percent,
                unit_price_after_discount=line.totals.unit_price_after_discount,
                taxable_amount=line.totals.taxable,
                tax_amount=line.totals.tax,
                cgst=line.totals.cgst,
                sgst=line.totals.sgst,
                line_total=line.totals.line_total,
                stock_unit=line.spec.stock_unit if is_product else None,
                per_unit_stock_consumption=per_unit,
                component_consumption=line.component_consumption,
            )
        )
    return items


# =============================================================================
# STOCK APPLICATION
# =============================================================================

def item_consumption(item: OrderItem) -> dict[int, Decimal]:
    """Consumption frozen on the row at placement, keyed by product id."""
    if item.product_id is not None:
        return {item.product_id: units.to_decimal(item.per_unit_stock_consumption) * item.quantity}
    result = {}
    for pid, frozen in (item.component_consumption or {}).items():
        result[int(pid)] = units.to_decimal(frozen["perUnit"]) * item.quantity
    return result


def order_consumption(order: Order) -> dict[int, Decimal]:
    needs: dict[int, Decimal] = {}
    for item in order.items:
        for pid, amount in item_consumption(item).items():
            needs[pid] = needs.get(pid, Decimal(0)) + amount
    return needs


def _write_stock_entries(order: Order, kind: str, *, moment: datetime, actor_user_id=None, months=None) -> None:
    touched = sorted(order_consumption(order))
    if months is None:
        months = stock_ledger_service.lock_months(order.theater_id, touched, at=moment)
    for item in order.items:
        for pid, amount in sorted(item_consumption(item).items()):
            if amount <= 0:
                continue
            stock_month = months[pid]
            stock_ledger_service.append_event(
                order.theater_id,
                pid,
                stock_ledger_service.StockEvent(
                    kind=kind,
                    quantity=amount,
                    unit=stock_month.stock_unit,
                    entry_date=moment,
                    note=f"order {order.order_number}",
                    order_id=order.id,
                    item_index=item.item_index,
                    created_by_user_id=actor_user_id,
                ),
                stock_month=stock_month,
            )
    for pid in touched:
        stock_month = months[pid]
        balance = stock_ledger_service.current_balance(order.theater_id, pid)
        broadcast_service.stock_delta(
            order.theater_id,
            pid,
            balance,
            stock_unit=stock_month.stock_unit,
            stock_source=STOCK_SOURCE_CAFE,
        )


def apply_payment(order: Order, *, method: str | None = None, actor_user_id=None, check_stock: bool = True) -> Order:
    """
    pending_payment -> paid, in the caller's transaction.

    Re-checks sufficiency under the month locks, writes one `sales` entry
    per (line, product), sets placed_at and queues order.paid and
    stock.delta broadcasts. Caller commits.
    """
    moment = utcnow()
    needs = order_consumption(order)
    months = stock_ledger_service.lock_months(order.theater_id, needs.keys(), at=moment)
    if check_stock:
        check_sufficiency(order.theater_id, needs)
    _transition(order, STATE_PAID)
    order.payment_status = PAYMENT_VERIFIED
    if method:
        order.payment_method = method
    order.paid_at = moment
    order.placed_at = moment
    if order.stock_applied_at is None:
        _write_stock_entries(order, KIND_SALES, moment=moment, actor_user_id=actor_user_id, months=months)
        order.stock_applied_at = moment
    db.session.flush()
    broadcast_service.order_paid(order)
    return order


def _restore_stock(order: Order, *, actor_user_id=None) -> bool:
    if order.stock_applied_at is None or order.stock_restored_at is not None:
        return False
    moment = utcnow()
    _write_stock_entries(order, KIND_CANCEL, moment=moment, actor_user_id=actor_user_id)
    order.stock_restored_at = moment
    return True


def quarantine(order_id: int, reason: str, *, actor=None) -> Order:
    """
    Move an order to sync_failed in its own transaction.

    Terminal orders cannot be quarantined; they only record the reason.
    """
    db.session.rollback()

    def _op():
        order = _lock_order(order_id)
        if order.state == STATE_SYNC_FAILED:
            return order
        if STATE_SYNC_FAILED not in ALLOWED_TRANSITIONS[order.state]:
            order.failure_reason = reason[:255]
            db.session.commit()
            return order
        previous = order.state
        _transition(order, STATE_SYNC_FAILED)
        order.state_before_failure = previous
        order.failure_reason = reason[:255]
        db.session.commit()
        return order

    order = run_with_retry(_op)
    current_app.logger.warning(
        "order quarantined: order_id=%s fingerprint=%s actor=%s reason=%s",
        order.id,
        order.fingerprint,
        actor,
        reason,
    )
    return order


def attach_payment(order: Order, *, method: str) -> Order:
    """Record that a gateway intent now exists for the order. Caller commits."""
    if order.state != STATE_PENDING_PAYMENT:
        raise InvalidTransition(
            f"Order {order.order_number} cannot take a payment intent in state {order.state}",
            {"orderId": order.id, "state": order.state},
        )
    order.payment_status = PAYMENT_INTENT_CREATED
    order.payment_method = method
    return order


def expire_unpaid(order: Order, *, reason: str = "payment intent expired") -> Order:
    """pending_payment -> cancelled after the intent timed out. Caller commits."""
    _transition(order, STATE_CANCELLED)
    order.cancelled_at = utcnow()
    order.cancel_reason = reason
    order.cancel_path = CANCEL_PATH_EXPIRED
    broadcast_service.order_cancelled(order)
    return order


# =============================================================================
# CREATE
# =============================================================================

def _build_order(submission: OrderSubmission, lines, totals, *, method: str, actor_user_id, totals_note) -> Order:
    theater = db.session.get(Theater, submission.theater_id)
    now = utcnow()
    order = Order(
        theater_id=theater.id,
        order_number=next_order_number(theater),
        fingerprint=submission.fingerprint,
        source=submission.source,
        customer_label=submission.customer_label,
        notes=submission.notes,
        state=STATE_DRAFT,
        payment_status=PAYMENT_NONE,
        payment_method=method,
        subtotal=totals.subtotal,
        discount_total=totals.discount,
        cart_discount=totals.cart_discount,
        tax_total=totals.tax,
        cgst=totals.cgst,
        sgst=totals.sgst,
        grand_total=totals.grand_total,
        client_total=submission.client_total,
        offline_queued=submission.offline_queued,
        totals_note=totals_note,
        created_by_user_id=actor_user_id,
        created_at=submission.client_created_at or now,
    )
    order.items = _line_items(lines)
    db.session.add(order)
    db.session.flush()
    return order


def _prepare(submission: OrderSubmission):
    if submission.source not in ORDER_SOURCES:
        raise ValidationFailed(f"unknown order source {submission.source!r}")
    theater = db.session.get(Theater, submission.theater_id)
    if theater is None or not theater.is_active:
        raise NotFound(f"Theater {submission.theater_id} not found", {"theaterId": submission.theater_id})
    method = _resolve_payment_method(submission)
    lines = price_submission(submission)
    try:
        totals = order_totals([line.totals for line in lines], submission.cart_discount)
    except ValueError as exc:
        raise ValidationFailed(str(exc))

    totals_note = None
    if submission.client_total is not None:
        tolerance = current_app.config.get("TOTAL_TOLERANCE", "0.01")
        if not totals_match(totals.grand_total, submission.client_total, tolerance):
            if not submission.offline_queued:
                raise TotalMismatch(
                    "Order total does not match",
                    {"serverTotals": totals.to_dict(), "clientTotal": str(submission.client_total)},
                )
            totals_note = (
                f"client total {submission.client_total} replaced by server total {totals.grand_total}"
            )
    return method, lines, totals, totals_note


def create_order(submission: OrderSubmission, *, actor_user_id: int | None = None) -> CreateResult:
    """
    Create an order from a validated submission (idempotent by fingerprint).

    Cash and card orders are paid on creation; upi/online orders wait in
    pending_payment for a gateway intent.
    """
    actor = _actor(actor_user_id)

    def _op(quarantine_reason: str | None = None) -> CreateResult:
        existing = find_by_fingerprint(submission.fingerprint)
        if existing is not None:
            if existing.theater_id != submission.theater_id:
                raise ValidationFailed(
                    "fingerprint already used by another theater",
                    {"fingerprint": submission.fingerprint},
                )
            return CreateResult(order=existing, existing=True)

        method, lines, totals, totals_note = _prepare(submission)
        check_sufficiency(submission.theater_id, required_stock(lines))

        order = _build_order(
            submission, lines, totals,
            method=method, actor_user_id=actor_user_id, totals_note=totals_note,
        )
        _transition(order, STATE_PENDING_PAYMENT)
        broadcast_service.order_created(order)

        if method in DIRECT_METHODS:
            if quarantine_reason:
                order.payment_status = PAYMENT_VERIFIED
                order.paid_at = utcnow()
                order.state_before_failure = STATE_PAID
                _transition(order, STATE_SYNC_FAILED)
                order.failure_reason = quarantine_reason[:255]
            else:
                apply_payment(order, method=method, actor_user_id=actor_user_id)

        db.session.commit()
        notes = [totals_note] if totals_note else []
        return CreateResult(order=order, existing=False, notes=notes)

    try:
        result = run_with_retry(_op)
    except IntegrityError:
        # Same fingerprint committed concurrently
        db.session.rollback()
        existing = find_by_fingerprint(submission.fingerprint)
        if existing is None:
            raise TransientError("Order could not be stored, please retry")
        return CreateResult(order=existing, existing=True)
    except LedgerError as exc:
        db.session.rollback()
        result = run_with_retry(lambda: _op(quarantine_reason=str(exc)))
        error = TransientError(
            "Order stored but stock could not be applied",
            {"orderId": result.order.id, "state": result.order.state},
        )
        _log_failure("create", error, order_id=result.order.id, fingerprint=submission.fingerprint, actor=actor)
        raise error from exc
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("create", exc, fingerprint=submission.fingerprint, actor=actor)
        raise

    if not result.existing:
        _log_transition(result.order, "created")
    return result


# =============================================================================
# LATER TRANSITIONS
# =============================================================================

def confirm_payment(theater_id: int, order_id: int, *, method: str | None = None, actor_user_id=None) -> Order:
    """pending_payment -> paid with stock application, committed."""
    actor = _actor(actor_user_id)

    def _op():
        order = _lock_order(order_id)
        if order.theater_id != theater_id:
            raise NotFound(f"Order {order_id} not found", {"orderId": order_id})
        if method is not None and method not in GATEWAY_METHODS + DIRECT_METHODS:
            raise ValidationFailed(f"unknown payment method {method!r}")
        apply_payment(order, method=method, actor_user_id=actor_user_id)
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except LedgerError as exc:
        quarantine(order_id, str(exc), actor=actor)
        raise TransientError("Payment recorded but stock could not be applied", {"orderId": order_id}) from exc
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("confirm_payment", exc, order_id=order_id, actor=actor)
        raise
    _log_transition(order, "paid")
    return order


def mark_completed(theater_id: int, order_id: int, *, actor_user_id=None) -> Order:
    actor = _actor(actor_user_id)

    def _op():
        order = _lock_order(order_id)
        if order.theater_id != theater_id:
            raise NotFound(f"Order {order_id} not found", {"orderId": order_id})
        _transition(order, STATE_COMPLETED)
        order.completed_at = utcnow()
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("complete", exc, order_id=order_id, actor=actor)
        raise
    _log_transition(order, "completed")
    return order


def cancel_order(
    theater_id: int,
    order_id: int,
    *,
    reason: str | None = None,
    refund: bool = False,
    admin_override: bool = False,
    actor_user_id=None,
) -> Order:
    """
    Cancel an order.

    Unpaid orders cancel freely. Paid/completed orders need refund=True or
    admin_override=True; stock consumed by the order is restored with
    `cancel` entries either way.
    """
    actor = _actor(actor_user_id)

    def _op():
        order = _lock_order(order_id)
        if order.theater_id != theater_id:
            raise NotFound(f"Order {order_id} not found", {"orderId": order_id})

        was_paid = order.state in (STATE_PAID, STATE_COMPLETED) or (
            order.state == STATE_SYNC_FAILED and order.payment_status == PAYMENT_VERIFIED
        )
        if was_paid and not (refund or admin_override):
            raise ValidationFailed(
                "Cancelling a paid order requires refund or adminOverride",
                {"orderId": order.id, "state": order.state},
            )

        _transition(order, STATE_CANCELLED)
        order.cancelled_at = utcnow()
        order.cancel_reason = (reason or "").strip()[:255] or None
        if was_paid:
            if refund:
                order.cancel_path = CANCEL_PATH_REFUND
                order.payment_status = PAYMENT_REFUNDED
                order.refunded_amount = order.grand_total
                order.refunded_at = order.cancelled_at
            else:
                order.cancel_path = CANCEL_PATH_ADMIN_OVERRIDE
        else:
            order.cancel_path = CANCEL_PATH_UNPAID

        _restore_stock(order, actor_user_id=actor_user_id)
        db.session.flush()
        broadcast_service.order_cancelled(order)
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except LedgerError as exc:
        quarantine(order_id, str(exc), actor=actor)
        raise TransientError("Cancellation could not restore stock", {"orderId": order_id}) from exc
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("cancel", exc, order_id=order_id, actor=actor)
        raise
    _log_transition(order, "cancelled")
    return order


def refund_order(theater_id: int, order_id: int, amount=None, *, actor_user_id=None) -> Order:
    """
    Refund part or all of a paid/completed order.

    The order becomes `refunded` once the cumulative refund reaches the
    grand total; that is also when its stock is restored.
    """
    actor = _actor(actor_user_id)

    def _op():
        order = _lock_order(order_id)
        if order.theater_id != theater_id:
            raise NotFound(f"Order {order_id} not found", {"orderId": order_id})
        if order.state not in (STATE_PAID, STATE_COMPLETED):
            raise InvalidTransition(
                f"Order {order.order_number} cannot be refunded from {order.state}",
                {"orderId": order.id, "from": order.state, "to": STATE_REFUNDED},
            )
        remaining = money(order.grand_total) - money(order.refunded_amount)
        try:
            refund_amount = remaining if amount is None else money(amount)
        except ValueError:
            raise ValidationFailed("amount must be a number")
        if refund_amount <= 0 or refund_amount > remaining:
            raise ValidationFailed(
                f"refund amount must be between 0.01 and {remaining}",
                {"orderId": order.id, "remaining": str(remaining)},
            )

        order.refunded_amount = money(order.refunded_amount) + refund_amount
        order.refunded_at = utcnow()
        if order.refunded_amount == money(order.grand_total):
            _transition(order, STATE_REFUNDED)
            order.payment_status = PAYMENT_REFUNDED
            _restore_stock(order, actor_user_id=actor_user_id)
        db.session.commit()
        return order

    try:
        order = run_with_retry(_op)
    except LedgerError as exc:
        quarantine(order_id, str(exc), actor=actor)
        raise TransientError("Refund could not restore stock", {"orderId": order_id}) from exc
    except PipelineError as exc:
        db.session.rollback()
        _log_failure("refund", exc, order_id=order_id, actor=actor)
        raise
    _log_transition(order, "refunded")
    return order


def recover_quarantined(order_id: int, *, actor_user_id=None) -> Order:
    """
    Return a sync_failed order to service.

    Verified payments go to paid and get their stock applied (no
    sufficiency check: the goods already left the counter); anything else
    goes back to pending_payment.
    """
    def _op():
        order = _lock_order(order_id)
        if order.state != STATE_SYNC_FAILED:
            raise InvalidTransition(
                f"Order {order.order_number} is not quarantined",
                {"orderId": order.id, "state": order.state},
            )
        if order.payment_status == PAYMENT_VERIFIED:
            apply_payment(order, actor_user_id=actor_user_id, check_stock=False)
        else:
            _transition(order, STATE_PENDING_PAYMENT)
        order.failure_reason = None
        order.state_before_failure = None
        db.session.commit()
        return order

    order = run_with_retry(_op)
    _log_transition(order, "recovered")
    return order


# =============================================================================
# READS
# =============================================================================

def list_orders(
    theater_id: int,
    *,
    status: str | None = None,
    source: str | None = None,
    fingerprint: str | None = None,
    date: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> dict:
    query = db.session.query(Order).filter(Order.theater_id == theater_id)
    if status:
        states = [s.strip() for s in status.split(",") if s.strip()]
        unknown = [s for s in states if s not in ORDER_STATES]
        if unknown:
            raise ValidationFailed(f"unknown status: {', '.join(unknown)}")
        query = query.filter(Order.state.in_(states))
    if source:
        if source not in ORDER_SOURCES:
            raise ValidationFailed(f"source must be one of {', '.join(ORDER_SOURCES)}")
        query = query.filter(Order.source == source)
    if fingerprint:
        fingerprints = [f.strip() for f in fingerprint.split(",") if f.strip()]
        query = query.filter(Order.fingerprint.in_(fingerprints))
    if date:
        try:
            day = parse_iso_datetime(date)
        except ValueError:
            raise ValidationFailed("date must be YYYY-MM-DD")
        if day is None:
            raise ValidationFailed("date must be YYYY-MM-DD")
        start = day.replace(hour=0, minute=0, second=0, microsecond=0)
        query = query.filter(Order.created_at >= start, Order.created_at < start + timedelta(days=1))

    page = max(page, 1)
    limit = min(max(limit, 1), 200)
    total = query.count()
    orders = (
        query.order_by(Order.created_at.desc(), Order.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )
    return {
        "orders": [o.to_dict() for o in orders],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


def receipt(order: Order) -> dict:
    """Receipt record in the shape the printer bridge accepts."""
    return {
        "orderNumber": order.order_number,
        "source": order.source,
        "customerName": order.customer_label,
        "paymentMethod": order.payment_method,
        "createdAt": order.to_dict(include_items=False)["created_at"],
        "items": [
            {
                "name": item.name,
                "quantity": item.quantity,
                "unitPrice": str(item.unit_price_after_discount),
                "taxRate": str(item.tax_rate),
                "lineTotal": str(item.line_total),
            }
            for item in order.items
        ],
        "totals": order.totals_dict(),
        "theaterInfo": order.theater.receipt_info(),
    }
