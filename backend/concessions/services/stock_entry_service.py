# Overview: Operator stock entries (receipts, adjustments, write-offs, transfers).

from __future__ import annotations

from decimal import Decimal, InvalidOperation

from flask import current_app

from ..errors import LedgerError, PipelineError, UnitError, ValidationFailed
from ..extensions import db
from ..models.stock import (
    KIND_ADDON,
    KIND_ADJUSTMENT,
    KIND_DAMAGE,
    KIND_DIRECT,
    KIND_EXPIRED,
    KIND_INVORD,
    KIND_OPENING,
    KIND_TRANSFER,
    STOCK_SOURCE_CAFE,
    STOCK_SOURCE_THEATER,
    STOCK_SOURCES,
)
from ..time_utils import parse_iso_datetime, utcnow
from . import broadcast_service, catalog_service, stock_ledger_service
from .concurrency import run_with_retry
from .stock_ledger_service import DIRECTION_DECREASE, DIRECTION_INCREASE, StockEvent


# sales and cancel belong to the order pipeline
OPERATOR_KINDS = (
    KIND_OPENING,
    KIND_INVORD,
    KIND_DIRECT,
    KIND_ADDON,
    KIND_ADJUSTMENT,
    KIND_EXPIRED,
    KIND_DAMAGE,
    KIND_TRANSFER,
)


def parse_entry(payload: dict) -> tuple[StockEvent, str]:
    """(event, stock_source) from a JSON body. Raises ValidationFailed."""
    if not isinstance(payload, dict):
        raise ValidationFailed("JSON object body required")

    kind = payload.get("kind") or payload.get("type")
    if kind not in OPERATOR_KINDS:
        raise ValidationFailed(
            f"kind must be one of {', '.join(OPERATOR_KINDS)}",
            {"field": "kind"},
        )

    stock_source = payload.get("stockSource") or (
        STOCK_SOURCE_THEATER if kind == KIND_TRANSFER else STOCK_SOURCE_CAFE
    )
    if stock_source not in STOCK_SOURCES:
        raise ValidationFailed(f"stockSource must be one of {', '.join(STOCK_SOURCES)}")
    if kind == KIND_TRANSFER and stock_source != STOCK_SOURCE_THEATER:
        raise ValidationFailed("transfer moves theater stock into the cafe; use stockSource=theater")

    try:
        quantity = Decimal(str(payload.get("quantity")))
    except (InvalidOperation, ValueError):
        raise ValidationFailed("quantity must be a number", {"field": "quantity"})
    if not quantity.is_finite() or quantity <= 0:
        raise ValidationFailed("quantity must be greater than zero", {"field": "quantity"})

    direction = payload.get("direction")
    if kind == KIND_ADJUSTMENT and direction not in (DIRECTION_INCREASE, DIRECTION_DECREASE):
        raise ValidationFailed(
            "adjustment requires direction 'increase' or 'decrease'",
            {"field": "direction"},
        )

    entry_date = None
    if payload.get("entryDate"):
        try:
            entry_date = parse_iso_datetime(payload["entryDate"])
        except ValueError:
            raise ValidationFailed("entryDate must be an ISO date", {"field": "entryDate"})
        if entry_date > utcnow():
            raise ValidationFailed("entryDate cannot be in the future", {"field": "entryDate"})

    note = payload.get("note")
    event = StockEvent(
        kind=kind,
        quantity=quantity,
        unit=payload.get("unit"),
        entry_date=entry_date,
        note=note.strip()[:255] if isinstance(note, str) and note.strip() else None,
        direction=direction if kind == KIND_ADJUSTMENT else None,
    )
    return event, stock_source


def record_entry(theater_id: int, product_id: int, payload: dict, *, actor_user_id=None) -> dict:
    """
    Append an operator entry and commit. Returns the new balance per
    affected stock source.
    """
    event, stock_source = parse_entry(payload)
    event.created_by_user_id = actor_user_id

    def _op() -> dict:
        product = catalog_service.get_product(theater_id, product_id)
        try:
            if event.kind == KIND_TRANSFER:
                balances = stock_ledger_service.transfer_to_cafe(
                    theater_id,
                    product.id,
                    event.quantity,
                    unit=event.unit,
                    note=event.note,
                    created_by_user_id=actor_user_id,
                )
            else:
                balances = {
                    stock_source: stock_ledger_service.append_event(
                        theater_id, product.id, event, stock_source=stock_source
                    )
                }
        except (LedgerError, UnitError) as exc:
            raise ValidationFailed(str(exc), {"productId": product.id, "kind": event.kind})

        for source, balance in balances.items():
            broadcast_service.stock_delta(
                theater_id,
                product.id,
                balance,
                stock_unit=stock_ledger_service.get_balance(
                    theater_id, product.id, stock_source=source
                ).stock_unit,
                stock_source=source,
            )
        db.session.commit()
        return balances

    try:
        balances = run_with_retry(_op)
    except PipelineError as exc:
        db.session.rollback()
        current_app.logger.warning(
            "stock entry rejected: kind=%s theater_id=%s product_id=%s actor=%s reason=%s",
            exc.kind,
            theater_id,
            product_id,
            actor_user_id,
            exc.message,
        )
        raise

    current_app.logger.info(
        "stock entry recorded: theater_id=%s product_id=%s kind=%s",
        theater_id,
        product_id,
        event.kind,
    )
    return balances
