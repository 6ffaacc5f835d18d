# Overview: Per-theater order number allocation.

from __future__ import annotations

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import OrderSequence, Theater


def next_order_number(theater: Theater, *, pad: int = 4) -> str:
    """
    Allocate the next short order number for a theater ("GR0007").

    Runs inside the caller's transaction: the UPDATE takes the row lock, so
    concurrent orders serialize here and a rollback returns the number.
    """
    stmt = (
        update(OrderSequence)
        .where(OrderSequence.theater_id == theater.id)
        .values(next_value=OrderSequence.next_value + 1)
        .execution_options(synchronize_session=False)
    )

    result = db.session.execute(stmt)
    if not result.rowcount:
        seq = OrderSequence(theater_id=theater.id, prefix=theater.order_prefix, next_value=2)
        try:
            with db.session.begin_nested():
                db.session.add(seq)
            return f"{seq.prefix}{1:0{pad}d}"
        except IntegrityError:
            # Another transaction created the row first
            result = db.session.execute(stmt)
            if not result.rowcount:
                raise

    row = (
        db.session.query(OrderSequence.prefix, OrderSequence.next_value)
        .filter(OrderSequence.theater_id == theater.id)
        .one()
    )
    return f"{row.prefix}{row.next_value - 1:0{pad}d}"
