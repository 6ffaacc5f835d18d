# Overview: Row locking and retry helpers for ledger and order transitions.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConflictError
from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; the version_id columns on
    StockMonth and Order still turn a lost update into StaleDataError.
    """
    return query.with_for_update()


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). After the last attempt the failure
    surfaces as ConflictError so callers can retry once more themselves.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                raise ConflictError(
                    "Concurrent update, please retry",
                    {"reason": exc.__class__.__name__},
                ) from exc
            time.sleep(backoff_base * (2 ** attempt))
    raise ConflictError("Concurrent update, please retry")

