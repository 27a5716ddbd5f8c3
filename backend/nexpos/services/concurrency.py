# Overview: Row locking and retry helpers for the wallet's critical sections.

from __future__ import annotations

import time

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    Callers that must be correct on SQLite as well pair this with a
    compare-and-set UPDATE (see compare_and_set).
    """
    return query.with_for_update()


def compare_and_set(model, row_id: int, column: str, expected, values: dict) -> bool:
    """
    Conditional UPDATE: apply values only if column still equals expected.

    Returns True if this caller won the transition. Exactly one of any number
    of concurrent callers can win, on every database backend.
    """
    updated = db.session.query(model).filter(
        model.id == row_id,
        getattr(model, column) == expected,
    ).update(values, synchronize_session=False)
    return updated == 1


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts).
    """
    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
    if last_exc:
        raise last_exc
