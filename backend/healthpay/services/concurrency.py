# Overview: Row locking, compare-and-swap updates and transaction retry for every mutating service.

from __future__ import annotations

import time

import sqlalchemy as sa
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, but other DBs will honor it.
    """
    return query.with_for_update()


def compare_and_swap(model, row_id: int, *, expected: dict, values: dict) -> bool:
    """
    Conditionally update one row: succeeds iff the row still matches `expected`.

    WHY: Claiming a queue item or flipping `disputed` must be decided by the
    database, not by whoever read the row first. The UPDATE carries the
    expected values in its WHERE clause, so exactly one of two racing callers
    sees rowcount == 1; the other sees 0 and can move on or report the conflict.

    The row's version_id is bumped so ORM-level optimistic locking on the
    same row also notices the change. Objects already loaded in the session
    are NOT synchronized: call reload() after a successful swap.
    """
    conditions = [model.id == row_id]
    for column_name, value in expected.items():
        column = getattr(model, column_name)
        if value is None:
            conditions.append(column.is_(None))
        else:
            conditions.append(column == value)

    update_values = dict(values)
    if hasattr(model, "version_id") and "version_id" not in update_values:
        update_values["version_id"] = model.version_id + 1

    stmt = (
        sa.update(model)
        .where(*conditions)
        .values(**update_values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    return result.rowcount == 1


def reload(model, row_id: int):
    """Fetch a row, overwriting whatever the session had cached for it."""
    return db.session.get(model, row_id, populate_existing=True)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session
    back and propagates, so a failed operation never leaves half its
    writes pending in the session.
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
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
