# Overview: Locking and retry helpers shared by every ledger write path.

from __future__ import annotations

import time

from flask import current_app, has_app_context
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import ConcurrencyConflict


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; write transactions there are
    serialized by begin_immediate() instead.
    """
    return query.with_for_update()


def begin_immediate(session) -> None:
    """
    On SQLite, take the database write lock up front.

    A deferred transaction that reads first and writes later can lose the
    upgrade race against another writer; BEGIN IMMEDIATE makes the
    check-then-append sequence single-writer. Other dialects rely on
    lock_for_update().
    """
    conn = session.connection()
    if conn.dialect.name != "sqlite":
        return
    raw = conn.connection.dbapi_connection
    if not raw.in_transaction:
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def run_with_retry(func, *, session, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Once attempts are exhausted the failure
    surfaces as ConcurrencyConflict so callers see a declared, retryable kind.
    Any other exception rolls the session back and propagates unchanged.
    """
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            session.rollback()
            if attempt >= attempts - 1:
                raise ConcurrencyConflict(
                    "Gave up after repeated concurrent update conflicts",
                    details={"attempts": attempts},
                ) from exc
            if has_app_context():
                current_app.logger.warning(
                    "Concurrency conflict (attempt %d/%d): %s", attempt + 1, attempts, exc
                )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            # Domain failures abandon the transaction before anything is written.
            session.rollback()
            raise
    raise ConcurrencyConflict("No attempts were made", details={"attempts": attempts})
