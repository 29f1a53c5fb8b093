# Overview: Locking and bounded-retry helpers for read-compute-write units.

from __future__ import annotations

import functools
import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import StorageUnavailable
from ..extensions import db

RETRYABLE_ERRORS = (OperationalError, StaleDataError)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; use begin_immediate() there.
    """
    return query.with_for_update()


def begin_immediate() -> None:
    """
    On SQLite, take the database write lock before the first read so the
    read-compute-write unit is serialized. No-op on other dialects and when
    a transaction is already open on the connection.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(
    func,
    *,
    attempts: int | None = None,
    backoff_base: float | None = None,
    retry_on: tuple = RETRYABLE_ERRORS,
    label: str = "database operation",
):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts) by default, with exponential backoff.
    Once attempts are exhausted the last error is raised as
    StorageUnavailable. Any other exception rolls the session back and
    propagates unchanged.
    """
    config = current_app.config
    if attempts is None:
        attempts = config.get("DB_RETRY_ATTEMPTS", 3)
    if backoff_base is None:
        backoff_base = config.get("DB_RETRY_BACKOFF", 0.05)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                break
            current_app.logger.warning(
                "%s conflict, retrying (attempt %d/%d): %s",
                label, attempt + 1, attempts, exc,
            )
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise

    current_app.logger.error("%s failed after %d attempts: %s", label, attempts, last_exc)
    raise StorageUnavailable(
        f"{label} failed after {attempts} attempts",
        details={"attempts": attempts, "cause": type(last_exc).__name__},
    ) from last_exc


def storage_errors(label: str):
    """
    Decorator for read paths: a failing query (locked or unreachable
    database) surfaces as StorageUnavailable chained to the driver error.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except OperationalError as exc:
                db.session.rollback()
                current_app.logger.error("%s failed: %s", label, exc)
                raise StorageUnavailable(
                    f"{label} failed: database unavailable",
                    details={"cause": type(exc).__name__},
                ) from exc
        return wrapper
    return decorator
