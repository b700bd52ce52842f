# Overview: Service-layer concurrency primitives: row locks, retries, and the unit of work.

"""
Concurrency primitives shared by every ledger service.

- unit_of_work(): one atomic commit per public operation. Nested units join
  the outermost one, so a gift card purchase (which runs a purchase) or a
  Z report (which runs a session close) still commits exactly once.
- on_commit(callback): defer non-critical side effects (drawer, printer)
  until after the outermost commit; discarded on rollback.
- run_with_retry(): retry the OUTERMOST unit on lock/version conflicts.
  Inside an active unit the function runs once and errors propagate to the
  outer retry loop.
- lock_for_update(): SELECT ... FOR UPDATE with a bounded lock wait.
"""

from __future__ import annotations

import time
from contextlib import contextmanager

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import LockTimeoutError
from ..extensions import db

_DEPTH_KEY = "kasse.uow_depth"
_CALLBACKS_KEY = "kasse.uow_callbacks"


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(getattr(exc, "orig", exc)).lower()
    return "lock" in message or "timeout" in message


def in_unit_of_work() -> bool:
    return db.session.info.get(_DEPTH_KEY, 0) > 0


@contextmanager
def unit_of_work():
    """
    Atomic scope for a ledger operation.

    The outermost scope commits on success and rolls back on any exception.
    Inner scopes only track depth.
    """
    info = db.session.info
    depth = info.get(_DEPTH_KEY, 0)
    info[_DEPTH_KEY] = depth + 1
    if depth == 0:
        info[_CALLBACKS_KEY] = []
    try:
        yield db.session
        if depth == 0:
            db.session.commit()
    except BaseException:
        if depth == 0:
            db.session.rollback()
            info.pop(_CALLBACKS_KEY, None)
        raise
    finally:
        info[_DEPTH_KEY] = depth

    if depth == 0:
        for callback in info.pop(_CALLBACKS_KEY, []):
            callback()


def on_commit(callback) -> None:
    """Run callback after the outermost unit of work commits (immediately if none is active)."""
    if not in_unit_of_work():
        callback()
        return
    db.session.info.setdefault(_CALLBACKS_KEY, []).append(callback)


def lock_for_update(query):
    """
    Apply row-level locking for critical operations, with a bounded wait.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; writers are serialized by
    the database file lock and version_id columns catch lost updates.
    """
    bind = db.session.get_bind()
    if bind.dialect.name == "postgresql":
        timeout_ms = int(current_app.config.get("LOCK_TIMEOUT_MS", 5000))
        db.session.execute(text(f"SET LOCAL lock_timeout = {timeout_ms}"))
    return query.with_for_update()


def first_locked(query, what: str):
    """Fetch the first row under lock; a lock-wait failure becomes LockTimeoutError."""
    try:
        return lock_for_update(query).first()
    except OperationalError as exc:
        if _is_lock_error(exc):
            raise LockTimeoutError(f"Timed out waiting for lock on {what}", {"entity": what}) from exc
        raise


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a DB operation with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Lock errors that survive every attempt
    surface as LockTimeoutError.
    """
    if in_unit_of_work():
        return func()

    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            if attempt >= attempts - 1:
                if isinstance(exc, OperationalError) and _is_lock_error(exc):
                    raise LockTimeoutError(
                        "Row contention did not clear after retries",
                        {"attempts": attempts},
                    ) from exc
                raise
            current_app.logger.info("Retrying after concurrency conflict (attempt %s): %s", attempt + 1, exc)
            time.sleep(backoff_base * (2 ** attempt))
