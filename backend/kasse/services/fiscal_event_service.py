# Overview: Service-layer operations for the append-only fiscal event log.

"""
Fiscal Event Log invariants (authoritative)

- Append-only: record() is the only writer. No update/delete exists here,
  and ORM listeners refuse both (see kasse.immutability).
- Codes come from FiscalEventCode; unknown codes are a ValidationError.
- Events describing money movement are written inside the caller's unit of
  work and flushed immediately, so a failed event write aborts the whole
  operation.
- Duplicate suppression for noisy lifecycle codes is best-effort: a plain
  read-then-write without locks (duplicates only add audit noise).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from flask import current_app

from ..errors import ValidationError
from ..extensions import db
from ..fiscal_codes import DEDUPLICATED_CODES, EventCategory, FiscalEventCode, parse_event_code
from ..models import FiscalEvent, PosSession
from ..time_utils import to_naive_utc, utcnow
from .concurrency import run_with_retry, unit_of_work


def record(
    *,
    store_id: int,
    code: FiscalEventCode | str,
    category: EventCategory | str | None = None,
    description: Optional[str] = None,
    device_id: int | None = None,
    session_id: int | None = None,
    operator_id: int | None = None,
    payload: Optional[dict] = None,
    related_charge_id: int | None = None,
    occurred_at: Optional[datetime] = None,
) -> FiscalEvent:
    """
    Append one fiscal event in the current transaction.

    category/description default to the code's taxonomy entry. The caller
    owns the commit.
    """
    event_code = parse_event_code(code)
    occurred = to_naive_utc(occurred_at) or utcnow()

    if event_code in DEDUPLICATED_CODES:
        existing = _recent_duplicate(store_id, device_id, event_code, occurred)
        if existing is not None:
            current_app.logger.debug(
                "Suppressed duplicate fiscal event %s for store %s device %s (existing id %s)",
                event_code.value, store_id, device_id, existing.id,
            )
            return existing

    if isinstance(category, EventCategory):
        category = category.value

    event = FiscalEvent(
        store_id=store_id,
        device_id=device_id,
        session_id=session_id,
        operator_id=operator_id,
        event_code=event_code.value,
        event_type=category or event_code.category.value,
        description=description or event_code.description,
        related_charge_id=related_charge_id,
        event_data=payload or {},
        occurred_at=occurred,
    )
    db.session.add(event)
    db.session.flush()
    return event


def record_for_session(session: PosSession, code, *, operator_id: int | None = None, **kwargs) -> FiscalEvent:
    """record() with store/device/session taken from an open or closing session."""
    return record(
        store_id=session.store_id,
        device_id=session.device_id,
        session_id=session.id,
        operator_id=operator_id if operator_id is not None else session.operator_id,
        code=code,
        **kwargs,
    )


def _recent_duplicate(store_id: int, device_id: int | None, code: FiscalEventCode, occurred: datetime):
    window = int(current_app.config.get("FISCAL_EVENT_DEDUP_SECONDS", 30))
    if window <= 0:
        return None
    return (
        db.session.query(FiscalEvent)
        .filter(
            FiscalEvent.store_id == store_id,
            FiscalEvent.device_id == device_id,
            FiscalEvent.event_code == code.value,
            FiscalEvent.occurred_at >= occurred - timedelta(seconds=window),
        )
        .order_by(FiscalEvent.occurred_at.desc())
        .first()
    )


def record_application_event(
    *,
    store_id: int,
    code: FiscalEventCode | str,
    device_id: int | None = None,
    operator_id: int | None = None,
    payload: Optional[dict] = None,
) -> FiscalEvent:
    """Log an application lifecycle ping (start/resume/shutdown) and commit."""
    event_code = parse_event_code(code)
    if event_code.category is not EventCategory.APPLICATION:
        raise ValidationError(
            f"{event_code.value} is not an application lifecycle code",
            {"code": event_code.value},
        )

    def _op() -> FiscalEvent:
        with unit_of_work():
            return record(
                store_id=store_id,
                device_id=device_id,
                operator_id=operator_id,
                code=event_code,
                payload=payload,
            )

    return run_with_retry(_op)


def events_for_session(store_id: int, session_id: int, code: FiscalEventCode | str | None = None) -> list[FiscalEvent]:
    query = db.session.query(FiscalEvent).filter_by(store_id=store_id, session_id=session_id)
    if code is not None:
        query = query.filter(FiscalEvent.event_code == parse_event_code(code).value)
    return query.order_by(FiscalEvent.id).all()


def list_events(
    store_id: int,
    *,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int | None = None,
) -> list[FiscalEvent]:
    """Events for a store over a date range, oldest first (fiscal export read path)."""
    query = db.session.query(FiscalEvent).filter_by(store_id=store_id)
    if start is not None:
        query = query.filter(FiscalEvent.occurred_at >= to_naive_utc(start))
    if end is not None:
        query = query.filter(FiscalEvent.occurred_at <= to_naive_utc(end))
    query = query.order_by(FiscalEvent.occurred_at, FiscalEvent.id)
    if limit:
        query = query.limit(limit)
    return query.all()
