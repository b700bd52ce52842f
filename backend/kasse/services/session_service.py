"""
Session Manager: device shift lifecycle and cash reconciliation.

DESIGN PRINCIPLES:
- One open session per (store, device); enforced by query + partial unique index
- Session numbers come from the per-store sequence (serialized allocation)
- Closed sessions are immutable: no reopen, expected cash frozen at close
- Expected cash for an open session is always recomputed from ledger rows:
  opening balance + succeeded cash charges - withdrawals + deposits
- This module is the only writer of session counters
"""

from __future__ import annotations

from typing import Optional

from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from ..errors import ConflictError, InvalidStateError, NotFoundError
from ..extensions import db
from ..fiscal_codes import FiscalEventCode
from ..models import Charge, FiscalEvent, PosDevice, PosSession
from ..models.payments import CHARGE_SUCCEEDED, PROVIDER_CASH
from ..models.sessions import SESSION_CLOSED, SESSION_OPEN
from ..time_utils import utcnow
from ..validation import optional_text, require_amount
from . import fiscal_event_service, hardware_service, sequence_service
from .concurrency import first_locked, run_with_retry, unit_of_work


# =============================================================================
# LOOKUPS
# =============================================================================

def get_session(store_id: int, session_id: int) -> PosSession:
    session = db.session.query(PosSession).filter_by(id=session_id, store_id=store_id).first()
    if not session:
        raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
    return session


def get_open_session(store_id: int, device_id: int) -> PosSession | None:
    """Get the currently open session for a device, if any."""
    return db.session.query(PosSession).filter_by(
        store_id=store_id,
        device_id=device_id,
        status=SESSION_OPEN,
    ).first()


def list_sessions(store_id: int, *, status: str | None = None, limit: int = 50) -> list[PosSession]:
    query = db.session.query(PosSession).filter_by(store_id=store_id)
    if status:
        query = query.filter_by(status=status)
    return query.order_by(PosSession.session_number.desc()).limit(limit).all()


def require_open_session(store_id: int, session_id: int) -> PosSession:
    session = get_session(store_id, session_id)
    if not session.is_open:
        raise InvalidStateError(
            f"Session {session_id} is {session.status}",
            {"session_id": session_id, "status": session.status},
        )
    return session


def lock_open_session(store_id: int, session_id: int) -> PosSession:
    """Lock the session row and ensure it is still open."""
    session = first_locked(
        db.session.query(PosSession).filter_by(id=session_id, store_id=store_id),
        f"session {session_id}",
    )
    if not session:
        raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
    if not session.is_open:
        raise InvalidStateError(
            f"Session {session_id} is {session.status}",
            {"session_id": session_id, "status": session.status},
        )
    return session


# =============================================================================
# OPEN / CLOSE
# =============================================================================

def open_session(
    *,
    store_id: int,
    device_id: int,
    operator_id: int,
    opening_balance: int = 0,
    notes: Optional[str] = None,
    opening_data: Optional[dict] = None,
) -> PosSession:
    """
    Open a new session on a device.

    Raises:
        NotFoundError: device missing, inactive or in another store
        ConflictError: device already has an open session
        ValidationError: negative opening balance
    """
    require_amount(opening_balance, "opening_balance", allow_zero=True)
    notes = optional_text(notes, "notes")

    def _op() -> PosSession:
        with unit_of_work():
            device = db.session.query(PosDevice).filter_by(id=device_id, store_id=store_id).first()
            if not device or not device.is_active:
                raise NotFoundError(f"Device {device_id} not found", {"device_id": device_id})

            existing = get_open_session(store_id, device_id)
            if existing:
                raise ConflictError(
                    f"Device already has an open session (session {existing.id})",
                    {"session_id": existing.id, "session_number": existing.session_number},
                )

            number = sequence_service.next_number(
                store_id=store_id,
                sequence_type=sequence_service.SEQUENCE_SESSION,
            )
            session = PosSession(
                store_id=store_id,
                device_id=device_id,
                operator_id=operator_id,
                session_number=number,
                status=SESSION_OPEN,
                opening_balance=opening_balance,
                expected_cash=opening_balance,
                opening_notes=notes,
                opening_data=opening_data,
                opened_at=utcnow(),
            )
            db.session.add(session)
            try:
                db.session.flush()
            except IntegrityError as exc:
                raise ConflictError(
                    "Device already has an open session",
                    {"device_id": device_id},
                ) from exc

            fiscal_event_service.record_for_session(
                session,
                FiscalEventCode.SESSION_OPENED,
                operator_id=operator_id,
                payload={
                    "session_number": f"{number:06d}",
                    "opening_balance": opening_balance,
                    "notes": notes,
                },
                occurred_at=session.opened_at,
            )
            return session

    session = run_with_retry(_op)
    current_app.logger.info("Opened session %s on device %s (store %s)", session.session_number, device_id, store_id)
    return session


def close_session(
    *,
    store_id: int,
    session_id: int,
    operator_id: int,
    actual_cash: int | None = None,
    notes: Optional[str] = None,
    closing_data: Optional[dict] = None,
) -> PosSession:
    """
    Close a session and freeze its cash figures.

    A second close fails with InvalidStateError and changes nothing.
    """
    if actual_cash is not None:
        require_amount(actual_cash, "actual_cash", allow_zero=True)
    notes = optional_text(notes, "notes")

    def _op() -> PosSession:
        with unit_of_work():
            session = lock_open_session(store_id, session_id)

            expected = compute_expected_cash(session)
            difference = actual_cash - expected if actual_cash is not None else None

            session.status = SESSION_CLOSED
            session.closed_at = utcnow()
            session.closed_by_operator_id = operator_id
            session.expected_cash = expected
            session.actual_cash = actual_cash
            session.cash_difference = difference
            session.closing_notes = notes
            if closing_data is not None:
                session.closing_data = dict(closing_data)
            db.session.flush()

            fiscal_event_service.record_for_session(
                session,
                FiscalEventCode.SESSION_CLOSED,
                operator_id=operator_id,
                payload={
                    "session_number": f"{session.session_number:06d}",
                    "expected_cash": expected,
                    "actual_cash": actual_cash,
                    "cash_difference": difference,
                    "transaction_count": session.transaction_count,
                    "total_amount": session.total_amount,
                },
                occurred_at=session.closed_at,
            )
            return session

    session = run_with_retry(_op)
    current_app.logger.info(
        "Closed session %s (store %s): expected %s, actual %s, difference %s (minor units)",
        session.session_number, store_id, session.expected_cash, session.actual_cash, session.cash_difference,
    )
    return session


# =============================================================================
# CASH RECONCILIATION
# =============================================================================

def _movement_total(session: PosSession, code: FiscalEventCode) -> int:
    events = db.session.query(FiscalEvent.event_data).filter(
        FiscalEvent.store_id == session.store_id,
        FiscalEvent.session_id == session.id,
        FiscalEvent.event_code == code.value,
    )
    return sum(int((data or {}).get("amount") or 0) for (data,) in events)


def refund_events(session: PosSession) -> list[dict]:
    """Payloads of charge refunds issued in this session (return receipts with a refunded charge)."""
    events = db.session.query(FiscalEvent.event_data).filter(
        FiscalEvent.store_id == session.store_id,
        FiscalEvent.session_id == session.id,
        FiscalEvent.event_code == FiscalEventCode.RETURN_RECEIPT.value,
    )
    return [data for (data,) in events if data and data.get("refunded_charge_id")]


def _cash_refund_total(session: PosSession) -> int:
    return sum(
        int(data.get("refund_amount") or 0)
        for data in refund_events(session)
        if data.get("payment_provider") == PROVIDER_CASH
    )


def compute_expected_cash(session: PosSession) -> int:
    """Recompute expected drawer cash from charges, cash refunds and cash-movement events."""
    cash_charges = (
        db.session.query(func.coalesce(func.sum(Charge.amount), 0))
        .filter(
            Charge.store_id == session.store_id,
            Charge.session_id == session.id,
            Charge.status == CHARGE_SUCCEEDED,
            Charge.payment_provider == PROVIDER_CASH,
        )
        .scalar()
    )
    return (
        session.opening_balance
        + int(cash_charges)
        - _cash_refund_total(session)
        - _movement_total(session, FiscalEventCode.CASH_WITHDRAWAL)
        + _movement_total(session, FiscalEventCode.CASH_DEPOSIT)
    )


def expected_cash(session: PosSession) -> int:
    """Live figure for open sessions, frozen close-time figure for closed ones."""
    if session.is_open:
        return compute_expected_cash(session)
    return session.expected_cash


# =============================================================================
# COUNTERS (only writer)
# =============================================================================

def _running_cash(session: PosSession) -> int:
    if session.expected_cash is None:
        return session.opening_balance
    return session.expected_cash


def record_sale_totals(*, store_id: int, session_id: int, amount: int, cash_amount: int = 0) -> PosSession:
    """
    Bump running totals for one finalized purchase.

    Called from inside the purchase unit of work, after charges, receipt
    and events are flushed. The lock also serializes against a concurrent
    close, which turns a late purchase into InvalidStateError.
    """
    session = lock_open_session(store_id, session_id)
    session.transaction_count = (session.transaction_count or 0) + 1
    session.total_amount = (session.total_amount or 0) + amount
    if cash_amount:
        session.expected_cash = _running_cash(session) + cash_amount
    db.session.flush()
    return session


def record_refund_totals(*, store_id: int, session_id: int, amount: int, cash_amount: int = 0) -> PosSession:
    """
    Take a charge refund off the refunding session's running totals.

    The refunded sale still exists, so transaction_count is left alone.
    """
    session = lock_open_session(store_id, session_id)
    session.total_amount = (session.total_amount or 0) - amount
    if cash_amount:
        session.expected_cash = _running_cash(session) - cash_amount
    db.session.flush()
    return session


# =============================================================================
# DRAWER ACTIVITY
# =============================================================================

def _record_cash_movement(store_id, session_id, operator_id, amount, reason, code) -> dict:
    require_amount(amount, "amount")
    reason = optional_text(reason, "reason", 255)

    def _op() -> dict:
        with unit_of_work():
            session = lock_open_session(store_id, session_id)
            event = fiscal_event_service.record_for_session(
                session,
                code,
                operator_id=operator_id,
                payload={"amount": amount, "reason": reason},
            )
            delta = amount if code is FiscalEventCode.CASH_DEPOSIT else -amount
            session.expected_cash = _running_cash(session) + delta
            hardware_service.schedule_drawer_open(session.device)
            return {
                "event": event.to_dict(),
                "expected_cash": compute_expected_cash(session),
            }

    return run_with_retry(_op)


def record_cash_withdrawal(*, store_id: int, session_id: int, operator_id: int, amount: int,
                           reason: Optional[str] = None) -> dict:
    """Cash taken out of the drawer (e.g. bank drop)."""
    return _record_cash_movement(store_id, session_id, operator_id, amount, reason, FiscalEventCode.CASH_WITHDRAWAL)


def record_cash_deposit(*, store_id: int, session_id: int, operator_id: int, amount: int,
                        reason: Optional[str] = None) -> dict:
    """Cash put into the drawer (e.g. extra change)."""
    return _record_cash_movement(store_id, session_id, operator_id, amount, reason, FiscalEventCode.CASH_DEPOSIT)


def open_drawer_without_sale(*, store_id: int, session_id: int, operator_id: int,
                             reason: Optional[str] = None) -> FiscalEvent:
    """
    Open the drawer with no sale ("nullinnslag").

    Logged as a drawer-open event flagged nullinnslag; Z reports count these
    separately because they are a common fraud signal.
    """
    reason = optional_text(reason, "reason", 255)

    def _op() -> FiscalEvent:
        with unit_of_work():
            session = lock_open_session(store_id, session_id)
            event = fiscal_event_service.record_for_session(
                session,
                FiscalEventCode.DRAWER_OPEN,
                operator_id=operator_id,
                payload={"nullinnslag": True, "trigger": "manual", "reason": reason},
            )
            hardware_service.schedule_drawer_open(session.device)
            return event

    return run_with_retry(_op)


def session_summary(session: PosSession) -> dict:
    data = session.to_dict()
    data["expected_cash"] = expected_cash(session)
    return data
