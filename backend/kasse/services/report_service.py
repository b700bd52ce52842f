"""
Report Aggregator: X reports (live snapshot) and Z reports (closing).

Both reports are audited acts: generating one writes a fiscal event whose
payload is the full report. Figures come only from succeeded charges and
fiscal events, so an X report and a Z report over the same charge set
agree on totals, VAT and payment mix.

The Z report is the only path that both mutates session state and emits a
report; close + aggregate + event commit together, and the report is
frozen into session.closing_data.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from typing import Optional

from flask import current_app

from ..errors import InvalidStateError, LedgerError, NotFoundError
from ..extensions import db
from ..fiscal_codes import PAYMENT_BUCKETS, FiscalEventCode, SafTCodeMapper
from ..models import Charge, FiscalEvent, PaymentMethod, PosSession, Receipt
from ..models.payments import CHARGE_PENDING, CHARGE_SUCCEEDED
from ..money import split_vat
from ..time_utils import to_utc_z, utcnow
from . import fiscal_event_service, session_service, settings_service
from .concurrency import run_with_retry, unit_of_work

REPORT_X = "X"
REPORT_Z = "Z"


def _payment_bucket(charge: Charge, methods: dict[str, PaymentMethod]) -> str:
    method = methods.get(charge.payment_method)
    if method is None:
        return "other"
    return PAYMENT_BUCKETS.get(SafTCodeMapper.event_code(method), "other")


def build_report(session: PosSession, report_type: str) -> dict:
    """Aggregate a session's succeeded charges and events (pure read)."""
    store = session.store
    charges = (
        db.session.query(Charge)
        .filter_by(store_id=session.store_id, session_id=session.id)
        .order_by(Charge.id)
        .all()
    )
    settled = [c for c in charges if c.status == CHARGE_SUCCEEDED]
    pending = [c for c in charges if c.status == CHARGE_PENDING]
    methods = {
        m.code: m for m in db.session.query(PaymentMethod).filter_by(store_id=session.store_id)
    }

    total_amount = sum(c.amount for c in settled)
    refunds = session_service.refund_events(session)
    total_refunded = sum(int(r.get("refund_amount") or 0) for r in refunds)
    returns_amount = -sum(c.amount for c in settled if c.amount < 0)
    net_amount = total_amount - total_refunded

    vat_rate_bps = settings_service.store_vat_rate_bps(store)
    vat_base, vat_amount = split_vat(net_amount, vat_rate_bps)

    buckets = {"cash": 0, "card": 0, "mobile": 0, "other": 0}
    by_method = defaultdict(lambda: {"count": 0, "amount": 0})
    by_payment_code = defaultdict(lambda: {"count": 0, "amount": 0})
    by_transaction_code = defaultdict(lambda: {"count": 0, "amount": 0})
    for charge in settled:
        buckets[_payment_bucket(charge, methods)] += charge.amount
        for table, key in (
            (by_method, charge.payment_method),
            (by_payment_code, charge.payment_code or "unknown"),
            (by_transaction_code, charge.transaction_code or "unknown"),
        ):
            table[key]["count"] += 1
            table[key]["amount"] += charge.amount

    refunds_by_method = defaultdict(lambda: {"count": 0, "amount": 0})
    for refund in refunds:
        entry = refunds_by_method[refund.get("payment_method") or "unknown"]
        entry["count"] += 1
        entry["amount"] += int(refund.get("refund_amount") or 0)

    events = (
        db.session.query(FiscalEvent)
        .filter_by(store_id=session.store_id, session_id=session.id)
        .order_by(FiscalEvent.id)
        .all()
    )
    event_summary = Counter(e.event_code for e in events)
    drawer_opens = [e for e in events if e.event_code == FiscalEventCode.DRAWER_OPEN.value]
    nullinnslag = [e for e in drawer_opens if (e.event_data or {}).get("nullinnslag")]

    receipts = db.session.query(Receipt.receipt_type).filter_by(session_id=session.id).all()
    receipt_types = Counter(r.receipt_type for r in receipts)

    return {
        "report_type": report_type,
        "generated_at": to_utc_z(utcnow()),
        "store_id": session.store_id,
        "store_name": store.name,
        "device_id": session.device_id,
        "session_id": session.id,
        "session_number": f"{session.session_number:06d}",
        "operator_id": session.operator_id,
        "opened_at": to_utc_z(session.opened_at),
        "currency": settings_service.store_currency(store),
        "opening_balance": session.opening_balance,
        "expected_cash": session_service.expected_cash(session),
        "transactions_count": session.transaction_count,
        "charge_count": len(settled),
        "total_amount": total_amount,
        "total_refunded": total_refunded,
        "refund_count": len(refunds),
        "returns_amount": returns_amount,
        "net_amount": net_amount,
        "vat_rate_bps": vat_rate_bps,
        "vat_base": vat_base,
        "vat_amount": vat_amount,
        "cash_amount": buckets["cash"],
        "card_amount": buckets["card"],
        "mobile_amount": buckets["mobile"],
        "other_amount": buckets["other"],
        "pending_count": len(pending),
        "pending_amount": sum(c.amount for c in pending),
        "by_payment_method": dict(by_method),
        "by_payment_code": dict(by_payment_code),
        "by_transaction_code": dict(by_transaction_code),
        "refunds_by_payment_method": dict(refunds_by_method),
        "cash_drawer_opens": len(drawer_opens),
        "nullinnslag_count": len(nullinnslag),
        "receipt_count": sum(receipt_types.values()),
        "receipts_by_type": dict(receipt_types),
        "event_summary": dict(event_summary),
        "transactions": [
            {
                "charge_id": c.id,
                "amount": c.amount,
                "payment_method": c.payment_method,
                "payment_code": c.payment_code,
                "transaction_code": c.transaction_code,
                "paid_at": to_utc_z(c.paid_at) if c.paid_at else None,
            }
            for c in settled
        ],
    }


def x_report(*, store_id: int, session_id: int, operator_id: int | None) -> dict:
    """
    Live snapshot of an open session; logged as an X-report event.

    Raises:
        InvalidStateError: session is closed
    """
    def _op() -> dict:
        with unit_of_work():
            session = session_service.require_open_session(store_id, session_id)
            report = build_report(session, REPORT_X)
            fiscal_event_service.record_for_session(
                session,
                FiscalEventCode.X_REPORT,
                operator_id=operator_id,
                payload=report,
            )
            return report

    return run_with_retry(_op)


def z_report(
    *,
    store_id: int,
    session_id: int,
    operator_id: int | None,
    actual_cash: int | None = None,
    notes: Optional[str] = None,
) -> dict:
    """
    Close the session and produce its closing report, atomically.

    A failure after the close (aggregation, event write) rolls the close
    back, so a session is never closed without its Z report.
    """
    def _op() -> dict:
        with unit_of_work():
            session = session_service.require_open_session(store_id, session_id)
            session = session_service.close_session(
                store_id=store_id,
                session_id=session.id,
                operator_id=operator_id,
                actual_cash=actual_cash,
                notes=notes,
            )
            report = build_report(session, REPORT_Z)
            report.update({
                "closed_at": to_utc_z(session.closed_at),
                "actual_cash": session.actual_cash,
                "cash_difference": session.cash_difference,
                "closing_notes": session.closing_notes,
            })
            event = fiscal_event_service.record_for_session(
                session,
                FiscalEventCode.Z_REPORT,
                operator_id=operator_id,
                payload=dict(report),
            )
            report["fiscal_event_id"] = event.id
            session.closing_data = {**(session.closing_data or {}), "z_report": report}
            db.session.flush()
            return report

    try:
        report = run_with_retry(_op)
    except LedgerError as exc:
        current_app.logger.error("Z report failed (store %s, session %s): %s: %s",
                                 store_id, session_id, exc.kind, exc.reason)
        raise
    current_app.logger.info("Z report for session %s: net %s, VAT %s (minor units)",
                            report["session_number"], report["net_amount"], report["vat_amount"])
    return report


def get_z_report(*, store_id: int, session_id: int) -> dict:
    """The frozen Z report stored at close."""
    session = session_service.get_session(store_id, session_id)
    if session.is_open:
        raise InvalidStateError(f"Session {session_id} is still open", {"session_id": session_id})
    report = (session.closing_data or {}).get("z_report")
    if report is None:
        raise NotFoundError(f"Session {session_id} has no Z report", {"session_id": session_id})
    return report
