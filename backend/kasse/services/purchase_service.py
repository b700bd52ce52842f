"""
Purchase Orchestrator.

WHY: A sale touches charges, a receipt, fiscal events, drawer/printer and
session counters. Either all ledger rows exist afterwards or none do.

STATE MACHINE (one unit of work):
    Validated -> Routed -> Settled -> Receipted -> Logged -> Finalized

WRITE ORDER (fixed):
    charge(s) -> receipt -> payment events + receipt event -> drawer event
    -> session counters
Hardware (drawer kick, auto-print) is scheduled for after commit and can
never fail the purchase.

Refunds of a settled charge follow the same shape: annotation ->
return receipt -> return-receipt event -> drawer event -> counters, booked
in the refunding session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from flask import current_app
from sqlalchemy import update

from ..errors import DependencyError, InvalidStateError, LedgerError, NotFoundError, ValidationError
from ..extensions import db
from ..fiscal_codes import TRANSACTION_CODE_RETURN, FiscalEventCode, SafTCodeMapper
from ..models import Charge, FiscalEvent, PaymentMethod, PosSession, Receipt
from ..models.payments import CHARGE_PENDING, CHARGE_SUCCEEDED, PROVIDER_CASH, RECEIPT_RETURN, RECEIPT_SALES
from ..money import split_vat
from ..time_utils import to_utc_z, utcnow
from ..validation import normalize_cart, optional_text, require_amount
from . import fiscal_event_service, hardware_service, sequence_service, session_service, settings_service
from .concurrency import first_locked, run_with_retry, unit_of_work
from .payment_router import PaymentInstruction, prepare, route
from .receipt_renderer import get_receipt_renderer


@dataclass
class PurchaseResult:
    charges: list[Charge]
    receipt: Receipt
    fiscal_event: FiscalEvent

    @property
    def charge(self) -> Charge:
        return self.charges[0]

    def to_dict(self) -> dict:
        return {
            "charges": [c.to_dict() for c in self.charges],
            "receipt": self.receipt.to_dict(),
            "fiscal_event": self.fiscal_event.to_dict(),
        }


# =============================================================================
# VALIDATION
# =============================================================================

def resolve_payment_method(store_id: int, code: str) -> PaymentMethod:
    """Payment method by code; must belong to the store and be enabled."""
    if not isinstance(code, str) or not code:
        raise ValidationError("Payment method code is required")
    method = db.session.query(PaymentMethod).filter_by(store_id=store_id, code=code).first()
    if not method:
        raise NotFoundError(f"Payment method {code} not found", {"payment_method": code})
    if not method.enabled:
        raise ValidationError(f"Payment method {code} is disabled", {"payment_method": code})
    return method


def _split_instructions(store_id: int, payments, cart_total: int) -> list[PaymentInstruction]:
    """
    Validate every split line before anything is routed.

    The sum must equal the cart total exactly; no rounding tolerance.
    """
    if not isinstance(payments, list) or not payments:
        raise ValidationError("At least one payment is required")
    if cart_total <= 0:
        raise ValidationError("Split payments require a positive cart total (minor units)")

    instructions = []
    for idx, line in enumerate(payments):
        if not isinstance(line, dict):
            raise ValidationError(f"payments[{idx}] must be an object")
        amount = require_amount(line.get("amount"), f"payments[{idx}].amount")
        method = resolve_payment_method(store_id, line.get("payment_method"))
        instructions.append(PaymentInstruction(
            method=method,
            amount=amount,
            reference=line.get("reference"),
            gift_card_code=line.get("gift_card_code"),
            gift_card_pin=line.get("gift_card_pin"),
            settlement_timeout=line.get("settlement_timeout"),
        ))

    total_paid = sum(i.amount for i in instructions)
    if total_paid != cart_total:
        raise ValidationError(
            f"Split payments total {total_paid} does not match cart total {cart_total} (minor units)",
            {"total_paid": total_paid, "cart_total": cart_total},
        )
    return instructions


def _charge_metadata(cart: dict, metadata: Optional[dict]) -> dict:
    data = {
        "items": cart["items"],
        "discounts": cart["discounts"],
        "customer_id": cart["customer_id"],
        "customer_name": cart["customer_name"],
        "tip_amount": cart["tip_amount"],
        "subtotal": cart["subtotal"],
        "total_discounts": cart["total_discounts"],
        "total_tax": cart["total_tax"],
        "total": cart["total"],
        "note": cart["note"],
    }
    if metadata:
        data.update(metadata)
    return data


# =============================================================================
# RECEIPT
# =============================================================================

def _create_receipt(session: PosSession, charges: list[Charge], cart: dict, operator_id: int | None,
                    extra: Optional[dict] = None) -> Receipt:
    store = session.store
    is_return = cart["total"] < 0
    receipt_type = RECEIPT_RETURN if is_return else RECEIPT_SALES
    sequence_type = sequence_service.SEQUENCE_RETURN_RECEIPT if is_return else sequence_service.SEQUENCE_SALES_RECEIPT
    number = sequence_service.next_number(store_id=store.id, sequence_type=sequence_type)
    receipt_number = sequence_service.format_number("R" if is_return else "S", store.id, number)

    rate_bps = settings_service.store_vat_rate_bps(store)
    _, vat_amount = split_vat(cart["total"], rate_bps)
    receipt_data = {
        "receipt_number": receipt_number,
        "receipt_type": receipt_type,
        "store_name": store.name,
        "organization_number": store.organization_number,
        "device_name": session.device.name if session.device else None,
        "session_number": f"{session.session_number:06d}",
        "operator_id": operator_id,
        "charge_ids": [c.id for c in charges],
        "payments": [
            {"charge_id": c.id, "payment_method": c.payment_method, "amount": c.amount, "status": c.status}
            for c in charges
        ],
        "items": cart["items"],
        "total": cart["total"],
        "subtotal": cart["subtotal"],
        "total_discounts": cart["total_discounts"],
        "tip_amount": cart["tip_amount"],
        "vat_rate_bps": rate_bps,
        "vat_amount": vat_amount,
        "currency": settings_service.store_currency(store),
        "customer_name": cart["customer_name"],
        "note": cart["note"],
        "created_at": to_utc_z(utcnow()),
    }
    if extra:
        receipt_data.update(extra)

    try:
        rendered = get_receipt_renderer().render(receipt_data)
    except LedgerError:
        raise
    except Exception as exc:
        raise DependencyError(f"Receipt rendering failed: {exc}", {"receipt_number": receipt_number}) from exc

    receipt = Receipt(
        store_id=store.id,
        session_id=session.id,
        charge_id=charges[0].id,
        operator_id=operator_id,
        receipt_number=receipt_number,
        receipt_type=receipt_type,
        receipt_data=receipt_data,
        rendered=rendered,
    )
    db.session.add(receipt)
    db.session.flush()
    return receipt


# =============================================================================
# CORE
# =============================================================================

def _record_payment_event(session: PosSession, charge: Charge, method: PaymentMethod, operator_id) -> FiscalEvent:
    return fiscal_event_service.record_for_session(
        session,
        SafTCodeMapper.event_code(method),
        operator_id=operator_id,
        related_charge_id=charge.id,
        payload={
            "charge_id": charge.id,
            "amount": charge.amount,
            "currency": charge.currency,
            "payment_method": charge.payment_method,
            "payment_code": charge.payment_code,
            "transaction_code": charge.transaction_code,
        },
    )


def _finalize(session: PosSession, instructions: list[PaymentInstruction], cart: dict,
              metadata: Optional[dict], operator_id: int | None) -> PurchaseResult:
    store = session.store
    currency = settings_service.store_currency(store)
    shared_metadata = _charge_metadata(cart, metadata)
    is_split = len(instructions) > 1

    # Routed: every settlement confirmed before the first write
    for instruction in instructions:
        prepare(session, instruction, currency=currency)

    # Settled
    charges = []
    for instruction in instructions:
        instruction.metadata = {**shared_metadata, **instruction.metadata}
        if is_split:
            instruction.metadata["split_payment"] = True
        charges.append(route(session, instruction, currency=currency, operator_id=operator_id,
                             description=cart["note"]))

    # Receipted
    receipt = _create_receipt(session, charges, cart, operator_id)

    # Logged
    for charge, instruction in zip(charges, instructions):
        if charge.status == CHARGE_SUCCEEDED:
            _record_payment_event(session, charge, instruction.method, operator_id)

    is_return = cart["total"] < 0
    payload = {
        "receipt_id": receipt.id,
        "receipt_number": receipt.receipt_number,
        "total_amount": cart["total"],
        "currency": currency,
        "item_count": len(cart["items"]),
    }
    if is_split:
        payload.update({
            "split_payment": True,
            "charge_ids": [c.id for c in charges],
            "payment_count": len(charges),
            "payments": [
                {"charge_id": c.id, "payment_method": c.payment_method, "amount": c.amount,
                 "payment_code": c.payment_code}
                for c in charges
            ],
        })
    else:
        payload.update({
            "charge_id": charges[0].id,
            "amount": charges[0].amount,
            "payment_method": charges[0].payment_method,
            "payment_code": charges[0].payment_code,
        })
    receipt_event = fiscal_event_service.record_for_session(
        session,
        FiscalEventCode.RETURN_RECEIPT if is_return else FiscalEventCode.SALES_RECEIPT,
        operator_id=operator_id,
        related_charge_id=charges[0].id,
        payload=payload,
    )

    cash_amount = sum(
        c.amount for c in charges
        if c.payment_provider == PROVIDER_CASH and c.status == CHARGE_SUCCEEDED
    )
    if cash_amount:
        fiscal_event_service.record_for_session(
            session,
            FiscalEventCode.DRAWER_OPEN,
            operator_id=operator_id,
            related_charge_id=charges[0].id,
            payload={"amount": cash_amount, "trigger": "cash_payment", "nullinnslag": False},
        )

    # Finalized
    session_service.record_sale_totals(
        store_id=session.store_id,
        session_id=session.id,
        amount=cart["total"],
        cash_amount=cash_amount,
    )

    if cash_amount:
        hardware_service.schedule_drawer_open(session.device)
    if settings_service.get_store_setting(store.id, "auto_print_receipts", True):
        hardware_service.schedule_receipt_print(session.device, receipt.rendered or "")

    return PurchaseResult(charges=charges, receipt=receipt, fiscal_event=receipt_event)


def _run(label: str, op, context: dict):
    try:
        return run_with_retry(op)
    except LedgerError as exc:
        current_app.logger.error("%s failed %s: %s: %s", label, context, exc.kind, exc.reason)
        raise
    except Exception:
        current_app.logger.exception("%s failed %s", label, context)
        raise


def process_purchase(
    *,
    store_id: int,
    session_id: int,
    payment_method_code: str,
    cart: dict,
    operator_id: int | None,
    metadata: Optional[dict] = None,
    reference: Optional[str] = None,
    gift_card_code: Optional[str] = None,
    gift_card_pin: Optional[str] = None,
    settlement_timeout: Optional[float] = None,
) -> PurchaseResult:
    """
    Settle a cart with one payment method.

    A negative cart total is a return: the charge is negative, the receipt
    is a return receipt and the event is a return-receipt event.

    Raises:
        NotFoundError, ValidationError: session/method/cart problems
        InvalidStateError: session not open
        SettlementNotFoundError: terminal confirmation not visible in time
        DependencyError: gateway or receipt renderer failure
    """
    cart = normalize_cart(cart)

    def _op() -> PurchaseResult:
        with unit_of_work():
            session = session_service.require_open_session(store_id, session_id)
            method = resolve_payment_method(store_id, payment_method_code)
            instruction = PaymentInstruction(
                method=method,
                amount=cart["total"],
                reference=reference,
                gift_card_code=gift_card_code,
                gift_card_pin=gift_card_pin,
                settlement_timeout=settlement_timeout,
            )
            return _finalize(session, [instruction], cart, metadata, operator_id)

    result = _run("Purchase", _op, {"store_id": store_id, "session_id": session_id})
    current_app.logger.info(
        "Purchase %s settled: %s %s via %s",
        result.receipt.receipt_number, result.charge.amount, result.charge.currency, payment_method_code,
    )
    return result


def process_split_purchase(
    *,
    store_id: int,
    session_id: int,
    payments: list[dict],
    cart: dict,
    operator_id: int | None,
    metadata: Optional[dict] = None,
) -> PurchaseResult:
    """
    Settle a cart across several payment lines.

    payments: [{"payment_method": code, "amount": int, "reference"?,
                "gift_card_code"?, "gift_card_pin"?}, ...]

    The sum check runs before any line is routed; a later line failing
    rolls back every earlier charge.
    """
    cart = normalize_cart(cart)

    def _op() -> PurchaseResult:
        with unit_of_work():
            session = session_service.require_open_session(store_id, session_id)
            instructions = _split_instructions(store_id, payments, cart["total"])
            return _finalize(session, instructions, cart, metadata, operator_id)

    result = _run("Split purchase", _op, {"store_id": store_id, "session_id": session_id})
    current_app.logger.info(
        "Split purchase %s settled with %s payments", result.receipt.receipt_number, len(result.charges),
    )
    return result


def complete_pending_charge(
    *,
    store_id: int,
    charge_id: int,
    operator_id: int | None,
    reference: Optional[str] = None,
) -> Charge:
    """
    Reconcile a pending "other" charge once the money is confirmed.

    Flips it to succeeded and logs its payment event. Totals were counted
    when the purchase was finalized; the session must still be open.
    """
    def _op() -> Charge:
        with unit_of_work():
            charge = first_locked(
                db.session.query(Charge).filter_by(id=charge_id, store_id=store_id),
                f"charge {charge_id}",
            )
            if not charge:
                raise NotFoundError(f"Charge {charge_id} not found", {"charge_id": charge_id})
            if charge.status != CHARGE_PENDING:
                raise InvalidStateError(
                    f"Charge {charge_id} is {charge.status}, not pending",
                    {"charge_id": charge_id, "status": charge.status},
                )
            session = session_service.require_open_session(store_id, charge.session_id)
            method = db.session.query(PaymentMethod).filter_by(store_id=store_id, code=charge.payment_method).first()
            if not method:
                raise NotFoundError(f"Payment method {charge.payment_method} not found",
                                    {"payment_method": charge.payment_method})

            charge.status = CHARGE_SUCCEEDED
            charge.paid = True
            charge.captured = True
            charge.paid_at = utcnow()
            if reference:
                charge.provider_reference = reference
            db.session.flush()

            _record_payment_event(session, charge, method, operator_id)
            return charge

    return _run("Pending charge completion", _op, {"store_id": store_id, "charge_id": charge_id})


# =============================================================================
# REFUNDS
# =============================================================================

@dataclass
class RefundResult:
    charge: Charge
    receipt: Receipt
    fiscal_event: FiscalEvent
    requires_manual_processing: bool

    def to_dict(self) -> dict:
        return {
            "charge": self.charge.to_dict(),
            "receipt": self.receipt.to_dict(),
            "fiscal_event": self.fiscal_event.to_dict(),
            "requires_manual_processing": self.requires_manual_processing,
        }


def _original_receipt(charge: Charge) -> Receipt:
    receipt = (
        db.session.query(Receipt)
        .filter_by(store_id=charge.store_id, charge_id=charge.id, receipt_type=RECEIPT_SALES)
        .order_by(Receipt.id)
        .first()
    )
    if receipt:
        return receipt
    # Split purchases point their receipt at the first charge only
    candidates = db.session.query(Receipt).filter_by(
        store_id=charge.store_id, session_id=charge.session_id, receipt_type=RECEIPT_SALES,
    )
    for candidate in candidates:
        if charge.id in (candidate.receipt_data or {}).get("charge_ids", []):
            return candidate
    raise NotFoundError(f"Original receipt for charge {charge.id} not found", {"charge_id": charge.id})


def _claim_refund(charge: Charge, amount: int) -> None:
    """Add amount to amount_refunded unless that would exceed the charge."""
    result = db.session.execute(
        update(Charge)
        .where(Charge.id == charge.id, Charge.amount_refunded + amount <= Charge.amount)
        .values(amount_refunded=Charge.amount_refunded + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.session.refresh(charge)
        remaining = charge.amount - (charge.amount_refunded or 0)
        raise ValidationError(
            f"Refund amount {amount} exceeds remaining refundable amount {remaining} (minor units)",
            {"charge_id": charge.id, "amount": amount, "remaining": remaining},
        )
    db.session.refresh(charge)


def refund_charge(
    *,
    store_id: int,
    charge_id: int,
    session_id: int,
    operator_id: int | None,
    amount: int | None = None,
    reason: Optional[str] = None,
    refunded_items: Optional[list[dict]] = None,
) -> RefundResult:
    """
    Refund all or part of a settled sale charge.

    The refund is booked in session_id, the operator's current open session,
    which may be later than the charge's own session; a closed session is
    never modified. amount defaults to whatever is still refundable.

    Cash refunds are paid out of the drawer. Every other provider is
    annotated as requiring manual processing with that provider.

    Writes, in order: refund annotation on the charge -> return receipt ->
    return-receipt event -> drawer event (cash) -> session counters.

    Raises:
        NotFoundError: charge, session or original receipt missing
        InvalidStateError: charge not settled, already fully refunded, or session not open
        ValidationError: bad amount, over-refund, return/gift card charges
    """
    if amount is not None:
        require_amount(amount, "amount")
    reason = optional_text(reason, "reason", 255)
    if refunded_items is not None and (
        not isinstance(refunded_items, list) or any(not isinstance(i, dict) for i in refunded_items)
    ):
        raise ValidationError("refunded_items must be a list of objects")

    def _op() -> RefundResult:
        with unit_of_work():
            charge = first_locked(
                db.session.query(Charge).filter_by(id=charge_id, store_id=store_id),
                f"charge {charge_id}",
            )
            if not charge:
                raise NotFoundError(f"Charge {charge_id} not found", {"charge_id": charge_id})
            if charge.status != CHARGE_SUCCEEDED or not charge.paid:
                raise InvalidStateError(
                    f"Charge {charge_id} is {charge.status} and has not been paid",
                    {"charge_id": charge_id, "status": charge.status},
                )
            if charge.amount <= 0:
                raise ValidationError(
                    f"Charge {charge_id} is a return or payout and cannot be refunded",
                    {"charge_id": charge_id, "amount": charge.amount},
                )
            if (charge.charge_metadata or {}).get("gift_card_purchase"):
                raise ValidationError(
                    "Gift card sales are refunded through the gift card refund",
                    {"charge_id": charge_id},
                )

            remaining = charge.amount - (charge.amount_refunded or 0)
            if remaining <= 0:
                raise InvalidStateError(f"Charge {charge_id} is already fully refunded", {"charge_id": charge_id})
            refund_amount = remaining if amount is None else amount

            session = session_service.lock_open_session(store_id, session_id)
            original_session = charge.session
            original_receipt = _original_receipt(charge)

            _claim_refund(charge, refund_amount)
            fully_refunded = charge.amount_refunded >= charge.amount
            is_cash = charge.payment_provider == PROVIDER_CASH
            refunded_at = utcnow()

            metadata = dict(charge.charge_metadata or {})
            refund_entry = {
                "amount": refund_amount,
                "amount_refunded": charge.amount_refunded,
                "reason": reason,
                "refunded_at": to_utc_z(refunded_at),
                "refunded_by": operator_id,
                "session_id": session.id,
                "requires_manual_processing": not is_cash,
            }
            if refunded_items:
                refund_entry["items"] = [dict(item) for item in refunded_items]
            metadata["refunds"] = [*metadata.get("refunds", []), refund_entry]
            metadata["last_refund_at"] = refund_entry["refunded_at"]
            if reason:
                metadata["refund_reason"] = reason
            charge.charge_metadata = metadata
            charge.refunded = fully_refunded
            db.session.flush()

            items = refunded_items or [{
                "name": f"Refusjon {original_receipt.receipt_number}",
                "quantity": 1,
                "unit_price": -refund_amount,
                "line_total": -refund_amount,
            }]
            refund_cart = normalize_cart({"items": items, "total": -refund_amount, "note": reason})
            receipt = _create_receipt(session, [charge], refund_cart, operator_id, extra={
                "payments": [{
                    "charge_id": charge.id,
                    "payment_method": charge.payment_method,
                    "amount": -refund_amount,
                    "status": "refunded" if fully_refunded else "partially_refunded",
                }],
                "original_receipt_number": original_receipt.receipt_number,
                "refund_reason": reason,
            })

            event = fiscal_event_service.record_for_session(
                session,
                FiscalEventCode.RETURN_RECEIPT,
                operator_id=operator_id,
                related_charge_id=charge.id,
                payload={
                    "refunded_charge_id": charge.id,
                    "refund_amount": refund_amount,
                    "amount_refunded": charge.amount_refunded,
                    "original_amount": charge.amount,
                    "is_full_refund": fully_refunded,
                    "payment_method": charge.payment_method,
                    "payment_provider": charge.payment_provider,
                    "transaction_code": TRANSACTION_CODE_RETURN,
                    "reason": reason,
                    "receipt_id": receipt.id,
                    "receipt_number": receipt.receipt_number,
                    "original_receipt_id": original_receipt.id,
                    "original_receipt_number": original_receipt.receipt_number,
                    "original_session_id": charge.session_id,
                    "original_session_number": (
                        f"{original_session.session_number:06d}" if original_session else None
                    ),
                    "refund_in_current_session": charge.session_id != session.id,
                    "requires_manual_processing": not is_cash,
                },
            )

            if is_cash:
                fiscal_event_service.record_for_session(
                    session,
                    FiscalEventCode.DRAWER_OPEN,
                    operator_id=operator_id,
                    related_charge_id=charge.id,
                    payload={"amount": -refund_amount, "trigger": "cash_refund", "nullinnslag": False},
                )

            session_service.record_refund_totals(
                store_id=store_id,
                session_id=session.id,
                amount=refund_amount,
                cash_amount=refund_amount if is_cash else 0,
            )

            if is_cash:
                hardware_service.schedule_drawer_open(session.device)
            if settings_service.get_store_setting(store_id, "auto_print_receipts", True):
                hardware_service.schedule_receipt_print(session.device, receipt.rendered or "")

            return RefundResult(
                charge=charge,
                receipt=receipt,
                fiscal_event=event,
                requires_manual_processing=not is_cash,
            )

    result = _run("Refund", _op, {"store_id": store_id, "charge_id": charge_id, "session_id": session_id})
    current_app.logger.info(
        "Refunded %s of charge %s on %s", result.fiscal_event.event_data["refund_amount"], charge_id,
        result.receipt.receipt_number,
    )
    return result
