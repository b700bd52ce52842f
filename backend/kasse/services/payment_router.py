# Overview: Dispatches a payment instruction to its provider strategy and persists the charge.

"""
Payment Router.

One strategy per PaymentMethod.provider:

provider   | settles as | notes
-----------|------------|-------------------------------------------------
cash       | succeeded  | synchronous, unconditional
terminal   | succeeded  | polls the gateway for the confirmed reference;
           |            | bounded attempts, backoff, hard deadline
gift_card  | succeeded  | charge row first, then a locked ledger redemption
other      | pending    | reconciled later via complete_pending_charge

Two phases per purchase:

1. prepare(): validation and the terminal settlement wait. No writes, so
   on SQLite no write transaction is open while the gateway is polled and
   other devices keep selling.
2. route(): every strategy flushes its Charge inside the caller's unit of
   work; a failure anywhere later in the purchase rolls the charge back.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

from flask import current_app

from ..errors import ConflictError, InvalidStateError, SettlementNotFoundError, ValidationError
from ..extensions import db
from ..fiscal_codes import SafTCodeMapper
from ..models import Charge, PaymentMethod, PosSession
from ..models.payments import (
    CHARGE_PENDING,
    CHARGE_SUCCEEDED,
    PROVIDER_CASH,
    PROVIDER_GIFT_CARD,
    PROVIDER_OTHER,
    PROVIDER_TERMINAL,
)
from ..time_utils import utcnow
from . import gift_card_ledger
from .payment_gateway import Settlement, get_payment_gateway


@dataclass
class PaymentInstruction:
    """One payment line: which method, how much, and provider-specific inputs."""

    method: PaymentMethod
    amount: int
    reference: Optional[str] = None
    gift_card_code: Optional[str] = None
    gift_card_pin: Optional[str] = None
    settlement_timeout: Optional[float] = None
    metadata: dict = field(default_factory=dict)
    settlement: Optional[Settlement] = None


def _new_charge(session: PosSession, instruction: PaymentInstruction, *, currency: str,
                operator_id: int | None, status: str, description: str | None) -> Charge:
    method = instruction.method
    now = utcnow()
    settled = status == CHARGE_SUCCEEDED
    return Charge(
        store_id=session.store_id,
        session_id=session.id,
        operator_id=operator_id,
        amount=instruction.amount,
        currency=currency,
        status=status,
        payment_method=method.code,
        payment_provider=method.provider,
        payment_code=SafTCodeMapper.payment_code(method),
        transaction_code=SafTCodeMapper.transaction_code(method, instruction.amount),
        description=description,
        captured=settled,
        paid=settled,
        paid_at=now if settled else None,
        charge_metadata=dict(instruction.metadata),
    )


# =============================================================================
# STRATEGIES
# =============================================================================

def _settle_cash(session, instruction, *, currency, operator_id, description) -> Charge:
    charge = _new_charge(session, instruction, currency=currency, operator_id=operator_id,
                         status=CHARGE_SUCCEEDED, description=description)
    db.session.add(charge)
    db.session.flush()
    return charge


def _settle_other(session, instruction, *, currency, operator_id, description) -> Charge:
    charge = _new_charge(session, instruction, currency=currency, operator_id=operator_id,
                         status=CHARGE_PENDING, description=description)
    charge.provider_reference = instruction.reference
    db.session.add(charge)
    db.session.flush()
    return charge


def wait_for_settlement(reference: str, *, timeout: float | None = None) -> Settlement:
    """
    Poll the gateway for a confirmed payment.

    The payment itself already happened on the terminal; what may lag is the
    durable charge record. Bounded by SETTLEMENT_MAX_ATTEMPTS and by a hard
    deadline (caller timeout or SETTLEMENT_TIMEOUT_SECONDS).
    """
    config = current_app.config
    attempts = int(config.get("SETTLEMENT_MAX_ATTEMPTS", 3))
    backoff = float(config.get("SETTLEMENT_BACKOFF_SECONDS", 1.0))
    if timeout is None:
        timeout = float(config.get("SETTLEMENT_TIMEOUT_SECONDS", 10.0))
    deadline = time.monotonic() + timeout
    gateway = get_payment_gateway()

    for attempt in range(attempts):
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            break
        settlement = gateway.retrieve_settlement(reference, timeout=remaining)
        if settlement is not None:
            return settlement
        current_app.logger.info(
            "Settlement for %s not visible yet (attempt %s/%s)", reference, attempt + 1, attempts,
        )
        if attempt < attempts - 1:
            pause = min(backoff * (2 ** attempt), deadline - time.monotonic())
            if pause > 0:
                time.sleep(pause)

    raise SettlementNotFoundError(
        f"No settled charge found for {reference} after {attempts} attempts",
        {"reference": reference, "attempts": attempts, "timeout_seconds": timeout},
    )


def _ensure_reference_unused(store_id: int, reference: str) -> None:
    duplicate = db.session.query(Charge.id).filter_by(store_id=store_id, provider_reference=reference).first()
    if duplicate:
        raise ConflictError(
            f"Payment reference {reference} is already recorded (charge {duplicate.id})",
            {"reference": reference, "charge_id": duplicate.id},
        )


def _prepare_terminal(session, instruction, *, currency) -> None:
    reference = instruction.reference
    if not reference:
        raise ValidationError(
            f"Payment method {instruction.method.code} requires a payment reference",
            {"payment_method": instruction.method.code},
        )
    if instruction.amount < 0:
        raise ValidationError(
            "Terminal refunds must be issued through the payment provider",
            {"payment_method": instruction.method.code},
        )
    _ensure_reference_unused(session.store_id, reference)

    settlement = wait_for_settlement(reference, timeout=instruction.settlement_timeout)
    if settlement.status != "succeeded":
        raise InvalidStateError(
            f"Payment {reference} is {settlement.status}, not succeeded",
            {"reference": reference, "status": settlement.status},
        )
    if settlement.amount != instruction.amount or settlement.currency.lower() != currency.lower():
        raise ValidationError(
            f"Settled {settlement.amount} {settlement.currency} does not match expected "
            f"{instruction.amount} {currency} (minor units)",
            {"reference": reference, "settled": settlement.amount, "expected": instruction.amount},
        )
    instruction.settlement = settlement


def _prepare_gift_card(session, instruction, *, currency) -> None:
    if not instruction.gift_card_code:
        raise ValidationError("Gift card payments require a gift card code")
    if instruction.amount <= 0:
        raise ValidationError("Gift card payments must be positive (minor units)")


def _settle_terminal(session, instruction, *, currency, operator_id, description) -> Charge:
    settlement = instruction.settlement
    if settlement is None:
        raise InvalidStateError(
            f"Payment {instruction.reference} was routed before its settlement was confirmed",
            {"reference": instruction.reference},
        )
    reference = instruction.reference
    # Another device may have recorded the same reference while we polled.
    _ensure_reference_unused(session.store_id, reference)

    charge = _new_charge(session, instruction, currency=currency, operator_id=operator_id,
                         status=CHARGE_SUCCEEDED, description=description)
    charge.provider_reference = reference
    charge.charge_metadata = {
        **(charge.charge_metadata or {}),
        "provider_charge_id": settlement.charge_reference,
        "payment_method_type": settlement.payment_method_type,
    }
    db.session.add(charge)
    db.session.flush()
    return charge


def _settle_gift_card(session, instruction, *, currency, operator_id, description) -> Charge:
    charge = _new_charge(session, instruction, currency=currency, operator_id=operator_id,
                         status=CHARGE_SUCCEEDED, description=description)
    charge.charge_metadata = {**(charge.charge_metadata or {}), "gift_card_code": instruction.gift_card_code}
    db.session.add(charge)
    db.session.flush()

    gift_card_ledger.redeem(
        store_id=session.store_id,
        code=instruction.gift_card_code,
        amount=instruction.amount,
        charge_id=charge.id,
        session_id=session.id,
        pin=instruction.gift_card_pin,
        operator_id=operator_id,
    )
    return charge


STRATEGIES = {
    PROVIDER_CASH: _settle_cash,
    PROVIDER_TERMINAL: _settle_terminal,
    PROVIDER_GIFT_CARD: _settle_gift_card,
    PROVIDER_OTHER: _settle_other,
}


PREPARERS = {
    PROVIDER_TERMINAL: _prepare_terminal,
    PROVIDER_GIFT_CARD: _prepare_gift_card,
}


def _strategy_for(instruction: PaymentInstruction):
    strategy = STRATEGIES.get(instruction.method.provider)
    if strategy is None:
        raise ValidationError(
            f"Unsupported payment provider: {instruction.method.provider}",
            {"payment_method": instruction.method.code},
        )
    return strategy


def prepare(session: PosSession, instruction: PaymentInstruction, *, currency: str) -> None:
    """Validate one payment line and wait for its settlement. Reads only."""
    _strategy_for(instruction)
    preparer = PREPARERS.get(instruction.method.provider)
    if preparer is not None:
        preparer(session, instruction, currency=currency)


def route(session: PosSession, instruction: PaymentInstruction, *, currency: str,
          operator_id: int | None, description: str | None = None) -> Charge:
    """Settle one prepared payment line and return its flushed Charge."""
    strategy = _strategy_for(instruction)
    return strategy(session, instruction, currency=currency, operator_id=operator_id, description=description)
