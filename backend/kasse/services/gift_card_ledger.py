"""
Gift Card Ledger: locked balance mutations and append-only history.

Every mutation here:
1. locks the card row (SELECT ... FOR UPDATE, bounded wait)
2. checks status/balance against the locked row
3. writes exactly one fiscal event and one GiftCardTransaction whose
   balance_after equals the card's new balance
4. runs inside the caller's unit of work (or its own)

The expiry sweep is the one status change with no balance movement, so it
writes neither a transaction nor an event.

This module is the only writer of GiftCard.balance. Operations that also
move money (purchase, refund) live in gift_card_service, which layers on
top of purchase_service and calls back into this module.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from flask import current_app

from ..errors import (
    InsufficientBalanceError,
    InvalidStateError,
    LedgerError,
    NotFoundError,
    ValidationError,
)
from ..extensions import db
from ..fiscal_codes import FiscalEventCode
from ..models import GiftCard, GiftCardTransaction, PosSession
from ..models.gift_cards import (
    GIFT_CARD_ACTIVE,
    GIFT_CARD_EXPIRED,
    GIFT_CARD_REDEEMED,
    GIFT_CARD_REFUNDED,
    GIFT_CARD_VOIDED,
    TXN_ADJUSTMENT,
    TXN_PURCHASE,
    TXN_REDEMPTION,
    TXN_REFUND,
    TXN_VOID,
)
from ..time_utils import utcnow
from ..validation import optional_text, require_amount
from . import fiscal_event_service
from .concurrency import first_locked, run_with_retry, unit_of_work

CODE_ATTEMPTS = 10


# =============================================================================
# CODES AND PINS
# =============================================================================

def generate_code(prefix: str | None = None) -> str:
    """GC- followed by 12 uppercase hex characters."""
    prefix = prefix if prefix is not None else current_app.config.get("GIFT_CARD_CODE_PREFIX", "GC-")
    return f"{prefix}{secrets.token_hex(6).upper()}"


def _unique_code() -> str:
    for _ in range(CODE_ATTEMPTS):
        code = generate_code()
        if not db.session.query(GiftCard.id).filter_by(code=code).first():
            return code
    raise LedgerError("Could not generate a unique gift card code")


def generate_pin() -> str:
    return f"{secrets.randbelow(10000):04d}"


def hash_pin(pin: str) -> str:
    rounds = int(current_app.config.get("GIFT_CARD_PIN_ROUNDS", 12))
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_pin(card: GiftCard, pin: Optional[str]) -> bool:
    if not card.pin_hash:
        return True
    if not pin:
        return False
    try:
        return bcrypt.checkpw(str(pin).encode("utf-8"), card.pin_hash.encode("utf-8"))
    except ValueError:
        return False


def _normalize_code(code) -> str:
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("Gift card code is required")
    return code.strip().upper()


# =============================================================================
# LOOKUPS
# =============================================================================

def get_card(store_id: int, card_id: int) -> GiftCard:
    card = (
        db.session.query(GiftCard)
        .filter_by(id=card_id, store_id=store_id)
        .filter(GiftCard.deleted_at.is_(None))
        .first()
    )
    if not card:
        raise NotFoundError(f"Gift card {card_id} not found", {"gift_card_id": card_id})
    return card


def get_by_code(store_id: int, code: str) -> GiftCard:
    code = _normalize_code(code)
    card = (
        db.session.query(GiftCard)
        .filter_by(code=code, store_id=store_id)
        .filter(GiftCard.deleted_at.is_(None))
        .first()
    )
    if not card:
        raise NotFoundError("Gift card not found", {"code": code})
    return card


def transactions(store_id: int, card_id: int) -> list[GiftCardTransaction]:
    get_card(store_id, card_id)
    return (
        db.session.query(GiftCardTransaction)
        .filter_by(gift_card_id=card_id, store_id=store_id)
        .order_by(GiftCardTransaction.id)
        .all()
    )


def lock_card(store_id: int, card_id: int) -> GiftCard:
    card = first_locked(
        db.session.query(GiftCard)
        .filter_by(id=card_id, store_id=store_id)
        .filter(GiftCard.deleted_at.is_(None)),
        f"gift card {card_id}",
    )
    if not card:
        raise NotFoundError(f"Gift card {card_id} not found", {"gift_card_id": card_id})
    return card


def _lock_by_code(store_id: int, code: str) -> GiftCard:
    card = first_locked(
        db.session.query(GiftCard)
        .filter_by(code=code, store_id=store_id)
        .filter(GiftCard.deleted_at.is_(None)),
        "gift card",
    )
    if not card:
        raise NotFoundError("Gift card not found", {"code": code})
    return card


# =============================================================================
# CHECKS
# =============================================================================

def _is_expired(card: GiftCard, now: datetime) -> bool:
    return card.status == GIFT_CARD_EXPIRED or (card.expires_at is not None and card.expires_at <= now)


def _check_redeemable(card: GiftCard, amount: int, pin: Optional[str], now: datetime) -> None:
    """Same checks for redeem and validate; order matters for the reported kind."""
    details = {"code": card.code, "status": card.status}
    if card.status in (GIFT_CARD_VOIDED, GIFT_CARD_REFUNDED):
        raise InvalidStateError(f"Gift card is {card.status}", details)
    if _is_expired(card, now):
        raise InvalidStateError("Gift card has expired", details)
    if not verify_pin(card, pin):
        raise InvalidStateError("Invalid gift card PIN", {"code": card.code})
    if card.balance < amount:
        raise InsufficientBalanceError(
            f"Insufficient gift card balance: {card.balance} available, {amount} requested (minor units)",
            {"code": card.code, "balance": card.balance, "requested": amount},
        )
    if card.status != GIFT_CARD_ACTIVE:
        raise InvalidStateError(f"Gift card is {card.status}", details)


def validate(*, store_id: int, code: str, amount: int, pin: Optional[str] = None) -> dict:
    """
    Non-mutating preflight for redeem.

    Never locks and never writes; a valid answer is advisory only, the
    locked redeem re-checks everything.
    """
    try:
        require_amount(amount, "amount")
        card = get_by_code(store_id, code)
        _check_redeemable(card, amount, pin, utcnow())
    except LedgerError as exc:
        return {"valid": False, "kind": exc.kind, "reason": exc.reason, "balance": exc.details.get("balance")}
    return {"valid": True, "reason": None, "balance": card.balance, "currency": card.currency}


# =============================================================================
# MUTATION CORE
# =============================================================================

def _apply(
    card: GiftCard,
    *,
    transaction_type: str,
    amount: int,
    code: FiscalEventCode,
    session: PosSession | None,
    operator_id: int | None,
    charge_id: int | None = None,
    notes: Optional[str] = None,
    extra_payload: Optional[dict] = None,
) -> GiftCardTransaction:
    """Move the balance by amount and write the matching event + transaction row."""
    balance_before = card.balance
    balance_after = balance_before + amount
    if balance_after < 0:
        raise InsufficientBalanceError(
            f"Gift card balance cannot go negative ({balance_before} + {amount}, minor units)",
            {"code": card.code, "balance": balance_before, "amount": amount},
        )

    card.balance = balance_after
    db.session.flush()

    payload = {
        "gift_card_id": card.id,
        "code": card.code,
        "transaction_type": transaction_type,
        "amount": amount,
        "balance_before": balance_before,
        "balance": balance_after,
        "initial_amount": card.initial_amount,
        "status": card.status,
    }
    if extra_payload:
        payload.update(extra_payload)

    event_kwargs = dict(
        code=code,
        payload=payload,
        related_charge_id=charge_id,
    )
    if session is not None:
        event = fiscal_event_service.record_for_session(session, operator_id=operator_id, **event_kwargs)
    else:
        event = fiscal_event_service.record(store_id=card.store_id, operator_id=operator_id, **event_kwargs)

    txn = GiftCardTransaction(
        gift_card_id=card.id,
        store_id=card.store_id,
        transaction_type=transaction_type,
        amount=amount,
        balance_before=balance_before,
        balance_after=balance_after,
        charge_id=charge_id,
        session_id=session.id if session is not None else None,
        fiscal_event_id=event.id,
        operator_id=operator_id,
        notes=notes,
    )
    db.session.add(txn)
    db.session.flush()
    return txn


# =============================================================================
# OPERATIONS
# =============================================================================

def issue_card(
    *,
    store_id: int,
    amount: int,
    currency: str,
    session: PosSession | None,
    operator_id: int | None,
    charge_id: int | None,
    with_pin: bool = False,
    pin: Optional[str] = None,
    customer_id: int | None = None,
    expires_in_days: int | None = None,
    notes: Optional[str] = None,
) -> GiftCard:
    """
    Create an active card and its purchase transaction (balance 0 -> amount).

    Must run inside the unit of work that collected payment for the card.
    """
    if pin is not None:
        if not (isinstance(pin, str) and pin.isdigit() and len(pin) == 4):
            raise ValidationError("PIN must be 4 digits")
        with_pin = True
    plain_pin = (pin or generate_pin()) if with_pin else None

    now = utcnow()
    card = GiftCard(
        store_id=store_id,
        code=_unique_code(),
        pin_hash=hash_pin(plain_pin) if plain_pin else None,
        initial_amount=amount,
        balance=0,
        amount_redeemed=0,
        currency=currency,
        status=GIFT_CARD_ACTIVE,
        purchase_charge_id=charge_id,
        purchase_session_id=session.id if session is not None else None,
        purchased_by_operator_id=operator_id,
        customer_id=customer_id,
        notes=notes,
        purchased_at=now,
        expires_at=now + timedelta(days=expires_in_days) if expires_in_days else None,
    )
    db.session.add(card)
    db.session.flush()

    _apply(
        card,
        transaction_type=TXN_PURCHASE,
        amount=amount,
        code=FiscalEventCode.GIFT_CARD_PURCHASED,
        session=session,
        operator_id=operator_id,
        charge_id=charge_id,
        notes=notes,
    )
    card.issued_pin = plain_pin
    return card


def redeem(
    *,
    store_id: int,
    code: str,
    amount: int,
    charge_id: int | None = None,
    session_id: int | None = None,
    pin: Optional[str] = None,
    operator_id: int | None = None,
) -> GiftCardTransaction:
    """
    Spend amount from a card under lock.

    Raises:
        NotFoundError: unknown code in this store
        InvalidStateError: voided/refunded/expired card, or bad PIN
        InsufficientBalanceError: balance < amount (including fully redeemed cards)
    """
    require_amount(amount, "amount")
    code = _normalize_code(code)

    def _op() -> GiftCardTransaction:
        with unit_of_work():
            card = _lock_by_code(store_id, code)
            now = utcnow()
            _check_redeemable(card, amount, pin, now)

            session = None
            if session_id is not None:
                session = db.session.query(PosSession).filter_by(id=session_id, store_id=store_id).first()
                if not session:
                    raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})

            card.amount_redeemed = (card.amount_redeemed or 0) + amount
            card.last_used_at = now
            if card.balance - amount == 0:
                card.status = GIFT_CARD_REDEEMED

            return _apply(
                card,
                transaction_type=TXN_REDEMPTION,
                amount=-amount,
                code=FiscalEventCode.GIFT_CARD_REDEEMED,
                session=session,
                operator_id=operator_id,
                charge_id=charge_id,
            )

    return run_with_retry(_op)


def record_refund(
    card: GiftCard,
    *,
    session: PosSession | None,
    operator_id: int | None,
    charge_id: int | None,
    refunded_amount: int,
    reason: Optional[str] = None,
) -> GiftCardTransaction:
    """Zero a locked card after its face value was paid back; caller holds the lock and the unit of work."""
    if card.status in (GIFT_CARD_REFUNDED, GIFT_CARD_VOIDED):
        raise InvalidStateError(f"Gift card is already {card.status}", {"code": card.code})
    card.status = GIFT_CARD_REFUNDED
    card.last_used_at = utcnow()
    return _apply(
        card,
        transaction_type=TXN_REFUND,
        amount=-card.balance,
        code=FiscalEventCode.GIFT_CARD_REFUNDED,
        session=session,
        operator_id=operator_id,
        charge_id=charge_id,
        notes=reason,
        extra_payload={"refunded_amount": refunded_amount, "reason": reason},
    )


def void_card(
    *,
    store_id: int,
    card_id: int,
    operator_id: int | None,
    reason: Optional[str] = None,
    session_id: int | None = None,
) -> GiftCardTransaction:
    """Zero the balance and mark the card voided; no money moves."""
    reason = optional_text(reason, "reason", 255)

    def _op() -> GiftCardTransaction:
        with unit_of_work():
            card = lock_card(store_id, card_id)
            if card.status in (GIFT_CARD_VOIDED, GIFT_CARD_REFUNDED):
                raise InvalidStateError(f"Gift card is already {card.status}", {"code": card.code})
            session = _optional_session(store_id, session_id)
            card.status = GIFT_CARD_VOIDED
            return _apply(
                card,
                transaction_type=TXN_VOID,
                amount=-card.balance,
                code=FiscalEventCode.GIFT_CARD_VOIDED,
                session=session,
                operator_id=operator_id,
                notes=reason,
                extra_payload={"reason": reason},
            )

    txn = run_with_retry(_op)
    current_app.logger.info("Voided gift card %s (store %s)", card_id, store_id)
    return txn


def adjust_balance(
    *,
    store_id: int,
    card_id: int,
    delta: int,
    operator_id: int | None,
    reason: Optional[str] = None,
    session_id: int | None = None,
) -> GiftCardTransaction:
    """
    Manual balance correction on an active card.

    Positive deltas are top-ups and extend initial_amount; negative deltas
    leave it unchanged and may not take the balance below zero.
    """
    require_amount(delta, "delta", allow_negative=True)
    reason = optional_text(reason, "reason", 255)

    def _op() -> GiftCardTransaction:
        with unit_of_work():
            card = lock_card(store_id, card_id)
            if card.status != GIFT_CARD_ACTIVE:
                raise InvalidStateError(f"Only active gift cards can be adjusted (card is {card.status})",
                                        {"code": card.code, "status": card.status})
            if card.balance + delta < 0:
                raise ValidationError(
                    f"Adjustment would make balance negative ({card.balance} + {delta}, minor units)",
                    {"code": card.code, "balance": card.balance, "delta": delta},
                )
            session = _optional_session(store_id, session_id)
            if delta > 0:
                card.initial_amount += delta
            return _apply(
                card,
                transaction_type=TXN_ADJUSTMENT,
                amount=delta,
                code=FiscalEventCode.GIFT_CARD_ADJUSTED,
                session=session,
                operator_id=operator_id,
                notes=reason,
                extra_payload={"reason": reason},
            )

    return run_with_retry(_op)


def expire_cards(*, store_id: int, now: datetime | None = None) -> list[int]:
    """
    Flip active cards whose expires_at has passed to status expired.

    Redemption already refuses a card past expires_at; this sweep makes the
    status column say so. Expiry is status-only: the balance stays on the
    card and no transaction or fiscal event is written. Returns the ids of
    the cards it expired.
    """
    now = now or utcnow()

    def _op() -> list[int]:
        with unit_of_work():
            due = (
                db.session.query(GiftCard.id)
                .filter(
                    GiftCard.store_id == store_id,
                    GiftCard.status == GIFT_CARD_ACTIVE,
                    GiftCard.expires_at.isnot(None),
                    GiftCard.expires_at <= now,
                )
                .order_by(GiftCard.id)
                .all()
            )
            expired = []
            for (card_id,) in due:
                card = lock_card(store_id, card_id)
                if card.status == GIFT_CARD_ACTIVE and _is_expired(card, now):
                    card.status = GIFT_CARD_EXPIRED
                    expired.append(card.id)
            db.session.flush()
            return expired

    expired = run_with_retry(_op)
    if expired:
        current_app.logger.info("Expired %s gift cards (store %s)", len(expired), store_id)
    return expired


def _optional_session(store_id: int, session_id: int | None) -> PosSession | None:
    if session_id is None:
        return None
    session = db.session.query(PosSession).filter_by(id=session_id, store_id=store_id).first()
    if not session:
        raise NotFoundError(f"Session {session_id} not found", {"session_id": session_id})
    return session


# =============================================================================
# LEDGER REPLAY
# =============================================================================

def replay_balance(store_id: int, card_id: int) -> dict:
    """
    Rebuild a card's balance from its transactions.

    Checks that each row chains from the previous one
    (balance_before == running total) and that the end result equals the
    stored balance.
    """
    card = get_card(store_id, card_id)
    running = 0
    broken_links = []
    for txn in transactions(store_id, card_id):
        if txn.balance_before != running or txn.balance_after != running + txn.amount:
            broken_links.append(txn.id)
        running += txn.amount
    return {
        "gift_card_id": card.id,
        "code": card.code,
        "stored_balance": card.balance,
        "replayed_balance": running,
        "broken_links": broken_links,
        "consistent": running == card.balance and not broken_links,
    }


def verify_store_ledger(store_id: int) -> list[dict]:
    """Replay every card in a store; returns only the inconsistent ones."""
    ids = [row.id for row in db.session.query(GiftCard.id).filter_by(store_id=store_id).order_by(GiftCard.id)]
    results = [replay_balance(store_id, card_id) for card_id in ids]
    return [r for r in results if not r["consistent"]]
