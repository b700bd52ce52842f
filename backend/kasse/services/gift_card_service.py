"""
Gift card operations that move money.

Layering: gift_card_service -> purchase_service -> payment_router ->
gift_card_ledger. Buying or refunding a card collects/pays money through
the generic purchase path first, then mutates the card through the
ledger, all inside one unit of work. A failed payment therefore never
leaves a spendable card behind, and a failed card write never leaves an
orphan charge.
"""

from __future__ import annotations

from typing import Optional

from flask import current_app

from ..errors import InvalidStateError, LedgerError, ValidationError
from ..models import GiftCard, GiftCardTransaction
from ..models.gift_cards import GIFT_CARD_REFUNDED, GIFT_CARD_VOIDED
from ..models.payments import PROVIDER_GIFT_CARD
from ..validation import optional_text, require_amount
from . import gift_card_ledger, purchase_service, session_service, settings_service
from .concurrency import run_with_retry, unit_of_work

GIFT_CARD_ARTICLE_GROUP = "04999"
GIFT_CARD_PRODUCT_CODE = "GIFTCARD"


def _gift_card_cart(amount: int, name: str = "Gavekort") -> dict:
    return {
        "items": [{
            "name": name,
            "product_code": GIFT_CARD_PRODUCT_CODE,
            "article_group_code": GIFT_CARD_ARTICLE_GROUP,
            "quantity": 1,
            "unit_price": amount,
            "line_total": amount,
        }],
        "total": amount,
    }


def amount_band(store_id: int) -> tuple[int, int]:
    return (
        int(settings_service.get_store_setting(store_id, "gift_card_min_amount", 10000)),
        int(settings_service.get_store_setting(store_id, "gift_card_max_amount", 1000000)),
    )


def purchase_gift_card(
    *,
    store_id: int,
    session_id: int,
    payment_method_code: str,
    amount: int,
    operator_id: int | None,
    with_pin: bool = False,
    pin: Optional[str] = None,
    customer_id: int | None = None,
    expires_in_days: int | None = None,
    notes: Optional[str] = None,
    reference: Optional[str] = None,
) -> GiftCard:
    """
    Sell a new gift card.

    Payment for the face value is collected before the card row exists.
    The returned card carries issued_pin (plaintext) when a PIN was set;
    it is not retrievable later.
    """
    require_amount(amount, "amount")
    minimum, maximum = amount_band(store_id)
    if amount < minimum or amount > maximum:
        raise ValidationError(
            f"Gift card amount must be between {minimum} and {maximum} (minor units), got {amount}",
            {"amount": amount, "min": minimum, "max": maximum},
        )
    notes = optional_text(notes, "notes")
    if expires_in_days is None:
        expires_in_days = int(settings_service.get_store_setting(store_id, "gift_card_expiration_days", 365))

    def _op() -> GiftCard:
        with unit_of_work():
            method = purchase_service.resolve_payment_method(store_id, payment_method_code)
            if method.provider == PROVIDER_GIFT_CARD:
                raise ValidationError("Gift cards cannot be paid with a gift card")

            result = purchase_service.process_purchase(
                store_id=store_id,
                session_id=session_id,
                payment_method_code=payment_method_code,
                cart=_gift_card_cart(amount),
                operator_id=operator_id,
                metadata={"gift_card_purchase": True},
                reference=reference,
            )
            session = session_service.get_session(store_id, session_id)
            return gift_card_ledger.issue_card(
                store_id=store_id,
                amount=amount,
                currency=result.charge.currency,
                session=session,
                operator_id=operator_id,
                charge_id=result.charge.id,
                with_pin=with_pin,
                pin=pin,
                customer_id=customer_id,
                expires_in_days=expires_in_days or None,
                notes=notes,
            )

    try:
        card = run_with_retry(_op)
    except LedgerError as exc:
        current_app.logger.error("Gift card purchase failed (store %s): %s: %s", store_id, exc.kind, exc.reason)
        raise
    current_app.logger.info("Issued gift card %s for %s (store %s)", card.id, amount, store_id)
    return card


def refund_gift_card(
    *,
    store_id: int,
    card_id: int,
    session_id: int,
    payment_method_code: str,
    operator_id: int | None,
    reason: Optional[str] = None,
) -> GiftCardTransaction:
    """
    Pay back a card's face value (initial_amount) and retire it.

    NOTE: the payout is always the full initial_amount, even for a card
    that has been partly redeemed. A 20000 card with 15000 spent still pays
    out 20000; the ledger transaction only zeroes the remaining 5000
    balance. Check the card's balance before offering this to a customer.

    The payout is a negative purchase on the given method (cash or other),
    so it shows up as a return in the session's figures.
    """
    reason = optional_text(reason, "reason", 255)

    def _op() -> GiftCardTransaction:
        with unit_of_work():
            card = gift_card_ledger.lock_card(store_id, card_id)
            if card.status in (GIFT_CARD_REFUNDED, GIFT_CARD_VOIDED):
                raise InvalidStateError(f"Gift card is already {card.status}", {"code": card.code})

            face_value = card.initial_amount
            refund_cart = _gift_card_cart(-face_value, name="Gavekort refusjon")
            refund_cart["note"] = reason
            result = purchase_service.process_purchase(
                store_id=store_id,
                session_id=session_id,
                payment_method_code=payment_method_code,
                cart=refund_cart,
                operator_id=operator_id,
                metadata={"gift_card_refund": True, "gift_card_id": card.id},
            )
            session = session_service.get_session(store_id, session_id)
            return gift_card_ledger.record_refund(
                card,
                session=session,
                operator_id=operator_id,
                charge_id=result.charge.id,
                refunded_amount=face_value,
                reason=reason,
            )

    try:
        txn = run_with_retry(_op)
    except LedgerError as exc:
        current_app.logger.error("Gift card refund failed (card %s): %s: %s", card_id, exc.kind, exc.reason)
        raise
    current_app.logger.info("Refunded gift card %s (store %s)", card_id, store_id)
    return txn
