# Overview: Pytest coverage for the gift card ledger and gift card purchase/refund flows.

"""
Gift Card Ledger Tests

- purchase collects payment first and creates card + purchase transaction
- redemption under lock: balance, status transitions, insufficient balance
- PINs, expiry and the expiry sweep, void, manual adjustment, refund payout
- validate() is advisory and never writes
- ledger replay reproduces stored balances; audit rows are append-only
"""

import re
from datetime import timedelta

import pytest

from conftest import OPERATOR_ID, cart
from kasse.errors import (
    ImmutabilityViolationError,
    InsufficientBalanceError,
    InvalidStateError,
    NotFoundError,
    SettlementNotFoundError,
    ValidationError,
)
from kasse.models import Charge, FiscalEvent, GiftCard, GiftCardTransaction
from kasse.services import (
    gift_card_ledger,
    gift_card_service,
    purchase_service,
    session_service,
    settings_service,
)
from kasse.time_utils import utcnow


@pytest.fixture
def gift_card(db_session, store, open_session):
    """20000 øre card bought with cash."""
    return gift_card_service.purchase_gift_card(
        store_id=store.id,
        session_id=open_session.id,
        payment_method_code="cash",
        amount=20000,
        operator_id=OPERATOR_ID,
    )


def _redeem(store, open_session, card, amount, **kwargs):
    return gift_card_ledger.redeem(
        store_id=store.id,
        code=card.code,
        amount=amount,
        session_id=open_session.id,
        operator_id=OPERATOR_ID,
        **kwargs,
    )


class TestPurchase:

    def test_purchase_creates_card_and_purchase_transaction(self, db_session, store, open_session, gift_card):
        assert re.fullmatch(r"GC-[0-9A-F]{12}", gift_card.code)
        assert gift_card.status == "active"
        assert gift_card.initial_amount == 20000
        assert gift_card.balance == 20000
        assert gift_card.currency == "nok"
        assert gift_card.expires_at is not None

        txns = gift_card_ledger.transactions(store.id, gift_card.id)
        assert len(txns) == 1
        assert txns[0].transaction_type == "purchase"
        assert (txns[0].balance_before, txns[0].amount, txns[0].balance_after) == (0, 20000, 20000)
        assert txns[0].charge_id == gift_card.purchase_charge_id

        event = db_session.query(FiscalEvent).filter_by(id=txns[0].fiscal_event_id).one()
        assert event.event_code == "13023"
        assert event.session_id == open_session.id

        charge = db_session.query(Charge).filter_by(id=gift_card.purchase_charge_id).one()
        assert charge.amount == 20000
        assert charge.charge_metadata["gift_card_purchase"] is True
        assert charge.charge_metadata["items"][0]["article_group_code"] == "04999"
        assert session_service.expected_cash(open_session) == 70000

    def test_failed_payment_leaves_no_card(self, db_session, store, open_session):
        with pytest.raises(SettlementNotFoundError):
            gift_card_service.purchase_gift_card(
                store_id=store.id, session_id=open_session.id, payment_method_code="card",
                amount=20000, operator_id=OPERATOR_ID, reference="pi_never",
            )
        assert db_session.query(GiftCard).count() == 0
        assert db_session.query(Charge).count() == 0

    def test_amount_band_uses_store_setting(self, db_session, store, open_session):
        with pytest.raises(ValidationError):
            gift_card_service.purchase_gift_card(
                store_id=store.id, session_id=open_session.id, payment_method_code="cash",
                amount=5000, operator_id=OPERATOR_ID,
            )

        settings_service.set_store_setting(store.id, "gift_card_min_amount", 1000)
        db_session.commit()

        card = gift_card_service.purchase_gift_card(
            store_id=store.id, session_id=open_session.id, payment_method_code="cash",
            amount=5000, operator_id=OPERATOR_ID,
        )
        assert card.balance == 5000

    def test_gift_card_cannot_buy_gift_card(self, db_session, store, open_session, gift_card):
        with pytest.raises(ValidationError):
            gift_card_service.purchase_gift_card(
                store_id=store.id, session_id=open_session.id, payment_method_code="gift_card",
                amount=10000, operator_id=OPERATOR_ID,
            )

    def test_pin_is_hashed_and_required(self, db_session, store, open_session):
        card = gift_card_service.purchase_gift_card(
            store_id=store.id, session_id=open_session.id, payment_method_code="cash",
            amount=10000, operator_id=OPERATOR_ID, with_pin=True,
        )
        assert re.fullmatch(r"\d{4}", card.issued_pin)
        assert card.pin_hash != card.issued_pin
        assert card.to_dict()["has_pin"] is True

        with pytest.raises(InvalidStateError):
            _redeem(store, open_session, card, 1000)
        with pytest.raises(InvalidStateError):
            _redeem(store, open_session, card, 1000, pin="abcd")

        txn = _redeem(store, open_session, card, 1000, pin=card.issued_pin)
        assert txn.balance_after == 9000

    def test_explicit_pin_must_be_four_digits(self, db_session, store, open_session):
        with pytest.raises(ValidationError):
            gift_card_service.purchase_gift_card(
                store_id=store.id, session_id=open_session.id, payment_method_code="cash",
                amount=10000, operator_id=OPERATOR_ID, pin="12",
            )
        assert db_session.query(GiftCard).count() == 0


class TestRedeem:

    def test_redeem_until_empty(self, db_session, store, open_session, gift_card):
        first = _redeem(store, open_session, gift_card, 15000)
        assert first.balance_before == 20000
        assert first.balance_after == 5000
        assert gift_card_ledger.get_card(store.id, gift_card.id).status == "active"

        _redeem(store, open_session, gift_card, 5000)
        card = gift_card_ledger.get_card(store.id, gift_card.id)
        assert card.balance == 0
        assert card.status == "redeemed"
        assert card.amount_redeemed == 20000

        with pytest.raises(InsufficientBalanceError) as excinfo:
            _redeem(store, open_session, gift_card, 1)
        assert excinfo.value.details["balance"] == 0

    def test_overdraw_changes_nothing(self, db_session, store, open_session, gift_card):
        with pytest.raises(InsufficientBalanceError):
            _redeem(store, open_session, gift_card, 20001)

        card = gift_card_ledger.get_card(store.id, gift_card.id)
        assert card.balance == 20000
        assert len(gift_card_ledger.transactions(store.id, gift_card.id)) == 1

    def test_codes_are_store_scoped_and_case_insensitive(self, db_session, store, other_store, open_session,
                                                          gift_card):
        with pytest.raises(NotFoundError):
            gift_card_ledger.redeem(store_id=other_store.id, code=gift_card.code, amount=100)

        txn = gift_card_ledger.redeem(store_id=store.id, code=f"  {gift_card.code.lower()} ", amount=100)
        assert txn.balance_after == 19900

    def test_expired_card_rejected(self, db_session, store, open_session, gift_card):
        gift_card.expires_at = utcnow() - timedelta(days=1)
        db_session.commit()

        with pytest.raises(InvalidStateError) as excinfo:
            _redeem(store, open_session, gift_card, 100)
        assert "expired" in excinfo.value.reason

    def test_pay_with_gift_card_links_charge(self, db_session, store, open_session, gift_card):
        result = purchase_service.process_purchase(
            store_id=store.id, session_id=open_session.id, payment_method_code="gift_card",
            cart=cart(4000), operator_id=OPERATOR_ID, gift_card_code=gift_card.code,
        )

        assert result.charge.payment_code == "12005"
        txns = gift_card_ledger.transactions(store.id, gift_card.id)
        assert txns[-1].transaction_type == "redemption"
        assert txns[-1].charge_id == result.charge.id
        assert gift_card_ledger.get_card(store.id, gift_card.id).balance == 16000

    def test_failed_gift_card_payment_rolls_back_charge(self, db_session, store, open_session, gift_card):
        with pytest.raises(InsufficientBalanceError):
            purchase_service.process_purchase(
                store_id=store.id, session_id=open_session.id, payment_method_code="gift_card",
                cart=cart(25000), operator_id=OPERATOR_ID, gift_card_code=gift_card.code,
            )
        assert db_session.query(Charge).filter_by(payment_method="gift_card").count() == 0


class TestValidate:

    def test_validate_reports_without_writing(self, db_session, store, open_session, gift_card):
        version = gift_card.version_id

        ok = gift_card_ledger.validate(store_id=store.id, code=gift_card.code, amount=5000)
        assert ok == {"valid": True, "reason": None, "balance": 20000, "currency": "nok"}

        too_much = gift_card_ledger.validate(store_id=store.id, code=gift_card.code, amount=50000)
        assert too_much["valid"] is False
        assert too_much["kind"] == "insufficient_balance"
        assert too_much["balance"] == 20000

        unknown = gift_card_ledger.validate(store_id=store.id, code="GC-000000000000", amount=100)
        assert unknown["kind"] == "not_found"

        assert gift_card_ledger.get_card(store.id, gift_card.id).version_id == version
        assert db_session.query(GiftCardTransaction).count() == 1


class TestVoidAndAdjust:

    def test_void_zeroes_balance_and_blocks_use(self, db_session, store, open_session, gift_card):
        _redeem(store, open_session, gift_card, 5000)

        txn = gift_card_ledger.void_card(
            store_id=store.id, card_id=gift_card.id, operator_id=OPERATOR_ID, reason="lost",
        )
        assert txn.transaction_type == "void"
        assert txn.amount == -15000
        assert txn.balance_after == 0
        assert gift_card_ledger.get_card(store.id, gift_card.id).status == "voided"

        with pytest.raises(InvalidStateError):
            _redeem(store, open_session, gift_card, 1)
        with pytest.raises(InvalidStateError):
            gift_card_ledger.void_card(store_id=store.id, card_id=gift_card.id, operator_id=OPERATOR_ID)

    def test_adjust_up_and_down(self, db_session, store, open_session, gift_card):
        up = gift_card_ledger.adjust_balance(
            store_id=store.id, card_id=gift_card.id, delta=1000, operator_id=OPERATOR_ID, reason="goodwill",
        )
        assert up.balance_after == 21000
        card = gift_card_ledger.get_card(store.id, gift_card.id)
        assert card.initial_amount == 21000

        down = gift_card_ledger.adjust_balance(
            store_id=store.id, card_id=gift_card.id, delta=-500, operator_id=OPERATOR_ID,
        )
        assert down.balance_after == 20500
        assert gift_card_ledger.get_card(store.id, gift_card.id).initial_amount == 21000

        with pytest.raises(ValidationError):
            gift_card_ledger.adjust_balance(
                store_id=store.id, card_id=gift_card.id, delta=-30000, operator_id=OPERATOR_ID,
            )
        with pytest.raises(ValidationError):
            gift_card_ledger.adjust_balance(
                store_id=store.id, card_id=gift_card.id, delta=0, operator_id=OPERATOR_ID,
            )

        codes = [e.event_code for e in db_session.query(FiscalEvent).filter_by(event_code="13027")]
        assert len(codes) == 2


class TestExpiry:

    def test_sweep_marks_overdue_cards_expired(self, db_session, store, open_session, gift_card):
        spare = gift_card_service.purchase_gift_card(
            store_id=store.id, session_id=open_session.id, payment_method_code="cash",
            amount=10000, operator_id=OPERATOR_ID,
        )
        gift_card_ledger.void_card(store_id=store.id, card_id=spare.id, operator_id=OPERATOR_ID)
        later = utcnow() + timedelta(days=400)

        assert gift_card_ledger.expire_cards(store_id=store.id, now=later) == [gift_card.id]

        card = gift_card_ledger.get_card(store.id, gift_card.id)
        assert card.status == "expired"
        assert card.balance == 20000
        assert len(gift_card_ledger.transactions(store.id, gift_card.id)) == 1
        assert gift_card_ledger.get_card(store.id, spare.id).status == "voided"
        assert gift_card_ledger.expire_cards(store_id=store.id, now=later) == []

        with pytest.raises(InvalidStateError):
            _redeem(store, open_session, gift_card, 100)

    def test_sweep_leaves_cards_within_their_validity(self, db_session, store, open_session, gift_card):
        assert gift_card_ledger.expire_cards(store_id=store.id) == []
        assert gift_card_ledger.get_card(store.id, gift_card.id).status == "active"

        gift_card.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()

        assert gift_card_ledger.expire_cards(store_id=store.id) == [gift_card.id]
        assert gift_card_ledger.get_card(store.id, gift_card.id).status == "expired"


class TestRefund:

    def test_refund_pays_face_value_and_retires_card(self, db_session, store, open_session, gift_card):
        _redeem(store, open_session, gift_card, 5000)

        txn = gift_card_service.refund_gift_card(
            store_id=store.id, card_id=gift_card.id, session_id=open_session.id,
            payment_method_code="cash", operator_id=OPERATOR_ID, reason="customer request",
        )

        assert txn.transaction_type == "refund"
        assert txn.amount == -15000
        assert txn.balance_after == 0
        card = gift_card_ledger.get_card(store.id, gift_card.id)
        assert card.status == "refunded"

        payout = db_session.query(Charge).filter_by(id=txn.charge_id).one()
        assert payout.amount == -20000
        assert payout.transaction_code == "11006"

        event = db_session.query(FiscalEvent).filter_by(id=txn.fiscal_event_id).one()
        assert event.event_code == "13025"
        assert event.event_data["refunded_amount"] == 20000
        assert session_service.expected_cash(open_session) == 50000

        with pytest.raises(InvalidStateError):
            gift_card_service.refund_gift_card(
                store_id=store.id, card_id=gift_card.id, session_id=open_session.id,
                payment_method_code="cash", operator_id=OPERATOR_ID,
            )


class TestLedgerIntegrity:

    def test_replay_matches_stored_balance(self, db_session, store, open_session, gift_card):
        _redeem(store, open_session, gift_card, 3000)
        gift_card_ledger.adjust_balance(store_id=store.id, card_id=gift_card.id, delta=700,
                                        operator_id=OPERATOR_ID)
        _redeem(store, open_session, gift_card, 1700)

        replay = gift_card_ledger.replay_balance(store.id, gift_card.id)
        assert replay["consistent"] is True
        assert replay["replayed_balance"] == replay["stored_balance"] == 16000
        assert gift_card_ledger.verify_store_ledger(store.id) == []

    def test_transactions_are_append_only(self, db_session, store, open_session, gift_card):
        txn = gift_card_ledger.transactions(store.id, gift_card.id)[0]

        txn.amount = 99999
        with pytest.raises(ImmutabilityViolationError):
            db_session.commit()
        db_session.rollback()

        txn = gift_card_ledger.transactions(store.id, gift_card.id)[0]
        db_session.delete(txn)
        with pytest.raises(ImmutabilityViolationError):
            db_session.commit()
        db_session.rollback()

        assert gift_card_ledger.transactions(store.id, gift_card.id)[0].amount == 20000

    def test_settled_charge_only_accepts_refund_annotations(self, db_session, store, open_session, gift_card):
        charge = db_session.query(Charge).filter_by(id=gift_card.purchase_charge_id).one()

        charge.amount_refunded = 100
        db_session.commit()

        charge.amount = 1
        with pytest.raises(ImmutabilityViolationError):
            db_session.commit()
        db_session.rollback()
