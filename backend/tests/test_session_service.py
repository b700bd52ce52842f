# Overview: Pytest coverage for session lifecycle and cash reconciliation.

"""
Session Manager Tests

- open/close state machine and the one-open-session-per-device rule
- per-store session numbering
- expected cash (live while open, frozen at close) and cash difference
- cash withdrawals/deposits and drawer opens without sale
"""

import pytest

from conftest import OPERATOR_ID, cart
from kasse.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from kasse.fiscal_codes import FiscalEventCode
from kasse.models import FiscalEvent, PosSession
from kasse.services import fiscal_event_service, purchase_service, session_service


class TestOpenSession:

    def test_open_assigns_sequential_numbers_per_store(self, db_session, store, device, second_device,
                                                       other_store):
        first = session_service.open_session(store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID)
        second = session_service.open_session(store_id=store.id, device_id=second_device.id,
                                              operator_id=OPERATOR_ID)

        assert first.session_number == 1
        assert second.session_number == 2
        assert first.status == "open"
        assert first.to_dict()["session_number"] == "000001"

    def test_open_logs_session_opened_event(self, db_session, store, device):
        session = session_service.open_session(
            store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID, opening_balance=1500,
        )

        events = fiscal_event_service.events_for_session(store.id, session.id, FiscalEventCode.SESSION_OPENED)
        assert len(events) == 1
        assert events[0].event_data["opening_balance"] == 1500
        assert events[0].operator_id == OPERATOR_ID

    def test_second_open_on_same_device_conflicts(self, db_session, store, device):
        session_service.open_session(store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID)

        with pytest.raises(ConflictError):
            session_service.open_session(store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID)

        assert db_session.query(PosSession).count() == 1

    def test_device_from_other_store_not_found(self, db_session, other_store, device):
        with pytest.raises(NotFoundError):
            session_service.open_session(store_id=other_store.id, device_id=device.id, operator_id=OPERATOR_ID)

    def test_negative_opening_balance_rejected(self, db_session, store, device):
        with pytest.raises(ValidationError):
            session_service.open_session(
                store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID, opening_balance=-1,
            )

    def test_reopen_after_close_gets_next_number(self, db_session, store, device):
        first = session_service.open_session(store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID)
        session_service.close_session(store_id=store.id, session_id=first.id, operator_id=OPERATOR_ID)

        second = session_service.open_session(store_id=store.id, device_id=device.id, operator_id=OPERATOR_ID)
        assert second.session_number == 2


class TestCloseSession:

    def test_cash_scenario_expected_and_difference(self, db_session, store, open_session):
        """Opening 50000 + cash sale 12000 -> expected 62000; counted 62000 -> difference 0."""
        purchase_service.process_purchase(
            store_id=store.id, session_id=open_session.id, payment_method_code="cash",
            cart=cart(12000), operator_id=OPERATOR_ID,
        )

        assert session_service.expected_cash(open_session) == 62000

        closed = session_service.close_session(
            store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, actual_cash=62000,
        )
        assert closed.status == "closed"
        assert closed.expected_cash == 62000
        assert closed.cash_difference == 0
        assert closed.closed_at is not None

    def test_close_without_count_leaves_difference_null(self, db_session, store, open_session):
        closed = session_service.close_session(store_id=store.id, session_id=open_session.id,
                                               operator_id=OPERATOR_ID)
        assert closed.actual_cash is None
        assert closed.cash_difference is None
        assert closed.expected_cash == 50000

    def test_second_close_fails_and_changes_nothing(self, db_session, store, open_session):
        closed = session_service.close_session(
            store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, actual_cash=49000,
        )
        before = (closed.expected_cash, closed.cash_difference, closed.closed_at)

        with pytest.raises(InvalidStateError):
            session_service.close_session(
                store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, actual_cash=99999,
            )

        db_session.expire_all()
        again = session_service.get_session(store.id, open_session.id)
        assert (again.expected_cash, again.cash_difference, again.closed_at) == before
        assert before[1] == -1000

    def test_closed_session_expected_cash_is_frozen(self, db_session, store, open_session, payment_methods):
        session_service.close_session(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        closed = session_service.get_session(store.id, open_session.id)
        assert session_service.expected_cash(closed) == 50000

    def test_close_logs_session_closed_event(self, db_session, store, open_session):
        session_service.close_session(store_id=store.id, session_id=open_session.id,
                                      operator_id=OPERATOR_ID, actual_cash=50000)
        events = fiscal_event_service.events_for_session(store.id, open_session.id, "13021")
        assert len(events) == 1
        assert events[0].event_data["cash_difference"] == 0

    def test_close_unknown_session(self, db_session, store):
        with pytest.raises(NotFoundError):
            session_service.close_session(store_id=store.id, session_id=424242, operator_id=OPERATOR_ID)

    def test_purchase_after_close_is_refused(self, db_session, store, open_session):
        session_service.close_session(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        with pytest.raises(InvalidStateError):
            purchase_service.process_purchase(
                store_id=store.id, session_id=open_session.id, payment_method_code="cash",
                cart=cart(1000), operator_id=OPERATOR_ID,
            )


class TestCashMovements:

    def test_withdrawal_and_deposit_feed_expected_cash(self, db_session, store, open_session, transport):
        session_service.record_cash_withdrawal(
            store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID,
            amount=20000, reason="Bank drop",
        )
        result = session_service.record_cash_deposit(
            store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID,
            amount=5000, reason="Vekslepenger",
        )

        assert result["expected_cash"] == 35000
        closed = session_service.close_session(
            store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, actual_cash=35000,
        )
        assert closed.expected_cash == 35000
        assert closed.cash_difference == 0
        assert len(transport.sent) == 2

    def test_withdrawal_requires_positive_amount(self, db_session, store, open_session):
        with pytest.raises(ValidationError):
            session_service.record_cash_withdrawal(
                store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, amount=0,
            )

    def test_open_drawer_without_sale_is_flagged(self, db_session, store, open_session, transport):
        event = session_service.open_drawer_without_sale(
            store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, reason="Bytte",
        )

        assert event.event_code == FiscalEventCode.DRAWER_OPEN.value
        assert event.event_data["nullinnslag"] is True
        assert transport.sent[0][0] == "10.0.0.50"
        assert db_session.query(FiscalEvent).filter_by(event_code="13005").count() == 1

    def test_movements_refused_on_closed_session(self, db_session, store, open_session):
        session_service.close_session(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        with pytest.raises(InvalidStateError):
            session_service.record_cash_deposit(
                store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, amount=100,
            )
