# Overview: Pytest coverage for X and Z reports.

"""
Report Aggregator Tests

- X report is a logged, read-only snapshot of an open session
- Z report closes the session, aggregates and logs in one unit of work
- X and Z over the same charges agree on every figure
- VAT split, payment buckets, SAF-T code groupings, drawer statistics
"""

import pytest

from conftest import OPERATOR_ID, cart
from kasse.errors import InvalidStateError, NotFoundError
from kasse.models import FiscalEvent, PosSession
from kasse.money import split_vat
from kasse.services import purchase_service, report_service, session_service


@pytest.fixture
def trading_day(db_session, store, open_session, gateway):
    """Cash, card, mobile, pending invoice, a return and one drawer open without sale."""
    def buy(method, total, **kwargs):
        return purchase_service.process_purchase(
            store_id=store.id, session_id=open_session.id, payment_method_code=method,
            cart=cart(total), operator_id=OPERATOR_ID, **kwargs,
        )

    gateway.settle("pi_card", 25000)
    gateway.settle("pi_vipps", 5000)
    buy("cash", 12500)
    buy("card", 25000, reference="pi_card")
    buy("vipps", 5000, reference="pi_vipps")
    buy("invoice", 40000)
    buy("cash", -2500)
    session_service.open_drawer_without_sale(
        store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID, reason="change",
    )
    return open_session


class TestSplitVat:

    @pytest.mark.parametrize("gross,bps,expected", [
        (12500, 2500, (10000, 2500)),
        (100, 2500, (80, 20)),
        (1, 2500, (1, 0)),
        (-12500, 2500, (-10000, -2500)),
        (11500, 1500, (10000, 1500)),
        (5000, 0, (5000, 0)),
    ])
    def test_split_vat(self, gross, bps, expected):
        base, vat = split_vat(gross, bps)
        assert (base, vat) == expected
        assert base + vat == gross


class TestXReport:

    def test_x_report_figures(self, db_session, store, trading_day):
        report = report_service.x_report(store_id=store.id, session_id=trading_day.id, operator_id=OPERATOR_ID)

        assert report["report_type"] == "X"
        assert report["session_number"] == "000001"
        assert report["charge_count"] == 4
        assert report["transactions_count"] == 5
        assert report["total_amount"] == 40000
        assert report["returns_amount"] == 2500
        assert report["net_amount"] == 40000
        assert (report["vat_base"], report["vat_amount"]) == (32000, 8000)
        assert report["cash_amount"] == 10000
        assert report["card_amount"] == 25000
        assert report["mobile_amount"] == 5000
        assert report["other_amount"] == 0
        assert report["pending_count"] == 1
        assert report["pending_amount"] == 40000
        assert report["expected_cash"] == 60000
        assert report["by_payment_code"]["12001"] == {"count": 2, "amount": 10000}
        assert report["by_transaction_code"]["11006"] == {"count": 1, "amount": -2500}
        assert report["cash_drawer_opens"] == 3
        assert report["nullinnslag_count"] == 1
        assert report["receipts_by_type"] == {"sales": 4, "return": 1}
        assert len(report["transactions"]) == 4

        events = db_session.query(FiscalEvent).filter_by(event_code="13008").all()
        assert len(events) == 1
        assert events[0].event_data["net_amount"] == 40000

    def test_x_report_does_not_change_session(self, db_session, store, trading_day):
        before = db_session.query(PosSession).filter_by(id=trading_day.id).one().to_dict()
        report_service.x_report(store_id=store.id, session_id=trading_day.id, operator_id=OPERATOR_ID)
        db_session.expire_all()
        after = db_session.query(PosSession).filter_by(id=trading_day.id).one().to_dict()
        assert before == after

    def test_x_report_requires_open_session(self, db_session, store, open_session):
        session_service.close_session(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        with pytest.raises(InvalidStateError):
            report_service.x_report(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)


class TestZReport:

    def test_x_and_z_agree(self, db_session, store, trading_day):
        x = report_service.x_report(store_id=store.id, session_id=trading_day.id, operator_id=OPERATOR_ID)
        z = report_service.z_report(
            store_id=store.id, session_id=trading_day.id, operator_id=OPERATOR_ID, actual_cash=59500,
        )

        for key in ("total_amount", "net_amount", "vat_base", "vat_amount", "cash_amount", "card_amount",
                    "mobile_amount", "other_amount", "by_payment_method", "by_payment_code",
                    "by_transaction_code", "expected_cash", "charge_count", "transactions"):
            assert x[key] == z[key], key

        assert z["report_type"] == "Z"
        assert z["actual_cash"] == 59500
        assert z["cash_difference"] == -500
        assert z["closed_at"] is not None

        session = session_service.get_session(store.id, trading_day.id)
        assert session.status == "closed"
        assert session.closing_data["z_report"]["fiscal_event_id"] == z["fiscal_event_id"]

        event = db_session.query(FiscalEvent).filter_by(id=z["fiscal_event_id"]).one()
        assert event.event_code == "13009"
        assert "fiscal_event_id" not in event.event_data

    def test_z_report_is_stored_and_retrievable(self, db_session, store, open_session):
        with pytest.raises(InvalidStateError):
            report_service.get_z_report(store_id=store.id, session_id=open_session.id)

        z = report_service.z_report(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        stored = report_service.get_z_report(store_id=store.id, session_id=open_session.id)
        assert stored == z

    def test_second_z_report_fails(self, db_session, store, open_session):
        report_service.z_report(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        with pytest.raises(InvalidStateError):
            report_service.z_report(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        assert db_session.query(FiscalEvent).filter_by(event_code="13009").count() == 1

    def test_plain_close_has_no_z_report(self, db_session, store, open_session):
        session_service.close_session(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)
        with pytest.raises(NotFoundError):
            report_service.get_z_report(store_id=store.id, session_id=open_session.id)

    def test_failed_z_event_keeps_session_open(self, db_session, store, open_session, monkeypatch):
        def broken(session, report_type):
            raise RuntimeError("aggregation failed")

        monkeypatch.setattr(report_service, "build_report", broken)
        with pytest.raises(RuntimeError):
            report_service.z_report(store_id=store.id, session_id=open_session.id, operator_id=OPERATOR_ID)

        session = db_session.query(PosSession).filter_by(id=open_session.id).one()
        assert session.status == "open"
        assert db_session.query(FiscalEvent).filter_by(event_code="13021").count() == 0
