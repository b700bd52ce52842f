# Overview: Pytest coverage for the Flask CLI command groups.

from datetime import timedelta

from conftest import OPERATOR_ID
from kasse.models import GiftCard, PaymentMethod, PosDevice, Store
from kasse.services import gift_card_service
from kasse.time_utils import utcnow


def test_store_device_and_payment_method_bootstrap(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["stores", "create", "--name", "Butikk Vest", "--code", "VEST"])
    assert result.exit_code == 0, result.output
    store = db_session.query(Store).filter_by(code="VEST").one()
    assert store.tax_rate_bps == 2500

    result = runner.invoke(args=["devices", "create", "--store-id", str(store.id), "--name", "Kasse 1",
                                 "--ip", "10.0.0.9"])
    assert result.exit_code == 0, result.output
    device = db_session.query(PosDevice).filter_by(store_id=store.id).one()
    assert device.connection == ("10.0.0.9", 9100)

    for _ in range(2):
        result = runner.invoke(args=["payment-methods", "seed", "--store-id", str(store.id)])
        assert result.exit_code == 0, result.output
    codes = {m.code for m in db_session.query(PaymentMethod).filter_by(store_id=store.id)}
    assert codes == {"cash", "card", "vipps", "gift_card", "invoice"}

    result = runner.invoke(args=["stores", "list"])
    assert "Butikk Vest" in result.output


def test_unknown_store_is_reported(app, db_session):
    result = app.test_cli_runner().invoke(args=["payment-methods", "seed", "--store-id", "999"])
    assert result.exit_code != 0
    assert "Store 999 not found" in result.output


def test_sessions_and_events_listing(app, db_session, store, open_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["sessions", "list", "--store-id", str(store.id), "--status", "open"])
    assert "000001" in result.output
    assert "expected 50000" in result.output

    result = runner.invoke(args=["events", "list", "--store-id", str(store.id),
                                 "--session-id", str(open_session.id)])
    assert "13020" in result.output


def test_gift_card_verify(app, db_session, store, open_session):
    gift_card_service.purchase_gift_card(
        store_id=store.id, session_id=open_session.id, payment_method_code="cash",
        amount=10000, operator_id=OPERATOR_ID,
    )
    result = app.test_cli_runner().invoke(args=["giftcards", "verify", "--store-id", str(store.id)])
    assert result.exit_code == 0
    assert "PASS" in result.output


def test_gift_card_expire(app, db_session, store, open_session):
    card = gift_card_service.purchase_gift_card(
        store_id=store.id, session_id=open_session.id, payment_method_code="cash",
        amount=10000, operator_id=OPERATOR_ID,
    )
    card.expires_at = utcnow() - timedelta(days=1)
    db_session.commit()

    result = app.test_cli_runner().invoke(args=["giftcards", "expire", "--store-id", str(store.id)])
    assert result.exit_code == 0
    assert "PASS Expired 1 gift card(s)" in result.output
    assert db_session.query(GiftCard).filter_by(id=card.id).one().status == "expired"
