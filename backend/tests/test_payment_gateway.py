# Overview: Pytest coverage for the HTTP payment gateway adapter.

import httpx
import pytest

from kasse.errors import DependencyError
from kasse.services.payment_gateway import (
    HttpPaymentGateway,
    UnconfiguredPaymentGateway,
    build_payment_gateway,
)


def _gateway(handler, api_key="sk_test"):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpPaymentGateway("https://pay.example.test/v1/", api_key, client=client)


def test_settled_intent_maps_to_settlement():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, json={
            "id": "pi_123",
            "amount": 25000,
            "currency": "NOK",
            "status": "succeeded",
            "latest_charge": "ch_123",
            "payment_method_type": "card_present",
        })

    settlement = _gateway(handler).retrieve_settlement("pi_123", timeout=2.0)

    assert seen["url"] == "https://pay.example.test/v1/payment_intents/pi_123"
    assert seen["auth"] == "Bearer sk_test"
    assert settlement.amount == 25000
    assert settlement.currency == "nok"
    assert settlement.charge_reference == "ch_123"


@pytest.mark.parametrize("response", [
    httpx.Response(404, json={"error": "not found"}),
    httpx.Response(200, json={"id": "pi_1", "amount": 1, "currency": "nok", "status": "processing",
                              "latest_charge": "ch_1"}),
    httpx.Response(200, json={"id": "pi_1", "amount": 1, "currency": "nok", "status": "succeeded",
                              "latest_charge": None}),
])
def test_not_yet_visible(response):
    assert _gateway(lambda request: response).retrieve_settlement("pi_1", timeout=2.0) is None


def test_server_error_is_dependency_error():
    with pytest.raises(DependencyError):
        _gateway(lambda request: httpx.Response(502)).retrieve_settlement("pi_1", timeout=2.0)


def test_transport_error_is_dependency_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(DependencyError):
        _gateway(handler).retrieve_settlement("pi_1", timeout=2.0)


@pytest.mark.parametrize("response", [
    httpx.Response(200, text="<html>bad gateway</html>"),
    httpx.Response(200, json={"id": "pi_1", "status": "succeeded", "latest_charge": "ch_1"}),
    httpx.Response(200, json={"id": "pi_1", "amount": "lots", "currency": "nok", "status": "succeeded",
                              "latest_charge": "ch_1"}),
    httpx.Response(200, json=["pi_1"]),
])
def test_malformed_body_is_dependency_error(response):
    with pytest.raises(DependencyError) as excinfo:
        _gateway(lambda request: response).retrieve_settlement("pi_1", timeout=2.0)

    assert excinfo.value.kind == "dependency_error"
    assert excinfo.value.details["reference"] == "pi_1"


def test_build_from_config():
    assert isinstance(build_payment_gateway({}), UnconfiguredPaymentGateway)
    gateway = build_payment_gateway({"PAYMENT_GATEWAY_URL": "https://pay.example.test"})
    assert isinstance(gateway, HttpPaymentGateway)
    with pytest.raises(DependencyError):
        UnconfiguredPaymentGateway().retrieve_settlement("pi_1", timeout=1.0)
