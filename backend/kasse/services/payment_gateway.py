# Overview: Payment provider gateway boundary used to confirm terminal settlements.

from __future__ import annotations

from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import DependencyError
from ..extensions import PAYMENT_GATEWAY_KEY


@dataclass(frozen=True)
class Settlement:
    """A settled payment as reported by the provider."""

    reference: str
    amount: int
    currency: str
    status: str
    charge_reference: str | None = None
    payment_method_type: str | None = None


class PaymentGateway:
    """
    Contract for the external payment provider.

    retrieve_settlement returns a Settlement, or None while the confirmed
    payment has not produced a durable charge yet ("not yet visible").
    Transport failures raise DependencyError.
    """

    def retrieve_settlement(self, reference: str, *, timeout: float) -> Settlement | None:
        raise NotImplementedError


class UnconfiguredPaymentGateway(PaymentGateway):
    def retrieve_settlement(self, reference: str, *, timeout: float) -> Settlement | None:
        raise DependencyError("No payment gateway configured (set PAYMENT_GATEWAY_URL)")


class HttpPaymentGateway(PaymentGateway):
    """
    Payment-intent style HTTP gateway.

    GET {base_url}/payment_intents/{reference}
    -> {"id", "amount", "currency", "status", "latest_charge", "payment_method_type"}

    A 404, a missing latest_charge, or a "processing" status all mean the
    settlement is not visible yet.
    """

    def __init__(self, base_url: str, api_key: str | None = None, *, client: httpx.Client | None = None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.client = client or httpx.Client()

    def retrieve_settlement(self, reference: str, *, timeout: float) -> Settlement | None:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        try:
            response = self.client.get(
                f"{self.base_url}/payment_intents/{reference}",
                headers=headers,
                timeout=timeout,
            )
        except httpx.HTTPError as exc:
            raise DependencyError(f"Payment gateway unreachable: {exc}", {"reference": reference}) from exc

        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise DependencyError(
                f"Payment gateway returned HTTP {response.status_code}",
                {"reference": reference, "status_code": response.status_code},
            )

        try:
            data = response.json()
            if data.get("status") == "processing" or not data.get("latest_charge"):
                return None
            return Settlement(
                reference=data.get("id", reference),
                amount=int(data["amount"]),
                currency=str(data.get("currency", "")).lower(),
                status=data["status"],
                charge_reference=data.get("latest_charge"),
                payment_method_type=data.get("payment_method_type"),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise DependencyError(
                f"Payment gateway returned an unreadable settlement: {exc!r}",
                {"reference": reference, "status_code": response.status_code},
            ) from exc


def build_payment_gateway(config) -> PaymentGateway:
    url = config.get("PAYMENT_GATEWAY_URL")
    if not url:
        return UnconfiguredPaymentGateway()
    return HttpPaymentGateway(url, config.get("PAYMENT_GATEWAY_API_KEY"))


def get_payment_gateway() -> PaymentGateway:
    return current_app.extensions[PAYMENT_GATEWAY_KEY]
