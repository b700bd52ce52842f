# Overview: Receipt renderer boundary; turns a settled purchase into a printable artifact.

from __future__ import annotations

from flask import current_app

from ..extensions import RECEIPT_RENDERER_KEY


class ReceiptRenderer:
    """
    Contract: render(receipt_data) -> opaque artifact (str).

    Rendering is required for a purchase to complete; exceptions raised
    here abort the purchase as a DependencyError.
    """

    def render(self, receipt_data: dict) -> str:
        raise NotImplementedError


class PlainTextReceiptRenderer(ReceiptRenderer):
    """Fixed-width text receipt for 80mm printers (42 columns)."""

    width = 42

    def _money(self, amount: int) -> str:
        sign = "-" if amount < 0 else ""
        amount = abs(amount)
        return f"{sign}{amount // 100},{amount % 100:02d}"

    def _row(self, left: str, right: str) -> str:
        space = max(1, self.width - len(left) - len(right))
        return f"{left[: self.width - len(right) - 1]}{' ' * space}{right}"

    def render(self, receipt_data: dict) -> str:
        title = "KVITTERING" if receipt_data.get("receipt_type") == "sales" else "RETUR"
        lines = [
            receipt_data.get("store_name", "").center(self.width),
            title.center(self.width),
            f"Nr: {receipt_data['receipt_number']}",
            f"Kasse: {receipt_data.get('device_name', '')}  Z-nr: {receipt_data.get('session_number', '')}",
            "-" * self.width,
        ]
        if receipt_data.get("original_receipt_number"):
            lines.insert(3, f"Ref: {receipt_data['original_receipt_number']}")
        for item in receipt_data.get("items", []):
            qty = item.get("quantity", 1)
            name = str(item.get("name", ""))
            line_total = item.get("line_total")
            if line_total is None:
                line_total = (item.get("unit_price") or 0) * qty
            lines.append(self._row(f"{qty} x {name}", self._money(line_total)))
        lines.append("-" * self.width)
        lines.append(self._row("TOTAL", self._money(receipt_data["total"])))
        for payment in receipt_data.get("payments", []):
            lines.append(self._row(payment["payment_method"], self._money(payment["amount"])))
        if receipt_data.get("vat_amount") is not None:
            lines.append(self._row("Herav MVA", self._money(receipt_data["vat_amount"])))
        lines.append(receipt_data.get("created_at", ""))
        return "\n".join(lines) + "\n"


def get_receipt_renderer() -> ReceiptRenderer:
    return current_app.extensions[RECEIPT_RENDERER_KEY]
