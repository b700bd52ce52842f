# Overview: Minor-unit money helpers (VAT split).

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal


def split_vat(gross: int, rate_bps: int) -> tuple[int, int]:
    """
    Split a VAT-inclusive amount into (base, vat).

    base = gross / (1 + rate), rounded half-up to whole minor units;
    vat = gross - base, so base + vat always equals gross.
    """
    if rate_bps <= 0:
        return gross, 0
    base = (Decimal(gross) * Decimal(10000) / Decimal(10000 + rate_bps)).quantize(
        Decimal(1), rounding=ROUND_HALF_UP,
    )
    base = int(base)
    return base, gross - base
