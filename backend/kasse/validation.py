# Overview: Input coercion helpers shared by ledger services.

from __future__ import annotations

from typing import Any

from .errors import ValidationError


def require_amount(value: Any, field: str = "amount", *, allow_negative: bool = False,
                   allow_zero: bool = False) -> int:
    """
    Coerce an amount in minor units to int.

    Floats and booleans are rejected outright: amounts are integer øre,
    and a float usually means the caller passed kroner.
    """
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(
            f"{field} must be an integer amount in minor units",
            {"field": field, "value": repr(value)},
        )
    if value == 0 and not allow_zero:
        raise ValidationError(f"{field} must be non-zero (minor units)", {"field": field})
    if value < 0 and not allow_negative:
        raise ValidationError(
            f"{field} must be positive, got {value} (minor units)",
            {"field": field, "value": value},
        )
    return value


def optional_text(value: Any, field: str, max_length: int = 2000) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", {"field": field})
    value = value.strip()
    if len(value) > max_length:
        raise ValidationError(f"{field} exceeds {max_length} characters", {"field": field})
    return value or None


def normalize_cart(cart: Any) -> dict:
    """
    Validate a cart payload and return a normalized copy.

    Required:
        total: signed integer (negative carts are returns)
    Optional:
        items: list of line dicts; each line may carry quantity/unit_price/line_total
        subtotal, total_discounts, total_tax, tip_amount: integers
        discounts: list, customer_id, customer_name, note
    """
    if not isinstance(cart, dict):
        raise ValidationError("cart must be an object")

    total = require_amount(cart.get("total"), "cart.total", allow_negative=True)

    items = cart.get("items") or []
    if not isinstance(items, list) or any(not isinstance(line, dict) for line in items):
        raise ValidationError("cart.items must be a list of objects")

    for idx, line in enumerate(items):
        for key in ("quantity", "unit_price", "line_total"):
            if key in line and line[key] is not None:
                require_amount(line[key], f"cart.items[{idx}].{key}", allow_negative=True, allow_zero=True)

    normalized = {
        "items": [dict(line) for line in items],
        "total": total,
        "discounts": list(cart.get("discounts") or []),
        "customer_id": cart.get("customer_id"),
        "customer_name": optional_text(cart.get("customer_name"), "cart.customer_name", 255),
        "note": optional_text(cart.get("note"), "cart.note"),
    }
    for key in ("subtotal", "total_discounts", "total_tax", "tip_amount"):
        value = cart.get(key)
        normalized[key] = (
            require_amount(value, f"cart.{key}", allow_negative=True, allow_zero=True)
            if value is not None else None
        )
    return normalized
