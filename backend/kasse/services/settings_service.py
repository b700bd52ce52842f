# Overview: Store-level setting resolution (store config row -> app config -> default).

from __future__ import annotations

from flask import current_app

from ..extensions import db
from ..models import Store, StoreConfig

# store_configs.key -> app config key
STORE_SETTING_KEYS = {
    "gift_card_min_amount": "GIFT_CARD_MIN_AMOUNT",
    "gift_card_max_amount": "GIFT_CARD_MAX_AMOUNT",
    "gift_card_expiration_days": "GIFT_CARD_EXPIRATION_DAYS",
    "auto_print_receipts": "AUTO_PRINT_RECEIPTS",
}


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


def get_store_setting(store_id: int, key: str, default=None):
    app_key = STORE_SETTING_KEYS.get(key)
    fallback = current_app.config.get(app_key, default) if app_key else default

    row = db.session.query(StoreConfig).filter_by(store_id=store_id, key=key).first()
    if row is None or row.value is None:
        return fallback
    return _coerce(row.value, fallback) if fallback is not None else row.value


def set_store_setting(store_id: int, key: str, value) -> StoreConfig:
    """Upsert a store setting; caller commits."""
    row = db.session.query(StoreConfig).filter_by(store_id=store_id, key=key).first()
    if row is None:
        row = StoreConfig(store_id=store_id, key=key)
        db.session.add(row)
    row.value = None if value is None else str(value)
    db.session.flush()
    return row


def store_currency(store: Store) -> str:
    return (store.currency or current_app.config.get("DEFAULT_CURRENCY", "nok")).lower()


def store_vat_rate_bps(store: Store) -> int:
    if store.tax_rate_bps is None:
        return int(current_app.config.get("DEFAULT_VAT_RATE_BPS", 2500))
    return int(store.tax_rate_bps)
