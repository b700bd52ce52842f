# backend/kasse/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/kasse.sqlite3 unless DATABASE_URL is set
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///kasse.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Money defaults (all amounts in minor units, e.g. øre)
    DEFAULT_CURRENCY = os.environ.get("DEFAULT_CURRENCY", "nok")
    DEFAULT_VAT_RATE_BPS = int(os.environ.get("DEFAULT_VAT_RATE_BPS", "2500"))

    # Gift cards
    GIFT_CARD_MIN_AMOUNT = int(os.environ.get("GIFT_CARD_MIN_AMOUNT", "10000"))
    GIFT_CARD_MAX_AMOUNT = int(os.environ.get("GIFT_CARD_MAX_AMOUNT", "1000000"))
    GIFT_CARD_EXPIRATION_DAYS = int(os.environ.get("GIFT_CARD_EXPIRATION_DAYS", "365"))
    GIFT_CARD_CODE_PREFIX = os.environ.get("GIFT_CARD_CODE_PREFIX", "GC-")
    GIFT_CARD_PIN_ROUNDS = int(os.environ.get("GIFT_CARD_PIN_ROUNDS", "12"))

    # Terminal settlement polling
    SETTLEMENT_MAX_ATTEMPTS = int(os.environ.get("SETTLEMENT_MAX_ATTEMPTS", "3"))
    SETTLEMENT_BACKOFF_SECONDS = float(os.environ.get("SETTLEMENT_BACKOFF_SECONDS", "1.0"))
    SETTLEMENT_TIMEOUT_SECONDS = float(os.environ.get("SETTLEMENT_TIMEOUT_SECONDS", "10.0"))

    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL")
    PAYMENT_GATEWAY_API_KEY = os.environ.get("PAYMENT_GATEWAY_API_KEY")

    # Bounded row-lock wait
    LOCK_TIMEOUT_MS = int(os.environ.get("LOCK_TIMEOUT_MS", "5000"))

    # Hardware side effects
    AUTO_PRINT_RECEIPTS = _env_bool("AUTO_PRINT_RECEIPTS", True)
    HARDWARE_DISPATCH_ASYNC = _env_bool("HARDWARE_DISPATCH_ASYNC", True)
    HARDWARE_TIMEOUT_SECONDS = float(os.environ.get("HARDWARE_TIMEOUT_SECONDS", "2.0"))

    # Trailing window for duplicate-suppressed fiscal events
    FISCAL_EVENT_DEDUP_SECONDS = int(os.environ.get("FISCAL_EVENT_DEDUP_SECONDS", "30"))
