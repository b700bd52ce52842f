# Overview: Closed SAF-T code taxonomy for fiscal events, payments and transactions.

"""
SAF-T Cash Register code tables used by the ledger.

PredefinedBasicID-13 (events) is modelled as FiscalEventCode. The enum is
the only source of event codes: every recorder call takes a member, and
every member must appear in EVENT_DESCRIPTIONS and EVENT_CATEGORIES
(enforced at import time below).

PredefinedBasicID-12 (payment codes) and -11 (transaction codes) are
derived from a payment method by SafTCodeMapper.
"""

from __future__ import annotations

from enum import Enum

from .errors import ValidationError


class EventCategory(str, Enum):
    APPLICATION = "application"
    USER = "user"
    DRAWER = "drawer"
    REPORT = "report"
    TRANSACTION = "transaction"
    PAYMENT = "payment"
    SESSION = "session"
    GIFT_CARD = "gift_card"


class FiscalEventCode(str, Enum):
    APPLICATION_START = "13001"
    APPLICATION_SHUTDOWN = "13002"
    EMPLOYEE_LOGIN = "13003"
    EMPLOYEE_LOGOUT = "13004"
    DRAWER_OPEN = "13005"
    DRAWER_CLOSE = "13006"
    X_REPORT = "13008"
    Z_REPORT = "13009"
    SALES_RECEIPT = "13012"
    RETURN_RECEIPT = "13013"
    VOID_TRANSACTION = "13014"
    CORRECTION_RECEIPT = "13015"
    CASH_PAYMENT = "13016"
    CARD_PAYMENT = "13017"
    MOBILE_PAYMENT = "13018"
    OTHER_PAYMENT = "13019"
    SESSION_OPENED = "13020"
    SESSION_CLOSED = "13021"
    APPLICATION_RESUMED = "13022"
    GIFT_CARD_PURCHASED = "13023"
    GIFT_CARD_REDEEMED = "13024"
    GIFT_CARD_REFUNDED = "13025"
    GIFT_CARD_VOIDED = "13026"
    GIFT_CARD_ADJUSTED = "13027"
    CASH_WITHDRAWAL = "13030"
    CASH_DEPOSIT = "13031"

    @property
    def description(self) -> str:
        return EVENT_DESCRIPTIONS[self]

    @property
    def category(self) -> EventCategory:
        return EVENT_CATEGORIES[self]


EVENT_DESCRIPTIONS = {
    FiscalEventCode.APPLICATION_START: "Application start",
    FiscalEventCode.APPLICATION_SHUTDOWN: "Application shutdown",
    FiscalEventCode.EMPLOYEE_LOGIN: "Employee login",
    FiscalEventCode.EMPLOYEE_LOGOUT: "Employee logout",
    FiscalEventCode.DRAWER_OPEN: "Cash drawer open",
    FiscalEventCode.DRAWER_CLOSE: "Cash drawer close",
    FiscalEventCode.X_REPORT: "X report",
    FiscalEventCode.Z_REPORT: "Z report",
    FiscalEventCode.SALES_RECEIPT: "Sales receipt",
    FiscalEventCode.RETURN_RECEIPT: "Return receipt",
    FiscalEventCode.VOID_TRANSACTION: "Void transaction",
    FiscalEventCode.CORRECTION_RECEIPT: "Correction receipt",
    FiscalEventCode.CASH_PAYMENT: "Cash payment",
    FiscalEventCode.CARD_PAYMENT: "Card payment",
    FiscalEventCode.MOBILE_PAYMENT: "Mobile payment",
    FiscalEventCode.OTHER_PAYMENT: "Other payment method",
    FiscalEventCode.SESSION_OPENED: "Session opened",
    FiscalEventCode.SESSION_CLOSED: "Session closed",
    FiscalEventCode.APPLICATION_RESUMED: "Application resumed",
    FiscalEventCode.GIFT_CARD_PURCHASED: "Gift card purchased",
    FiscalEventCode.GIFT_CARD_REDEEMED: "Gift card redeemed",
    FiscalEventCode.GIFT_CARD_REFUNDED: "Gift card refunded",
    FiscalEventCode.GIFT_CARD_VOIDED: "Gift card voided",
    FiscalEventCode.GIFT_CARD_ADJUSTED: "Gift card balance adjusted",
    FiscalEventCode.CASH_WITHDRAWAL: "Cash withdrawal",
    FiscalEventCode.CASH_DEPOSIT: "Cash deposit",
}

EVENT_CATEGORIES = {
    FiscalEventCode.APPLICATION_START: EventCategory.APPLICATION,
    FiscalEventCode.APPLICATION_SHUTDOWN: EventCategory.APPLICATION,
    FiscalEventCode.APPLICATION_RESUMED: EventCategory.APPLICATION,
    FiscalEventCode.EMPLOYEE_LOGIN: EventCategory.USER,
    FiscalEventCode.EMPLOYEE_LOGOUT: EventCategory.USER,
    FiscalEventCode.DRAWER_OPEN: EventCategory.DRAWER,
    FiscalEventCode.DRAWER_CLOSE: EventCategory.DRAWER,
    FiscalEventCode.CASH_WITHDRAWAL: EventCategory.DRAWER,
    FiscalEventCode.CASH_DEPOSIT: EventCategory.DRAWER,
    FiscalEventCode.X_REPORT: EventCategory.REPORT,
    FiscalEventCode.Z_REPORT: EventCategory.REPORT,
    FiscalEventCode.SALES_RECEIPT: EventCategory.TRANSACTION,
    FiscalEventCode.RETURN_RECEIPT: EventCategory.TRANSACTION,
    FiscalEventCode.VOID_TRANSACTION: EventCategory.TRANSACTION,
    FiscalEventCode.CORRECTION_RECEIPT: EventCategory.TRANSACTION,
    FiscalEventCode.CASH_PAYMENT: EventCategory.PAYMENT,
    FiscalEventCode.CARD_PAYMENT: EventCategory.PAYMENT,
    FiscalEventCode.MOBILE_PAYMENT: EventCategory.PAYMENT,
    FiscalEventCode.OTHER_PAYMENT: EventCategory.PAYMENT,
    FiscalEventCode.SESSION_OPENED: EventCategory.SESSION,
    FiscalEventCode.SESSION_CLOSED: EventCategory.SESSION,
    FiscalEventCode.GIFT_CARD_PURCHASED: EventCategory.GIFT_CARD,
    FiscalEventCode.GIFT_CARD_REDEEMED: EventCategory.GIFT_CARD,
    FiscalEventCode.GIFT_CARD_REFUNDED: EventCategory.GIFT_CARD,
    FiscalEventCode.GIFT_CARD_VOIDED: EventCategory.GIFT_CARD,
    FiscalEventCode.GIFT_CARD_ADJUSTED: EventCategory.GIFT_CARD,
}

_missing = [c.name for c in FiscalEventCode if c not in EVENT_DESCRIPTIONS or c not in EVENT_CATEGORIES]
if _missing:
    raise RuntimeError(f"Fiscal event codes without description/category: {', '.join(_missing)}")

# Client lifecycle pings are noisy; the log keeps one per trailing window.
DEDUPLICATED_CODES = frozenset({
    FiscalEventCode.APPLICATION_START,
    FiscalEventCode.APPLICATION_RESUMED,
    FiscalEventCode.APPLICATION_SHUTDOWN,
})

PAYMENT_EVENT_CODES = frozenset({
    FiscalEventCode.CASH_PAYMENT,
    FiscalEventCode.CARD_PAYMENT,
    FiscalEventCode.MOBILE_PAYMENT,
    FiscalEventCode.OTHER_PAYMENT,
})


def parse_event_code(value) -> FiscalEventCode:
    """Resolve a member or raw code string; unknown codes are refused."""
    if isinstance(value, FiscalEventCode):
        return value
    try:
        return FiscalEventCode(str(value))
    except ValueError:
        raise ValidationError(f"Unknown fiscal event code: {value!r}", {"code": value})


# =============================================================================
# PAYMENT / TRANSACTION CODES (PredefinedBasicID-12 / -11)
# =============================================================================

PAYMENT_CODE_CASH = "12001"
PAYMENT_CODE_DEBIT_CARD = "12002"
PAYMENT_CODE_CREDIT_CARD = "12003"
PAYMENT_CODE_BANK_ACCOUNT = "12004"
PAYMENT_CODE_GIFT_TOKEN = "12005"
PAYMENT_CODE_CUSTOMER_CARD = "12006"
PAYMENT_CODE_LOYALTY = "12007"
PAYMENT_CODE_BOTTLE_DEPOSIT = "12008"
PAYMENT_CODE_CHECK = "12009"
PAYMENT_CODE_CREDIT_NOTE = "12010"
PAYMENT_CODE_MOBILE = "12011"
PAYMENT_CODE_OTHER = "12999"

TRANSACTION_CODE_CASH_SALE = "11001"
TRANSACTION_CODE_CREDIT_SALE = "11002"
TRANSACTION_CODE_RETURN = "11006"

PAYMENT_CODES = {
    "cash": PAYMENT_CODE_CASH,
    "card": PAYMENT_CODE_DEBIT_CARD,
    "card_present": PAYMENT_CODE_DEBIT_CARD,
    "credit_card": PAYMENT_CODE_CREDIT_CARD,
    "bank_account": PAYMENT_CODE_BANK_ACCOUNT,
    "gift_card": PAYMENT_CODE_GIFT_TOKEN,
    "gift_token": PAYMENT_CODE_GIFT_TOKEN,
    "customer_card": PAYMENT_CODE_CUSTOMER_CARD,
    "loyalty": PAYMENT_CODE_LOYALTY,
    "bottle_deposit": PAYMENT_CODE_BOTTLE_DEPOSIT,
    "check": PAYMENT_CODE_CHECK,
    "credit_note": PAYMENT_CODE_CREDIT_NOTE,
    "mobile": PAYMENT_CODE_MOBILE,
    "vipps": PAYMENT_CODE_MOBILE,
}

PAYMENT_EVENTS = {
    "cash": FiscalEventCode.CASH_PAYMENT,
    "card": FiscalEventCode.CARD_PAYMENT,
    "card_present": FiscalEventCode.CARD_PAYMENT,
    "credit_card": FiscalEventCode.CARD_PAYMENT,
    "mobile": FiscalEventCode.MOBILE_PAYMENT,
    "vipps": FiscalEventCode.MOBILE_PAYMENT,
}

# Report buckets per payment event code
PAYMENT_BUCKETS = {
    FiscalEventCode.CASH_PAYMENT: "cash",
    FiscalEventCode.CARD_PAYMENT: "card",
    FiscalEventCode.MOBILE_PAYMENT: "mobile",
    FiscalEventCode.OTHER_PAYMENT: "other",
}


class SafTCodeMapper:
    """Derive SAF-T codes from a payment method (explicit overrides win)."""

    @staticmethod
    def _keys(method) -> list[str]:
        keys = []
        for raw in (method.provider_method, method.code, method.provider):
            if raw:
                keys.append(str(raw).strip().lower())
        return keys

    @classmethod
    def payment_code(cls, method) -> str:
        if method.saf_t_payment_code:
            return method.saf_t_payment_code
        for key in cls._keys(method):
            if key in PAYMENT_CODES:
                return PAYMENT_CODES[key]
        return PAYMENT_CODE_OTHER

    @classmethod
    def event_code(cls, method) -> FiscalEventCode:
        if method.saf_t_event_code:
            return parse_event_code(method.saf_t_event_code)
        for key in cls._keys(method):
            if key in PAYMENT_EVENTS:
                return PAYMENT_EVENTS[key]
        if method.provider == "terminal":
            return FiscalEventCode.CARD_PAYMENT
        return FiscalEventCode.OTHER_PAYMENT

    @staticmethod
    def transaction_code(method, amount: int) -> str:
        if amount < 0:
            return TRANSACTION_CODE_RETURN
        if method.provider == "cash":
            return TRANSACTION_CODE_CASH_SALE
        return TRANSACTION_CODE_CREDIT_SALE
