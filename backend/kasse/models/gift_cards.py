from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

GIFT_CARD_ACTIVE = "active"
GIFT_CARD_REDEEMED = "redeemed"
GIFT_CARD_EXPIRED = "expired"
GIFT_CARD_VOIDED = "voided"
GIFT_CARD_REFUNDED = "refunded"

TXN_PURCHASE = "purchase"
TXN_REDEMPTION = "redemption"
TXN_REFUND = "refund"
TXN_ADJUSTMENT = "adjustment"
TXN_VOID = "void"


class GiftCard(db.Model):
    """
    Store-issued gift card (balance-carrying).

    WHY: A gift card is stored value; it must never go negative or above
    what was granted, and concurrent redemptions must not both spend the
    same money.

    INVARIANTS:
    - 0 <= balance <= initial_amount (check constraints + service checks)
    - status moves one way: active -> redeemed | expired | voided | refunded
    - balance is written only by gift_card_ledger under a row lock;
      version_id catches lost updates on engines without FOR UPDATE
    - never physically deleted (deleted_at soft removal)

    The PIN is stored as a bcrypt hash. The plaintext is only available on
    the in-memory object returned from issue (issued_pin), never persisted.
    """
    __tablename__ = "gift_cards"
    __table_args__ = (
        db.UniqueConstraint("code", name="uq_gift_cards_code"),
        db.CheckConstraint("balance >= 0", name="ck_gift_cards_balance_non_negative"),
        db.CheckConstraint("balance <= initial_amount", name="ck_gift_cards_balance_within_grant"),
        db.Index("ix_gift_cards_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    code = db.Column(db.String(32), nullable=False)
    pin_hash = db.Column(db.String(128), nullable=True)

    initial_amount = db.Column(db.Integer, nullable=False)
    balance = db.Column(db.Integer, nullable=False)
    amount_redeemed = db.Column(db.Integer, nullable=False, default=0)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=GIFT_CARD_ACTIVE, index=True)

    purchase_charge_id = db.Column(db.Integer, db.ForeignKey("charges.id"), nullable=True)
    purchase_session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True)
    purchased_by_operator_id = db.Column(db.Integer, nullable=True)
    customer_id = db.Column(db.Integer, nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)

    purchased_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    expires_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    transactions = db.relationship(
        "GiftCardTransaction",
        backref="gift_card",
        lazy=True,
        order_by="GiftCardTransaction.id",
    )
    __mapper_args__ = {"version_id_col": version_id}

    # Plaintext PIN, set only on the object returned when the card is issued
    issued_pin = None

    @property
    def has_pin(self) -> bool:
        return self.pin_hash is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "code": self.code,
            "has_pin": self.has_pin,
            "initial_amount": self.initial_amount,
            "balance": self.balance,
            "amount_redeemed": self.amount_redeemed,
            "currency": self.currency,
            "status": self.status,
            "purchase_charge_id": self.purchase_charge_id,
            "customer_id": self.customer_id,
            "purchased_at": to_utc_z(self.purchased_at),
            "expires_at": to_utc_z(self.expires_at) if self.expires_at else None,
            "last_used_at": to_utc_z(self.last_used_at) if self.last_used_at else None,
            "version_id": self.version_id,
        }


class GiftCardTransaction(db.Model):
    """
    Append-only balance movement for one gift card.

    INVARIANT: balance_after = balance_before + amount, and replaying a
    card's rows in id order from zero reproduces its stored balance.
    """
    __tablename__ = "gift_card_transactions"
    __table_args__ = (
        db.CheckConstraint("balance_after = balance_before + amount", name="ck_gift_card_txn_arithmetic"),
        db.CheckConstraint("balance_after >= 0", name="ck_gift_card_txn_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    gift_card_id = db.Column(db.Integer, db.ForeignKey("gift_cards.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    transaction_type = db.Column(db.String(16), nullable=False)

    amount = db.Column(db.Integer, nullable=False)
    balance_before = db.Column(db.Integer, nullable=False)
    balance_after = db.Column(db.Integer, nullable=False)

    charge_id = db.Column(db.Integer, db.ForeignKey("charges.id"), nullable=True, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True, index=True)
    fiscal_event_id = db.Column(db.Integer, db.ForeignKey("fiscal_events.id"), nullable=True)
    operator_id = db.Column(db.Integer, nullable=True)
    notes = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "gift_card_id": self.gift_card_id,
            "transaction_type": self.transaction_type,
            "amount": self.amount,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "charge_id": self.charge_id,
            "session_id": self.session_id,
            "fiscal_event_id": self.fiscal_event_id,
            "operator_id": self.operator_id,
            "notes": self.notes,
            "created_at": to_utc_z(self.created_at),
        }
