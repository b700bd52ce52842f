from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

PROVIDER_CASH = "cash"
PROVIDER_TERMINAL = "terminal"
PROVIDER_GIFT_CARD = "gift_card"
PROVIDER_OTHER = "other"
PROVIDERS = (PROVIDER_CASH, PROVIDER_TERMINAL, PROVIDER_GIFT_CARD, PROVIDER_OTHER)

CHARGE_PENDING = "pending"
CHARGE_SUCCEEDED = "succeeded"
CHARGE_FAILED = "failed"

RECEIPT_SALES = "sales"
RECEIPT_RETURN = "return"


class PaymentMethod(db.Model):
    """
    Store-configured way of taking money.

    provider selects the settlement strategy:
    - cash: settles synchronously, opens the drawer
    - terminal: card/mobile terminal, settled by an external confirmation reference
    - gift_card: settles by redeeming a store gift card
    - other: settles as pending, reconciled later

    provider_method refines SAF-T mapping (e.g. "card_present", "credit_card", "vipps").
    saf_t_payment_code / saf_t_event_code override the derived codes.
    """
    __tablename__ = "payment_methods"
    __table_args__ = (
        db.UniqueConstraint("store_id", "code", name="uq_payment_methods_store_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    code = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(128), nullable=False)
    provider = db.Column(db.String(32), nullable=False, default=PROVIDER_OTHER)
    provider_method = db.Column(db.String(64), nullable=True)
    enabled = db.Column(db.Boolean, nullable=False, default=True)
    saf_t_payment_code = db.Column(db.String(8), nullable=True)
    saf_t_event_code = db.Column(db.String(8), nullable=True)
    sort_order = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("payment_methods", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "code": self.code,
            "name": self.name,
            "provider": self.provider,
            "provider_method": self.provider_method,
            "enabled": self.enabled,
            "saf_t_payment_code": self.saf_t_payment_code,
            "saf_t_event_code": self.saf_t_event_code,
            "sort_order": self.sort_order,
        }


class Charge(db.Model):
    """
    One payment attempt settled against a session.

    INVARIANTS:
    - amount is the settled amount for THIS charge (signed; returns are negative)
    - a split purchase produces N charges whose amounts sum to the cart total
    - once succeeded, only refund annotations (refunded, amount_refunded,
      charge_metadata) may change; see immutability listeners
    - provider_reference is unique per store (null for cash/other)
    """
    __tablename__ = "charges"
    __table_args__ = (
        db.UniqueConstraint("store_id", "provider_reference", name="uq_charges_store_reference"),
        db.Index("ix_charges_session_status", "session_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True, index=True)
    operator_id = db.Column(db.Integer, nullable=True)

    provider_reference = db.Column(db.String(128), nullable=True)
    amount = db.Column(db.Integer, nullable=False)
    currency = db.Column(db.String(3), nullable=False)
    status = db.Column(db.String(16), nullable=False, default=CHARGE_PENDING, index=True)

    payment_method = db.Column(db.String(64), nullable=False)  # PaymentMethod.code at time of charge
    payment_provider = db.Column(db.String(32), nullable=False)
    payment_code = db.Column(db.String(8), nullable=True)  # SAF-T PredefinedBasicID-12
    transaction_code = db.Column(db.String(8), nullable=True)  # SAF-T PredefinedBasicID-11
    description = db.Column(db.String(255), nullable=True)

    captured = db.Column(db.Boolean, nullable=False, default=False)
    paid = db.Column(db.Boolean, nullable=False, default=False)
    refunded = db.Column(db.Boolean, nullable=False, default=False)
    amount_refunded = db.Column(db.Integer, nullable=False, default=0)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    charge_metadata = db.Column("metadata", db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    session = db.relationship("PosSession", backref=db.backref("charges", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "session_id": self.session_id,
            "operator_id": self.operator_id,
            "provider_reference": self.provider_reference,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_provider": self.payment_provider,
            "payment_code": self.payment_code,
            "transaction_code": self.transaction_code,
            "description": self.description,
            "captured": self.captured,
            "paid": self.paid,
            "refunded": self.refunded,
            "amount_refunded": self.amount_refunded,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "metadata": self.charge_metadata,
            "created_at": to_utc_z(self.created_at),
        }


class Receipt(db.Model):
    """Rendered receipt for one purchase (one row even for split payments)."""
    __tablename__ = "receipts"
    __table_args__ = (
        db.UniqueConstraint("store_id", "receipt_number", name="uq_receipts_store_number"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True, index=True)
    charge_id = db.Column(db.Integer, db.ForeignKey("charges.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, nullable=True)

    receipt_number = db.Column(db.String(64), nullable=False)
    receipt_type = db.Column(db.String(16), nullable=False, default=RECEIPT_SALES)
    receipt_data = db.Column(db.JSON, nullable=False)
    rendered = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    charge = db.relationship("Charge")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "session_id": self.session_id,
            "charge_id": self.charge_id,
            "operator_id": self.operator_id,
            "receipt_number": self.receipt_number,
            "receipt_type": self.receipt_type,
            "receipt_data": self.receipt_data,
            "created_at": to_utc_z(self.created_at),
        }
