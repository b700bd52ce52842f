from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

SESSION_OPEN = "open"
SESSION_CLOSED = "closed"


class PosSession(db.Model):
    """
    One device shift (open -> closed).

    WHY: Anchors every charge, receipt and fiscal event to a till and a
    cashier, and carries the cash reconciliation figures.

    LIFECYCLE:
    - open: purchases allowed, counters move, expected cash computed live
    - closed: expected_cash frozen, cash_difference computed, no reopen path

    INVARIANTS:
    - At most one open session per (store, device); enforced by a partial
      unique index in addition to the service-level check.
    - session_number is allocated from DocumentSequence, unique per store.
    - Counters (transaction_count, total_amount, expected_cash while open)
      are written only by session_service.
    """
    __tablename__ = "pos_sessions"
    __table_args__ = (
        db.UniqueConstraint("store_id", "session_number", name="uq_pos_sessions_store_number"),
        db.Index(
            "uq_pos_sessions_open_device",
            "store_id",
            "device_id",
            unique=True,
            sqlite_where=db.text("status = 'open'"),
            postgresql_where=db.text("status = 'open'"),
        ),
        db.Index("ix_pos_sessions_store_status", "store_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey("pos_devices.id"), nullable=False, index=True)
    operator_id = db.Column(db.Integer, nullable=False, index=True)
    closed_by_operator_id = db.Column(db.Integer, nullable=True)

    session_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=SESSION_OPEN, index=True)

    # Cash tracking (minor units)
    opening_balance = db.Column(db.Integer, nullable=False, default=0)
    expected_cash = db.Column(db.Integer, nullable=True)  # running counter while open, frozen at close
    actual_cash = db.Column(db.Integer, nullable=True)
    cash_difference = db.Column(db.Integer, nullable=True)  # actual - expected

    # Running totals
    transaction_count = db.Column(db.Integer, nullable=False, default=0)
    total_amount = db.Column(db.Integer, nullable=False, default=0)

    opening_notes = db.Column(db.Text, nullable=True)
    closing_notes = db.Column(db.Text, nullable=True)
    opening_data = db.Column(db.JSON, nullable=True)
    closing_data = db.Column(db.JSON, nullable=True)  # holds the frozen Z report

    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    store = db.relationship("Store", backref=db.backref("sessions", lazy=True))
    device = db.relationship("PosDevice", backref=db.backref("sessions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_open(self) -> bool:
        return self.status == SESSION_OPEN

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "device_id": self.device_id,
            "operator_id": self.operator_id,
            "closed_by_operator_id": self.closed_by_operator_id,
            "session_number": f"{self.session_number:06d}",
            "status": self.status,
            "opening_balance": self.opening_balance,
            "expected_cash": self.expected_cash,
            "actual_cash": self.actual_cash,
            "cash_difference": self.cash_difference,
            "transaction_count": self.transaction_count,
            "total_amount": self.total_amount,
            "opening_notes": self.opening_notes,
            "closing_notes": self.closing_notes,
            "opening_data": self.opening_data,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "version_id": self.version_id,
        }
