from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z


class FiscalEvent(db.Model):
    """
    Append-only fiscal audit event (SAF-T PredefinedBasicID-13).

    WHY: Regulators reconstruct till activity from these rows. A money
    movement without its event is a correctness bug, so events are written
    in the same transaction as the rows they describe.

    IMMUTABLE: Update/delete is refused by ORM listeners. Corrections are
    new events.
    """
    __tablename__ = "fiscal_events"
    __table_args__ = (
        db.Index("ix_fiscal_events_store_code_occurred", "store_id", "event_code", "occurred_at"),
        db.Index("ix_fiscal_events_session_code", "session_id", "event_code"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    device_id = db.Column(db.Integer, db.ForeignKey("pos_devices.id"), nullable=True, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey("pos_sessions.id"), nullable=True)
    operator_id = db.Column(db.Integer, nullable=True)

    event_code = db.Column(db.String(8), nullable=False)
    event_type = db.Column(db.String(32), nullable=False)
    description = db.Column(db.String(255), nullable=False)
    related_charge_id = db.Column(db.Integer, db.ForeignKey("charges.id"), nullable=True, index=True)
    event_data = db.Column(db.JSON, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "device_id": self.device_id,
            "session_id": self.session_id,
            "operator_id": self.operator_id,
            "event_code": self.event_code,
            "event_type": self.event_type,
            "description": self.description,
            "related_charge_id": self.related_charge_id,
            "event_data": self.event_data,
            "occurred_at": to_utc_z(self.occurred_at),
        }
