from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z

DEVICE_TYPES = ("epson_printer", "network_printer", "terminal", "none")


class PosDevice(db.Model):
    """
    Physical POS till.

    WHY: Sessions are opened per device, and drawer/print commands are
    routed to the device's connection config ({"ip_address": ..., "port": ...}).

    DESIGN: Devices are never deleted; inactive devices cannot open sessions.
    """
    __tablename__ = "pos_devices"
    __table_args__ = (
        db.UniqueConstraint("store_id", "name", name="uq_pos_devices_store_name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=False, index=True)
    name = db.Column(db.String(128), nullable=False)
    device_type = db.Column(db.String(32), nullable=False, default="epson_printer")
    device_config = db.Column(db.JSON, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    store = db.relationship("Store", backref=db.backref("devices", lazy=True))

    @property
    def connection(self) -> tuple[str | None, int]:
        config = self.device_config or {}
        return config.get("ip_address"), int(config.get("port") or 9100)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "store_id": self.store_id,
            "name": self.name,
            "device_type": self.device_type,
            "device_config": self.device_config,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
