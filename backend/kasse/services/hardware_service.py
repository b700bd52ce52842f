# Overview: Fire-and-forget delivery of drawer kicks and receipt prints to till hardware.

"""
Hardware side effects.

Nothing here may fail a ledger operation:
- commands are scheduled with on_commit(), so they only run after the
  ledger rows are durable (and never for a rolled-back purchase)
- delivery errors are logged and swallowed
- with HARDWARE_DISPATCH_ASYNC the socket work runs on a daemon thread
"""

from __future__ import annotations

import socket
import threading

from flask import current_app

from ..extensions import HARDWARE_TRANSPORT_KEY
from ..models import PosDevice
from .concurrency import on_commit

# ESC p 0 25 250: pulse drawer kick pin 2
DRAWER_KICK = b"\x1b\x70\x00\x19\xfa"
# GS V 0: full cut
PAPER_CUT = b"\x1d\x56\x00"

PRINTER_DEVICE_TYPES = ("epson_printer", "network_printer")


class HardwareTransport:
    """Contract: send(host, port, payload, timeout); raise on delivery failure."""

    def send(self, host: str, port: int, payload: bytes, *, timeout: float) -> None:
        raise NotImplementedError


class EscPosSocketTransport(HardwareTransport):
    """Raw ESC/POS over TCP (port 9100 on most network printers)."""

    def send(self, host: str, port: int, payload: bytes, *, timeout: float) -> None:
        with socket.create_connection((host, port), timeout=timeout) as conn:
            conn.sendall(payload)


def get_hardware_transport() -> HardwareTransport:
    return current_app.extensions[HARDWARE_TRANSPORT_KEY]


def _deliver(app, transport, host, port, payload, timeout, what, device_id):
    try:
        transport.send(host, port, payload, timeout=timeout)
        app.logger.info("Sent %s to device %s (%s:%s)", what, device_id, host, port)
    except Exception:
        app.logger.exception("Failed to send %s to device %s (%s:%s)", what, device_id, host, port)


def _dispatch(target: dict | None, payload: bytes, what: str) -> None:
    app = current_app._get_current_object()
    if target is None:
        app.logger.warning("Skipping %s: no active device", what)
        return
    if target["device_type"] not in PRINTER_DEVICE_TYPES:
        app.logger.info("Skipping %s: device %s type %s has no printer", what, target["id"], target["device_type"])
        return
    if not target["host"]:
        app.logger.warning("Skipping %s: device %s has no ip_address configured", what, target["id"])
        return

    try:
        transport = get_hardware_transport()
    except KeyError:
        app.logger.error("Skipping %s: no hardware transport registered", what)
        return
    timeout = float(app.config.get("HARDWARE_TIMEOUT_SECONDS", 2.0))
    args = (app, transport, target["host"], target["port"], payload, timeout, what, target["id"])

    if app.config.get("HARDWARE_DISPATCH_ASYNC", True):
        threading.Thread(target=_deliver, args=args, daemon=True).start()
    else:
        _deliver(*args)


def _snapshot(device: PosDevice | None) -> dict | None:
    # Captured before commit so the callback never touches expired ORM state.
    if device is None or not device.is_active:
        return None
    host, port = device.connection
    return {"id": device.id, "device_type": device.device_type, "host": host, "port": port}


def schedule_drawer_open(device: PosDevice | None) -> None:
    """Kick the cash drawer once the current unit of work commits."""
    target = _snapshot(device)
    on_commit(lambda: _dispatch(target, DRAWER_KICK, "drawer open"))


def schedule_receipt_print(device: PosDevice | None, rendered: str) -> None:
    """Print a rendered receipt once the current unit of work commits."""
    target = _snapshot(device)
    payload = rendered.encode("cp865", errors="replace") + b"\n\n\n" + PAPER_CUT
    on_commit(lambda: _dispatch(target, payload, "receipt print"))
