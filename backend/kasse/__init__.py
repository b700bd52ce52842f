# backend/kasse/__init__.py
from __future__ import annotations

import logging

from flask import Flask

from .config import Config
from .extensions import (
    HARDWARE_TRANSPORT_KEY,
    PAYMENT_GATEWAY_KEY,
    RECEIPT_RENDERER_KEY,
    db,
    migrate,
)


def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Bounded wait on SQLite's file lock (in seconds)
    uri = app.config["SQLALCHEMY_DATABASE_URI"]
    if uri.startswith("sqlite") and "SQLALCHEMY_ENGINE_OPTIONS" not in app.config:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = {
            "connect_args": {"timeout": app.config["LOCK_TIMEOUT_MS"] / 1000.0},
        }

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401
    from .immutability import register_immutability_listeners
    register_immutability_listeners()

    # External collaborators (tests replace these entries with fakes)
    from .services.hardware_service import EscPosSocketTransport
    from .services.payment_gateway import build_payment_gateway
    from .services.receipt_renderer import PlainTextReceiptRenderer

    app.extensions.setdefault(PAYMENT_GATEWAY_KEY, build_payment_gateway(app.config))
    app.extensions.setdefault(RECEIPT_RENDERER_KEY, PlainTextReceiptRenderer())
    app.extensions.setdefault(HARDWARE_TRANSPORT_KEY, EscPosSocketTransport())

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
