# Overview: Flask extension instances for database and migrations.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()
migrate = Migrate()

# Keys under app.extensions for the external collaborators the ledger talks to.
PAYMENT_GATEWAY_KEY = "kasse.payment_gateway"
RECEIPT_RENDERER_KEY = "kasse.receipt_renderer"
HARDWARE_TRANSPORT_KEY = "kasse.hardware_transport"
