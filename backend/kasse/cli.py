# Overview: Flask CLI command groups for bootstrap, inspection, and ledger verification.

# backend/kasse/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# Store bootstrap:
# - python -m flask stores create --name "Butikk Sentrum" --code SENTRUM --vat-bps 2500
#   Create a store (tenant).
# - python -m flask stores list
#
# Devices and payment methods:
# - python -m flask devices create --store-id 1 --name "Kasse 1" --ip 192.168.1.50
#   Register a till; drawer/print commands go to ip:port.
# - python -m flask payment-methods seed --store-id 1
#   Create the default cash/card/vipps/gift card/invoice methods (idempotent).
#
# Inspection:
# - python -m flask sessions list --store-id 1 --status open
# - python -m flask events list --store-id 1 --session-id 3
#
# Ledger verification:
# - python -m flask giftcards verify --store-id 1
#   Replay every gift card's transactions and report balance mismatches.
# - python -m flask giftcards expire --store-id 1
#   Mark active cards past their expiry date as expired.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import PaymentMethod, PosDevice, Store
from .services import fiscal_event_service, gift_card_ledger, session_service

DEFAULT_PAYMENT_METHODS = (
    # code, name, provider, provider_method
    ("cash", "Kontant", "cash", None),
    ("card", "Bankkort", "terminal", "card_present"),
    ("vipps", "Vipps", "terminal", "vipps"),
    ("gift_card", "Gavekort", "gift_card", None),
    ("invoice", "Faktura", "other", "bank_account"),
)


@click.group('stores')
def stores_group():
    """Store bootstrap commands."""


@stores_group.command('create')
@click.option('--name', required=True, help='Store name')
@click.option('--code', help='Short store code')
@click.option('--currency', default='nok', show_default=True)
@click.option('--vat-bps', type=int, default=2500, show_default=True, help='VAT rate in basis points')
@click.option('--org-number', help='Organization number printed on receipts')
@with_appcontext
def create_store_cli(name, code, currency, vat_bps, org_number):
    """Create a store."""
    store = Store(
        name=name,
        code=code,
        currency=currency.lower(),
        tax_rate_bps=vat_bps,
        organization_number=org_number,
    )
    db.session.add(store)
    db.session.commit()
    click.echo(f"PASS Created store {store.id}: {store.name}")


@stores_group.command('list')
@with_appcontext
def list_stores_cli():
    """List stores."""
    stores = db.session.query(Store).order_by(Store.id).all()
    if not stores:
        click.echo("No stores found.")
        return
    for store in stores:
        click.echo(f"{store.id:>4}  {store.code or '-':<10} {store.name}  ({store.currency}, VAT {store.tax_rate_bps} bps)")


@click.group('devices')
def devices_group():
    """POS device commands."""


@devices_group.command('create')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--name', required=True, help='Device name')
@click.option('--device-type', type=click.Choice(['epson_printer', 'network_printer', 'terminal', 'none']),
              default='epson_printer', show_default=True)
@click.option('--ip', 'ip_address', help='Printer/drawer IP address')
@click.option('--port', type=int, default=9100, show_default=True)
@with_appcontext
def create_device_cli(store_id, name, device_type, ip_address, port):
    """Register a POS device."""
    if not db.session.query(Store).filter_by(id=store_id).first():
        raise click.ClickException(f"Store {store_id} not found")
    device = PosDevice(
        store_id=store_id,
        name=name,
        device_type=device_type,
        device_config={"ip_address": ip_address, "port": port} if ip_address else None,
        is_active=True,
    )
    db.session.add(device)
    db.session.commit()
    click.echo(f"PASS Created device {device.id}: {device.name}")


@click.group('payment-methods')
def payment_methods_group():
    """Payment method commands."""


@payment_methods_group.command('seed')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def seed_payment_methods_cli(store_id):
    """Create default payment methods for a store (idempotent)."""
    if not db.session.query(Store).filter_by(id=store_id).first():
        raise click.ClickException(f"Store {store_id} not found")
    created = 0
    for order, (code, name, provider, provider_method) in enumerate(DEFAULT_PAYMENT_METHODS):
        if db.session.query(PaymentMethod).filter_by(store_id=store_id, code=code).first():
            continue
        db.session.add(PaymentMethod(
            store_id=store_id,
            code=code,
            name=name,
            provider=provider,
            provider_method=provider_method,
            enabled=True,
            sort_order=order,
        ))
        created += 1
    db.session.commit()
    click.echo(f"PASS Seeded {created} payment method(s) for store {store_id}")


@click.group('sessions')
def sessions_group():
    """Session inspection commands."""


@sessions_group.command('list')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--status', type=click.Choice(['open', 'closed']), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def list_sessions_cli(store_id, status, limit):
    """List sessions, newest first."""
    sessions = session_service.list_sessions(store_id, status=status, limit=limit)
    if not sessions:
        click.echo("No sessions found.")
        return
    for s in sessions:
        click.echo(
            f"{s.session_number:06d}  device {s.device_id:<4} {s.status:<7} "
            f"txns {s.transaction_count:<5} total {s.total_amount:<10} "
            f"expected {session_service.expected_cash(s)}  diff {s.cash_difference}"
        )


@click.group('events')
def events_group():
    """Fiscal event inspection commands."""


@events_group.command('list')
@click.option('--store-id', type=int, required=True, help='Store ID')
@click.option('--session-id', type=int, help='Only events for this session')
@click.option('--code', help='Only this event code (e.g. 13012)')
@click.option('--limit', type=int, default=50)
@with_appcontext
def list_events_cli(store_id, session_id, code, limit):
    """List fiscal events, oldest first."""
    if session_id:
        events = fiscal_event_service.events_for_session(store_id, session_id, code)[:limit]
    else:
        events = fiscal_event_service.list_events(store_id, limit=limit)
        if code:
            events = [e for e in events if e.event_code == code]
    for e in events:
        click.echo(f"{e.id:>6}  {e.event_code}  {e.occurred_at:%Y-%m-%d %H:%M:%S}  {e.description}")


@click.group('giftcards')
def giftcards_group():
    """Gift card ledger commands."""


@giftcards_group.command('verify')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def verify_gift_cards_cli(store_id):
    """Replay gift card transactions and compare with stored balances."""
    broken = gift_card_ledger.verify_store_ledger(store_id)
    if not broken:
        click.echo("PASS All gift card ledgers replay to their stored balance")
        return
    for result in broken:
        click.echo(
            f"FAIL {result['code']}: stored {result['stored_balance']}, "
            f"replayed {result['replayed_balance']}, broken rows {result['broken_links']}"
        )
    raise SystemExit(1)


@giftcards_group.command('expire')
@click.option('--store-id', type=int, required=True, help='Store ID')
@with_appcontext
def expire_gift_cards_cli(store_id):
    """Mark active gift cards past their expiry date as expired."""
    expired = gift_card_ledger.expire_cards(store_id=store_id)
    click.echo(f"PASS Expired {len(expired)} gift card(s)")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(stores_group)
    app.cli.add_command(devices_group)
    app.cli.add_command(payment_methods_group)
    app.cli.add_command(sessions_group)
    app.cli.add_command(events_group)
    app.cli.add_command(giftcards_group)
