"""initial ledger schema

Revision ID: k0001_initial_ledger
Revises:
Create Date: 2026-03-02 00:00:00.000000

Creates the complete ledger schema:
- stores, store_configs, document_sequences: tenancy and numbering
- pos_devices, pos_sessions: tills and their shifts
- payment_methods, charges, receipts: purchase records
- gift_cards, gift_card_transactions: stored value and its history
- fiscal_events: append-only SAF-T event log
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'k0001_initial_ledger'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable,
                     server_default=sa.text('CURRENT_TIMESTAMP'))


def upgrade():
    """
    Create all tables from scratch.

    WHY: Check constraints and the partial unique index on open sessions
    back up the service-level invariants at the database level.
    """

    # ============================================================================
    # stores / store_configs / document_sequences
    # ============================================================================
    op.create_table(
        'stores',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('organization_number', sa.String(length=32), nullable=True),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='nok'),
        sa.Column('timezone', sa.String(length=64), nullable=False, server_default='Europe/Oslo'),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=False, server_default='2500'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_stores_code'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stores_code', 'stores', ['code'])

    op.create_table(
        'store_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(length=128), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'key', name='uq_store_configs_store_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_store_configs_store_id', 'store_configs', ['store_id'])

    op.create_table(
        'document_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('sequence_type', sa.String(length=32), nullable=False),
        sa.Column('next_number', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'sequence_type', name='uq_doc_sequences_store_type'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_document_sequences_store_id', 'document_sequences', ['store_id'])

    # ============================================================================
    # pos_devices / pos_sessions
    # ============================================================================
    op.create_table(
        'pos_devices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('device_type', sa.String(length=32), nullable=False, server_default='epson_printer'),
        sa.Column('device_config', sa.JSON(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'name', name='uq_pos_devices_store_name'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_pos_devices_store_id', 'pos_devices', ['store_id'])
    op.create_index('ix_pos_devices_is_active', 'pos_devices', ['is_active'])

    op.create_table(
        'pos_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=False),
        sa.Column('operator_id', sa.Integer(), nullable=False),
        sa.Column('closed_by_operator_id', sa.Integer(), nullable=True),
        sa.Column('session_number', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
        sa.Column('opening_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expected_cash', sa.Integer(), nullable=True),
        sa.Column('actual_cash', sa.Integer(), nullable=True),
        sa.Column('cash_difference', sa.Integer(), nullable=True),
        sa.Column('transaction_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('opening_notes', sa.Text(), nullable=True),
        sa.Column('closing_notes', sa.Text(), nullable=True),
        sa.Column('opening_data', sa.JSON(), nullable=True),
        sa.Column('closing_data', sa.JSON(), nullable=True),
        _timestamp('opened_at'),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['device_id'], ['pos_devices.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'session_number', name='uq_pos_sessions_store_number'),
        sqlite_autoincrement=True
    )
    # One open session per device
    op.create_index(
        'uq_pos_sessions_open_device', 'pos_sessions', ['store_id', 'device_id'],
        unique=True,
        sqlite_where=sa.text("status = 'open'"),
        postgresql_where=sa.text("status = 'open'"),
    )
    op.create_index('ix_pos_sessions_store_status', 'pos_sessions', ['store_id', 'status'])
    op.create_index('ix_pos_sessions_device_id', 'pos_sessions', ['device_id'])
    op.create_index('ix_pos_sessions_opened_at', 'pos_sessions', ['opened_at'])

    # ============================================================================
    # payment_methods / charges / receipts
    # ============================================================================
    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=128), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='other'),
        sa.Column('provider_method', sa.String(length=64), nullable=True),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('saf_t_payment_code', sa.String(length=8), nullable=True),
        sa.Column('saf_t_event_code', sa.String(length=8), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'code', name='uq_payment_methods_store_code'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'charges',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('provider_reference', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=False),  # Signed; returns are negative
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('payment_method', sa.String(length=64), nullable=False),
        sa.Column('payment_provider', sa.String(length=32), nullable=False),
        sa.Column('payment_code', sa.String(length=8), nullable=True),
        sa.Column('transaction_code', sa.String(length=8), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('captured', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('paid', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('refunded', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('amount_refunded', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['session_id'], ['pos_sessions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'provider_reference', name='uq_charges_store_reference'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_charges_session_status', 'charges', ['session_id', 'status'])
    op.create_index('ix_charges_created_at', 'charges', ['created_at'])

    op.create_table(
        'receipts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('charge_id', sa.Integer(), nullable=False),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('receipt_number', sa.String(length=64), nullable=False),
        sa.Column('receipt_type', sa.String(length=16), nullable=False, server_default='sales'),
        sa.Column('receipt_data', sa.JSON(), nullable=False),
        sa.Column('rendered', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['session_id'], ['pos_sessions.id'], ),
        sa.ForeignKeyConstraint(['charge_id'], ['charges.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('store_id', 'receipt_number', name='uq_receipts_store_number'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_receipts_session_id', 'receipts', ['session_id'])

    # ============================================================================
    # fiscal_events: append-only (no UPDATE/DELETE from the application)
    # ============================================================================
    op.create_table(
        'fiscal_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('device_id', sa.Integer(), nullable=True),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('event_code', sa.String(length=8), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=False),
        sa.Column('related_charge_id', sa.Integer(), nullable=True),
        sa.Column('event_data', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['device_id'], ['pos_devices.id'], ),
        sa.ForeignKeyConstraint(['session_id'], ['pos_sessions.id'], ),
        sa.ForeignKeyConstraint(['related_charge_id'], ['charges.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_fiscal_events_store_code_occurred', 'fiscal_events',
                    ['store_id', 'event_code', 'occurred_at'])
    op.create_index('ix_fiscal_events_session_code', 'fiscal_events', ['session_id', 'event_code'])
    op.create_index('ix_fiscal_events_occurred_at', 'fiscal_events', ['occurred_at'])

    # ============================================================================
    # gift_cards / gift_card_transactions
    # ============================================================================
    op.create_table(
        'gift_cards',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=False),
        sa.Column('pin_hash', sa.String(length=128), nullable=True),
        sa.Column('initial_amount', sa.Integer(), nullable=False),
        sa.Column('balance', sa.Integer(), nullable=False),
        sa.Column('amount_redeemed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('purchase_charge_id', sa.Integer(), nullable=True),
        sa.Column('purchase_session_id', sa.Integer(), nullable=True),
        sa.Column('purchased_by_operator_id', sa.Integer(), nullable=True),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('purchased_at'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['purchase_charge_id'], ['charges.id'], ),
        sa.ForeignKeyConstraint(['purchase_session_id'], ['pos_sessions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_gift_cards_code'),
        sa.CheckConstraint('balance >= 0', name='ck_gift_cards_balance_non_negative'),
        sa.CheckConstraint('balance <= initial_amount', name='ck_gift_cards_balance_within_grant'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_gift_cards_store_status', 'gift_cards', ['store_id', 'status'])
    op.create_index('ix_gift_cards_customer_id', 'gift_cards', ['customer_id'])

    op.create_table(
        'gift_card_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('gift_card_id', sa.Integer(), nullable=False),
        sa.Column('store_id', sa.Integer(), nullable=False),
        sa.Column('transaction_type', sa.String(length=16), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('balance_before', sa.Integer(), nullable=False),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('charge_id', sa.Integer(), nullable=True),
        sa.Column('session_id', sa.Integer(), nullable=True),
        sa.Column('fiscal_event_id', sa.Integer(), nullable=True),
        sa.Column('operator_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['gift_card_id'], ['gift_cards.id'], ),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], ),
        sa.ForeignKeyConstraint(['charge_id'], ['charges.id'], ),
        sa.ForeignKeyConstraint(['session_id'], ['pos_sessions.id'], ),
        sa.ForeignKeyConstraint(['fiscal_event_id'], ['fiscal_events.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('balance_after = balance_before + amount', name='ck_gift_card_txn_arithmetic'),
        sa.CheckConstraint('balance_after >= 0', name='ck_gift_card_txn_non_negative'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_gift_card_transactions_gift_card_id', 'gift_card_transactions', ['gift_card_id'])
    op.create_index('ix_gift_card_transactions_charge_id', 'gift_card_transactions', ['charge_id'])


def downgrade():
    op.drop_table('gift_card_transactions')
    op.drop_table('gift_cards')
    op.drop_table('fiscal_events')
    op.drop_table('receipts')
    op.drop_table('charges')
    op.drop_table('payment_methods')
    op.drop_table('pos_sessions')
    op.drop_table('pos_devices')
    op.drop_table('document_sequences')
    op.drop_table('store_configs')
    op.drop_table('stores')
