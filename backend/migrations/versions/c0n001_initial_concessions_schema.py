"""initial concessions schema

Revision ID: c0n001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the complete order pipeline schema:
- theaters, theater_payment_configs: tenancy and per-channel gateway config
- users, session_tokens: bcrypt logins and hashed bearer tokens
- categories, kiosk_types, products, combo_offers, combo_components: catalog
- stock_months, stock_entries: monthly stock ledger per (product, source)
- orders, order_items, order_sequences: order state machine and numbering
- payment_intents, payment_attempts: gateway intents and verification history
- broadcast_events: push-event outbox tailed by the stream
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'c0n001'
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name, nullable=False, server_default=True):
    if server_default:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable,
                         server_default=sa.text('CURRENT_TIMESTAMP'))
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    # ============================================================================
    # Tenancy
    # ============================================================================
    op.create_table(
        'theaters',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('code', sa.String(length=32), nullable=True),
        sa.Column('address', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('gstin', sa.String(length=32), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_theaters_code', 'theaters', ['code'], unique=True)

    op.create_table(
        'theater_payment_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False, server_default='razorpay'),
        sa.Column('gateway_enabled', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('key_id', sa.String(length=128), nullable=True),
        sa.Column('key_secret', sa.String(length=255), nullable=True),
        sa.Column('accepted_methods', sa.JSON(), nullable=False),
        _timestamp('updated_at'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'channel', name='uq_payment_config_theater_channel'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_theater_payment_configs_theater_id', 'theater_payment_configs', ['theater_id'])

    # ============================================================================
    # Authentication
    # ============================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=True),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('roles', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_users_theater_id', 'users', ['theater_id'])
    op.create_index('ix_users_username', 'users', ['username'], unique=True)

    op.create_table(
        'session_tokens',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=True),
        sa.Column('roles', sa.JSON(), nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        _timestamp('created_at', server_default=False),
        _timestamp('last_used_at', server_default=False),
        _timestamp('expires_at', server_default=False),
        sa.Column('is_revoked', sa.Boolean(), nullable=False, server_default='0'),
        _timestamp('revoked_at', nullable=True, server_default=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_session_tokens_user_id', 'session_tokens', ['user_id'])
    op.create_index('ix_session_tokens_theater_id', 'session_tokens', ['theater_id'])
    op.create_index('ix_session_tokens_token_hash', 'session_tokens', ['token_hash'], unique=True)

    # ============================================================================
    # Catalog
    # ============================================================================
    for table, constraint in (
        ('categories', 'uq_categories_theater_name'),
        ('kiosk_types', 'uq_kiosk_types_theater_name'),
    ):
        op.create_table(
            table,
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('theater_id', sa.Integer(), nullable=False),
            sa.Column('name', sa.String(length=120), nullable=False),
            sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('image_url', sa.String(length=512), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
            sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('theater_id', 'name', name=constraint),
            sqlite_autoincrement=True
        )
        op.create_index(f'ix_{table}_theater_id', table, ['theater_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('category_id', sa.Integer(), nullable=True),
        sa.Column('kiosk_type_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sku', sa.String(length=64), nullable=True),
        sa.Column('stock_unit', sa.String(length=8), nullable=False, server_default='Nos'),
        sa.Column('pack_quantity', sa.String(length=32), nullable=True),
        sa.Column('no_qty', sa.Numeric(12, 3), nullable=False, server_default='1'),
        sa.Column('base_price', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('sale_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('gst_type', sa.String(length=16), nullable=False, server_default='EXCLUSIVE'),
        sa.Column('is_veg', sa.Boolean(), nullable=True),
        sa.Column('dietary_tags', sa.JSON(), nullable=False),
        sa.Column('image_url', sa.String(length=512), nullable=True),
        sa.Column('images', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('is_available', sa.Boolean(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.ForeignKeyConstraint(['category_id'], ['categories.id'], ),
        sa.ForeignKeyConstraint(['kiosk_type_id'], ['kiosk_types.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_theater_id', 'products', ['theater_id'])
    op.create_index('ix_products_category_id', 'products', ['category_id'])
    op.create_index('ix_products_kiosk_type_id', 'products', ['kiosk_type_id'])
    op.create_index('ix_products_theater_active', 'products', ['theater_id', 'is_active'])

    op.create_table(
        'combo_offers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('offer_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('gst_type', sa.String(length=16), nullable=False, server_default='EXCLUSIVE'),
        sa.Column('image_url', sa.String(length=512), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_combo_offers_theater_id', 'combo_offers', ['theater_id'])

    op.create_table(
        'combo_components',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('combo_id', sa.Integer(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('per_combo_quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['combo_id'], ['combo_offers.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('combo_id', 'position', name='uq_combo_components_position'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_combo_components_combo_id', 'combo_components', ['combo_id'])
    op.create_index('ix_combo_components_product_id', 'combo_components', ['product_id'])

    # ============================================================================
    # Orders
    # ============================================================================
    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('fingerprint', sa.String(length=128), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('customer_label', sa.String(length=120), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('state', sa.String(length=16), nullable=False, server_default='draft'),
        sa.Column('payment_status', sa.String(length=16), nullable=False, server_default='none'),
        sa.Column('payment_method', sa.String(length=16), nullable=False, server_default='cash'),
        sa.Column('subtotal', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('discount_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('cart_discount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('tax_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('cgst', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('sgst', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('grand_total', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('client_total', sa.Numeric(12, 2), nullable=True),
        sa.Column('offline_queued', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('totals_note', sa.String(length=255), nullable=True),
        sa.Column('refunded_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('cancel_reason', sa.String(length=255), nullable=True),
        sa.Column('cancel_path', sa.String(length=16), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('state_before_failure', sa.String(length=16), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _timestamp('created_at', server_default=False),
        _timestamp('placed_at', nullable=True, server_default=False),
        _timestamp('paid_at', nullable=True, server_default=False),
        _timestamp('completed_at', nullable=True, server_default=False),
        _timestamp('cancelled_at', nullable=True, server_default=False),
        _timestamp('refunded_at', nullable=True, server_default=False),
        _timestamp('stock_applied_at', nullable=True, server_default=False),
        _timestamp('stock_restored_at', nullable=True, server_default=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('fingerprint', name='uq_orders_fingerprint'),
        sa.UniqueConstraint('theater_id', 'order_number', name='uq_orders_theater_number'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index('ix_orders_theater_id', ['theater_id'])
        batch_op.create_index('ix_orders_source', ['source'])
        batch_op.create_index('ix_orders_state', ['state'])
        batch_op.create_index('ix_orders_theater_state_created', ['theater_id', 'state', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('item_index', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=True),
        sa.Column('combo_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('gst_type', sa.String(length=16), nullable=False),
        sa.Column('discount_percent', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('unit_price_after_discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('taxable_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('cgst', sa.Numeric(12, 2), nullable=False),
        sa.Column('sgst', sa.Numeric(12, 2), nullable=False),
        sa.Column('line_total', sa.Numeric(12, 2), nullable=False),
        sa.Column('stock_unit', sa.String(length=8), nullable=True),
        sa.Column('per_unit_stock_consumption', sa.Numeric(18, 6), nullable=True),
        sa.Column('component_consumption', sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['combo_id'], ['combo_offers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'item_index', name='uq_order_items_index'),
        sa.CheckConstraint('(product_id IS NULL) <> (combo_id IS NULL)', name='ck_order_items_product_xor_combo'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])
    op.create_index('ix_order_items_product_id', 'order_items', ['product_id'])
    op.create_index('ix_order_items_combo_id', 'order_items', ['combo_id'])

    op.create_table(
        'order_sequences',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('prefix', sa.String(length=8), nullable=False),
        sa.Column('next_value', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', name='uq_order_sequences_theater'),
        sqlite_autoincrement=True
    )

    # ============================================================================
    # Stock ledger
    # ============================================================================
    op.create_table(
        'stock_months',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('stock_source', sa.String(length=16), nullable=False, server_default='cafe'),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('month', sa.Integer(), nullable=False),
        sa.Column('stock_unit', sa.String(length=8), nullable=False),
        sa.Column('opening_balance', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('closing_balance', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('next_sequence', sa.Integer(), nullable=False, server_default='1'),
        _timestamp('created_at'),
        _timestamp('updated_at'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('theater_id', 'product_id', 'stock_source', 'year', 'month',
                            name='uq_stock_months_key'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_stock_months_theater_id', 'stock_months', ['theater_id'])
    op.create_index('ix_stock_months_product_id', 'stock_months', ['product_id'])
    op.create_index('ix_stock_months_product_period', 'stock_months',
                    ['product_id', 'stock_source', 'year', 'month'])

    op.create_table(
        'stock_entries',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('stock_month_id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        _timestamp('entry_date', server_default=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('sign', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Numeric(18, 6), nullable=False),
        sa.Column('unit', sa.String(length=8), nullable=False),
        sa.Column('normalized_quantity', sa.Numeric(18, 6), nullable=False),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('item_index', sa.Integer(), nullable=True),
        sa.Column('created_by_user_id', sa.Integer(), nullable=True),
        _timestamp('created_at'),
        sa.ForeignKeyConstraint(['stock_month_id'], ['stock_months.id'], ),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['created_by_user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', 'item_index', 'product_id', 'kind',
                            name='uq_stock_entries_order_line_kind'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('stock_entries', schema=None) as batch_op:
        batch_op.create_index('ix_stock_entries_stock_month_id', ['stock_month_id'])
        batch_op.create_index('ix_stock_entries_theater_id', ['theater_id'])
        batch_op.create_index('ix_stock_entries_product_id', ['product_id'])
        batch_op.create_index('ix_stock_entries_kind', ['kind'])
        batch_op.create_index('ix_stock_entries_order_id', ['order_id'])
        batch_op.create_index('ix_stock_entries_month_order', ['stock_month_id', 'entry_date', 'sequence'])

    # ============================================================================
    # Payments
    # ============================================================================
    op.create_table(
        'payment_intents',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('channel', sa.String(length=16), nullable=False),
        sa.Column('method', sa.String(length=16), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('gateway_order_id', sa.String(length=64), nullable=False),
        sa.Column('key_id', sa.String(length=128), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='INR'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='created'),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.String(length=255), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        _timestamp('created_at', server_default=False),
        _timestamp('expires_at', server_default=False),
        _timestamp('verified_at', nullable=True, server_default=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_payment_intents_order'),
        sa.UniqueConstraint('gateway_order_id', name='uq_payment_intents_handle'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payment_intents_order_id', 'payment_intents', ['order_id'])
    op.create_index('ix_payment_intents_theater_id', 'payment_intents', ['theater_id'])
    op.create_index('ix_payment_intents_status', 'payment_intents', ['status'])
    op.create_index('ix_payment_intents_expires_at', 'payment_intents', ['expires_at'])

    op.create_table(
        'payment_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('intent_id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.String(length=64), nullable=True),
        sa.Column('outcome', sa.String(length=16), nullable=False),
        sa.Column('reason', sa.String(length=255), nullable=True),
        _timestamp('occurred_at', server_default=False),
        sa.ForeignKeyConstraint(['intent_id'], ['payment_intents.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payment_attempts_intent_id', 'payment_attempts', ['intent_id'])

    # ============================================================================
    # Broadcast outbox
    # ============================================================================
    op.create_table(
        'broadcast_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('theater_id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        _timestamp('created_at', server_default=False),
        sa.ForeignKeyConstraint(['theater_id'], ['theaters.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_broadcast_events_theater_id', 'broadcast_events', ['theater_id', 'id'])


def downgrade():
    op.drop_table('broadcast_events')
    op.drop_table('payment_attempts')
    op.drop_table('payment_intents')
    op.drop_table('stock_entries')
    op.drop_table('stock_months')
    op.drop_table('order_sequences')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('combo_components')
    op.drop_table('combo_offers')
    op.drop_table('products')
    op.drop_table('kiosk_types')
    op.drop_table('categories')
    op.drop_table('session_tokens')
    op.drop_table('users')
    op.drop_table('theater_payment_configs')
    op.drop_table('theaters')
