"""initial prepfox schema

Revision ID: prepfox_0001_initial
Revises:
Create Date: 2026-03-01 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = 'prepfox_0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def _id():
    return sa.Column('id', sa.String(36), primary_key=True)


def _ts(name, nullable=False):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable, server_default=None if nullable else sa.func.now())


def _user_fk(nullable=False):
    return sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=nullable)


def upgrade():
    op.create_table(
        'users',
        _id(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('username', sa.String(100)),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('role', sa.String(32), nullable=False, server_default='user'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'carrier_configurations',
        _id(),
        _user_fk(),
        sa.Column('carrier_name', sa.String(32), nullable=False),
        sa.Column('display_name', sa.String(100)),
        sa.Column('api_credentials', sa.Text()),
        sa.Column('account_number', sa.String(64)),
        sa.Column('country', sa.String(2)),
        sa.Column('access_token', sa.Text()),
        sa.Column('refresh_token', sa.Text()),
        _ts('token_expires_at', nullable=True),
        sa.Column('markup_percent', sa.Float(), nullable=False, server_default='0'),
        sa.Column('negotiated_rates', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('test_mode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
    )
    op.create_index('idx_carrier_configurations_user_id', 'carrier_configurations', ['user_id'])
    op.create_index('idx_carrier_configurations_carrier', 'carrier_configurations', ['carrier_name', 'is_active'])

    op.create_table(
        'shipping_services',
        _id(),
        sa.Column('carrier_configuration_id', sa.String(36),
                  sa.ForeignKey('carrier_configurations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('service_code', sa.String(32), nullable=False),
        sa.Column('service_name', sa.String(100), nullable=False),
        sa.Column('service_type', sa.String(32), nullable=False, server_default='standard'),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint('carrier_configuration_id', 'service_code', name='uq_shipping_services_config_code'),
    )

    op.create_table(
        'carrier_token_refresh_log',
        _id(),
        sa.Column('carrier_configuration_id', sa.String(36),
                  sa.ForeignKey('carrier_configurations.id', ondelete='CASCADE'), nullable=False),
        _ts('started_at'),
        _ts('finished_at', nullable=True),
        sa.Column('success', sa.Boolean()),
        sa.Column('error_code', sa.String(64)),
        sa.Column('error_message', sa.Text()),
        _ts('old_expires_at', nullable=True),
        _ts('new_expires_at', nullable=True),
        sa.Column('triggered_by', sa.String(32), nullable=False, server_default='scheduled'),
    )
    op.create_index('idx_carrier_token_refresh_log_config', 'carrier_token_refresh_log',
                    ['carrier_configuration_id', 'started_at'])

    op.create_table(
        'store_configurations',
        _id(),
        _user_fk(),
        sa.Column('platform', sa.String(32), nullable=False, server_default='shopify'),
        sa.Column('store_name', sa.String(255)),
        sa.Column('store_domain', sa.String(255), nullable=False),
        sa.Column('access_token', sa.Text()),
        sa.Column('ship_from_address', postgresql.JSONB()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('user_id', 'platform', 'store_domain', name='uq_store_configurations_user_store'),
    )

    op.create_table(
        'shopify_sync_status',
        _id(),
        _user_fk(),
        sa.Column('store_configuration_id', sa.String(36),
                  sa.ForeignKey('store_configurations.id', ondelete='CASCADE')),
        sa.Column('sync_type', sa.String(32), nullable=False, server_default='products'),
        sa.Column('status', sa.String(32), nullable=False, server_default='in_progress'),
        sa.Column('items_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_page_info', sa.Text()),
        sa.Column('error_message', sa.Text()),
        _ts('started_at'),
        _ts('last_sync_at', nullable=True),
        sa.UniqueConstraint('user_id', 'sync_type', name='uq_shopify_sync_status_user_type'),
    )

    op.create_table(
        'products',
        _id(),
        _user_fk(),
        sa.Column('shopify_product_id', sa.String(64)),
        sa.Column('handle', sa.String(255), nullable=False),
        sa.Column('title', sa.Text(), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('product_type', sa.String(255)),
        sa.Column('vendor', sa.String(255)),
        sa.Column('tags', sa.Text()),
        sa.Column('category', sa.String(255)),
        sa.Column('seo_title', sa.Text()),
        sa.Column('seo_description', sa.Text()),
        sa.Column('price', sa.Numeric(12, 2)),
        sa.Column('compare_at_price', sa.Numeric(12, 2)),
        sa.Column('sku', sa.String(100)),
        sa.Column('weight', sa.Float()),
        sa.Column('weight_unit', sa.String(8)),
        sa.Column('inventory_quantity', sa.Integer()),
        sa.Column('image_url', sa.Text()),
        sa.Column('status', sa.String(32)),
        _ts('ai_optimized_at', nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('user_id', 'handle', name='uq_products_user_handle'),
    )

    op.create_table(
        'product_edit_history',
        _id(),
        sa.Column('product_id', sa.String(36), sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        _user_fk(),
        sa.Column('field_name', sa.String(64), nullable=False),
        sa.Column('old_value', sa.Text()),
        sa.Column('new_value', sa.Text()),
        sa.Column('edit_source', sa.String(16), nullable=False, server_default='manual'),
        _ts('created_at'),
    )
    op.create_index('idx_product_edit_history_product', 'product_edit_history', ['product_id', 'created_at'])

    op.create_table(
        'user_edit_patterns',
        _id(),
        _user_fk(),
        sa.Column('field_name', sa.String(64), nullable=False),
        sa.Column('pattern_description', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False, server_default='0'),
        sa.Column('is_approved', sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts('created_at'),
    )

    op.create_table(
        'orders',
        _id(),
        _user_fk(),
        sa.Column('store_configuration_id', sa.String(36),
                  sa.ForeignKey('store_configurations.id', ondelete='SET NULL')),
        sa.Column('external_order_id', sa.String(64), nullable=False),
        sa.Column('order_number', sa.String(64)),
        sa.Column('customer_name', sa.String(255)),
        sa.Column('customer_email', sa.String(255)),
        sa.Column('shipping_address', postgresql.JSONB()),
        sa.Column('total_price', sa.Numeric(12, 2)),
        sa.Column('currency', sa.String(3)),
        sa.Column('financial_status', sa.String(32)),
        sa.Column('fulfillment_status', sa.String(32)),
        sa.Column('package_weight', sa.Float()),
        sa.Column('package_length', sa.Float()),
        sa.Column('package_width', sa.Float()),
        sa.Column('package_height', sa.Float()),
        sa.Column('package_value', sa.Float()),
        sa.Column('carrier', sa.String(64)),
        sa.Column('tracking_number', sa.String(64)),
        _ts('shipped_at', nullable=True),
        _ts('created_at'),
        _ts('updated_at'),
        sa.UniqueConstraint('user_id', 'external_order_id', name='uq_orders_user_external'),
    )
    op.create_index('idx_orders_order_number', 'orders', ['order_number'])

    op.create_table(
        'order_items',
        _id(),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_line_item_id', sa.String(64)),
        sa.Column('sku', sa.String(100)),
        sa.Column('title', sa.Text()),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('price', sa.Numeric(12, 2)),
    )

    op.create_table(
        'shipping_labels',
        _id(),
        _user_fk(),
        sa.Column('order_id', sa.String(36), sa.ForeignKey('orders.id', ondelete='SET NULL')),
        sa.Column('carrier_configuration_id', sa.String(36),
                  sa.ForeignKey('carrier_configurations.id', ondelete='SET NULL')),
        sa.Column('carrier', sa.String(32), nullable=False),
        sa.Column('service_code', sa.String(32)),
        sa.Column('service_name', sa.String(100)),
        sa.Column('tracking_number', sa.String(64)),
        sa.Column('label_data', sa.Text()),
        sa.Column('label_format', sa.String(8)),
        sa.Column('cost', sa.Numeric(12, 2)),
        sa.Column('currency', sa.String(3)),
        sa.Column('status', sa.String(16), nullable=False, server_default='created'),
        _ts('created_at'),
        _ts('voided_at', nullable=True),
    )
    op.create_index('idx_shipping_labels_user', 'shipping_labels', ['user_id', 'created_at'])
    op.create_index('idx_shipping_labels_tracking', 'shipping_labels', ['tracking_number'])

    op.create_table(
        'plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.Text()),
        sa.Column('monthly_price', sa.Numeric(10, 2), nullable=False, server_default='0'),
        sa.Column('features', postgresql.JSONB()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'billing_customers',
        _id(),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id', ondelete='CASCADE'),
                  nullable=False, unique=True),
        sa.Column('stripe_customer_id', sa.String(64), nullable=False, unique=True),
        sa.Column('email', sa.String(255)),
        _ts('created_at'),
    )

    op.create_table(
        'subscriptions',
        _id(),
        _user_fk(),
        sa.Column('plan_id', sa.String(36)),
        sa.Column('stripe_subscription_id', sa.String(64), nullable=False, unique=True),
        sa.Column('stripe_customer_id', sa.String(64)),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('billing_cycle', sa.String(16)),
        _ts('current_period_end', nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts('created_at'),
        _ts('updated_at'),
    )

    op.create_table(
        'subscription_entitlements',
        _id(),
        sa.Column('subscription_id', sa.String(36),
                  sa.ForeignKey('subscriptions.id', ondelete='CASCADE'), nullable=False),
        _user_fk(),
        sa.Column('feature', sa.String(64), nullable=False),
        _ts('created_at'),
    )

    op.create_table(
        'inventory_submissions',
        _id(),
        _user_fk(),
        sa.Column('submission_number', sa.String(64)),
        sa.Column('status', sa.String(32), nullable=False, server_default='draft'),
        sa.Column('payment_status', sa.String(32)),
        sa.Column('total_items', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_prep_cost', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text()),
        _ts('created_at'),
        _ts('updated_at'),
    )

    op.create_table(
        'submission_items',
        _id(),
        sa.Column('submission_id', sa.String(36),
                  sa.ForeignKey('inventory_submissions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sku', sa.String(100)),
        sa.Column('product_name', sa.Text()),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('prep_cost_per_unit', sa.Numeric(10, 2)),
    )

    op.create_table(
        'submission_payments',
        _id(),
        sa.Column('submission_id', sa.String(36),
                  sa.ForeignKey('inventory_submissions.id', ondelete='CASCADE'), nullable=False),
        _user_fk(),
        sa.Column('stripe_session_id', sa.String(255), nullable=False, unique=True),
        sa.Column('stripe_payment_intent_id', sa.String(255)),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(16), nullable=False, server_default='pending'),
        _ts('paid_at', nullable=True),
        _ts('created_at'),
    )

    op.create_table(
        'submission_invoices',
        _id(),
        sa.Column('submission_id', sa.String(36),
                  sa.ForeignKey('inventory_submissions.id', ondelete='CASCADE'), nullable=False),
        _user_fk(),
        sa.Column('payment_id', sa.String(36), sa.ForeignKey('submission_payments.id', ondelete='SET NULL')),
        sa.Column('invoice_number', sa.String(64), nullable=False, unique=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='usd'),
        sa.Column('status', sa.String(16), nullable=False, server_default='paid'),
        _ts('issued_at'),
    )

    op.create_table(
        'audit_logs',
        _id(),
        sa.Column('user_id', sa.String(36)),
        sa.Column('event_type', sa.String(64), nullable=False),
        sa.Column('event_data', postgresql.JSONB()),
        _ts('created_at'),
    )
    op.create_index('idx_audit_logs_event_type', 'audit_logs', ['event_type', 'created_at'])

    # Plans referenced by billing entitlements.
    op.execute("""
        INSERT INTO plans (id, name, description, monthly_price, is_active) VALUES
            ('free', 'Free', 'Getting started', 0, TRUE),
            ('starter', 'Starter', 'Shipping tools', 29, TRUE),
            ('pro', 'Pro', 'Shipping, repricing and fulfillment', 79, TRUE),
            ('business', 'Business', 'Everything including product management', 199, TRUE)
        ON CONFLICT (id) DO NOTHING;
    """)


def downgrade():
    for table in (
        'audit_logs',
        'submission_invoices',
        'submission_payments',
        'submission_items',
        'inventory_submissions',
        'subscription_entitlements',
        'subscriptions',
        'billing_customers',
        'plans',
        'shipping_labels',
        'order_items',
        'orders',
        'user_edit_patterns',
        'product_edit_history',
        'products',
        'shopify_sync_status',
        'store_configurations',
        'carrier_token_refresh_log',
        'shipping_services',
        'carrier_configurations',
        'users',
    ):
        op.drop_table(table)
