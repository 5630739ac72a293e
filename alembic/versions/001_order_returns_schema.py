"""Order placement and returns schema

Revision ID: 001_order_returns_schema
Revises:
Create Date: 2026-01-15

Creates:
- categories, products, product_variations (catalog read model)
- inventory_units
- orders, order_items, order_status_history
- return_policies
- return_requests (one active request per order line)
- quality_checks, damaged_inventory
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_order_returns_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UUID = sa.Uuid(as_uuid=True)
TIMESTAMP = sa.DateTime(timezone=True)
MONEY = sa.Numeric(12, 2)

ACTIVE_RETURN_FILTER = "status NOT IN ('COMPLETED', 'CANCELLED', 'REJECTED')"


def upgrade() -> None:
    """Create the order and returns tables."""

    # ==================== catalog ====================
    op.create_table(
        'categories',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', TIMESTAMP, nullable=False),
    )

    op.create_table(
        'products',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('sku', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('category_id', UUID, sa.ForeignKey('categories.id', ondelete='SET NULL'), nullable=True),
        sa.Column('price', MONEY, nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
    )
    op.create_index('ix_products_sku', 'products', ['sku'])
    op.create_index('ix_products_category_id', 'products', ['category_id'])

    op.create_table(
        'product_variations',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('product_id', UUID, sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sku', sa.String(50), nullable=False, unique=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('price', MONEY, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', TIMESTAMP, nullable=False),
    )
    op.create_index('ix_product_variations_product_id', 'product_variations', ['product_id'])

    # ==================== inventory_units ====================
    op.create_table(
        'inventory_units',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('product_id', UUID, sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('variation_id', UUID, sa.ForeignKey('product_variations.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('sku', sa.String(50), nullable=False),
        sa.Column('available_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
        sa.CheckConstraint('available_quantity >= 0', name='ck_inventory_units_available_non_negative'),
    )
    op.create_index('uq_inventory_units_sku', 'inventory_units', ['product_id', 'variation_id'], unique=True)
    op.create_index(
        'uq_inventory_units_product_level',
        'inventory_units',
        ['product_id'],
        unique=True,
        postgresql_where=sa.text('variation_id IS NULL'),
        sqlite_where=sa.text('variation_id IS NULL'),
    )

    # ==================== orders ====================
    op.create_table(
        'orders',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('order_number', sa.String(30), nullable=False, unique=True),
        sa.Column('idempotency_key', sa.String(100), nullable=True, unique=True),
        sa.Column('customer_id', UUID, nullable=False),
        sa.Column('status', sa.String(30), nullable=False, server_default='PENDING'),
        sa.Column('subtotal', MONEY, nullable=False),
        sa.Column('shipping_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('discount_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('total_amount', MONEY, nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('payment_reference', sa.String(100), nullable=True),
        sa.Column('payment_type', sa.String(50), nullable=True),
        sa.Column('payment_info', sa.JSON(), nullable=True),
        sa.Column('paid_at', TIMESTAMP, nullable=True),
        sa.Column('delivered_date', TIMESTAMP, nullable=True),
        sa.Column('return_window_expires', TIMESTAMP, nullable=True),
        sa.Column('is_returnable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('has_active_returns', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('total_returned_amount', MONEY, nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
        sa.Column('cancelled_at', TIMESTAMP, nullable=True),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_non_negative'),
    )
    op.create_index('ix_orders_order_number', 'orders', ['order_number'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'])

    op.create_table(
        'order_items',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('order_id', UUID, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', UUID, sa.ForeignKey('products.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('variation_id', UUID, sa.ForeignKey('product_variations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('product_sku', sa.String(50), nullable=False),
        sa.Column('category_id', UUID, nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', MONEY, nullable=False),
        sa.Column('total_amount', MONEY, nullable=False),
        sa.Column('return_window_days', sa.Integer(), nullable=True),
        sa.Column('return_window_expires', TIMESTAMP, nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_quantity_positive'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'order_status_history',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('order_id', UUID, sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('from_status', sa.String(30), nullable=True),
        sa.Column('to_status', sa.String(30), nullable=False),
        sa.Column('changed_by', UUID, nullable=True),
        sa.Column('changed_by_role', sa.String(20), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    # ==================== return_policies ====================
    op.create_table(
        'return_policies',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('product_id', UUID, sa.ForeignKey('products.id', ondelete='CASCADE'), nullable=True),
        sa.Column('category_id', UUID, sa.ForeignKey('categories.id', ondelete='CASCADE'), nullable=True),
        sa.Column('is_returnable', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('return_window_days', sa.Integer(), nullable=False, server_default='7'),
        sa.Column('exchange_window_days', sa.Integer(), nullable=True),
        sa.Column('restocking_fee_percentage', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('return_shipping_paid_by', sa.String(20), nullable=False, server_default='CUSTOMER'),
        sa.Column('allowed_return_reasons', sa.JSON(), nullable=True),
        sa.Column('excluded_return_reasons', sa.JSON(), nullable=True),
        sa.Column('refund_methods', sa.JSON(), nullable=True),
        sa.Column('requires_approval', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('quality_check_required', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('restock_sellable_items', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
        sa.CheckConstraint(
            'restocking_fee_percentage >= 0 AND restocking_fee_percentage <= 100',
            name='ck_return_policies_fee_range',
        ),
        sa.CheckConstraint('return_window_days >= 0', name='ck_return_policies_window_non_negative'),
    )
    op.create_index('ix_return_policies_scope', 'return_policies', ['product_id', 'category_id', 'is_active'])

    # ==================== return_requests ====================
    op.create_table(
        'return_requests',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('return_number', sa.String(30), nullable=False, unique=True),
        sa.Column('order_id', UUID, sa.ForeignKey('orders.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('order_item_id', UUID, sa.ForeignKey('order_items.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('user_id', UUID, nullable=False),
        sa.Column('policy_id', UUID, sa.ForeignKey('return_policies.id', ondelete='SET NULL'), nullable=True),
        sa.Column('reason_code', sa.String(30), nullable=False),
        sa.Column('reason_description', sa.Text(), nullable=True),
        sa.Column('return_type', sa.String(20), nullable=False, server_default='REFUND'),
        sa.Column('photos', sa.JSON(), nullable=True),
        sa.Column('customer_notes', sa.Text(), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='PENDING'),
        sa.Column('requested_amount', MONEY, nullable=False),
        sa.Column('approved_amount', MONEY, nullable=True),
        sa.Column('restocking_fee', MONEY, nullable=False, server_default='0'),
        sa.Column('refund_amount', MONEY, nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('processed_by', UUID, nullable=True),
        sa.Column('processed_at', TIMESTAMP, nullable=True),
        sa.Column('return_deadline', TIMESTAMP, nullable=True),
        sa.Column('tracking_number', sa.String(100), nullable=True),
        sa.Column('courier', sa.String(100), nullable=True),
        sa.Column('received_date', TIMESTAMP, nullable=True),
        sa.Column('received_by', UUID, nullable=True),
        sa.Column('refund_method', sa.String(30), nullable=True),
        sa.Column('refund_status', sa.String(20), nullable=True),
        sa.Column('refund_key', sa.String(60), nullable=True, unique=True),
        sa.Column('refund_reference', sa.String(100), nullable=True),
        sa.Column('refund_notes', sa.Text(), nullable=True),
        sa.Column('refund_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('approved_at', TIMESTAMP, nullable=True),
        sa.Column('rejected_at', TIMESTAMP, nullable=True),
        sa.Column('quality_checked_at', TIMESTAMP, nullable=True),
        sa.Column('completed_at', TIMESTAMP, nullable=True),
        sa.Column('cancelled_at', TIMESTAMP, nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
    )
    op.create_index('ix_return_requests_return_number', 'return_requests', ['return_number'])
    op.create_index('ix_return_requests_order_id', 'return_requests', ['order_id'])
    op.create_index('ix_return_requests_status', 'return_requests', ['status'])
    op.create_index('ix_return_requests_user_created', 'return_requests', ['user_id', 'created_at'])
    op.create_index(
        'uq_return_requests_active_item',
        'return_requests',
        ['order_item_id'],
        unique=True,
        postgresql_where=sa.text(ACTIVE_RETURN_FILTER),
        sqlite_where=sa.text(ACTIVE_RETURN_FILTER),
    )

    # ==================== quality_checks ====================
    op.create_table(
        'quality_checks',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('qc_number', sa.String(30), nullable=False, unique=True),
        sa.Column(
            'return_request_id', UUID,
            sa.ForeignKey('return_requests.id', ondelete='RESTRICT'),
            nullable=False, unique=True,
        ),
        sa.Column('product_id', UUID, nullable=False),
        sa.Column('variation_id', UUID, nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='PENDING'),
        sa.Column('quantity_expected', sa.Integer(), nullable=False),
        sa.Column('quantity_received', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sellable_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('damaged_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('missing_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('restocked_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('overall_condition', sa.String(20), nullable=True),
        sa.Column('disposition', sa.String(30), nullable=True),
        sa.Column('estimated_repair_cost', MONEY, nullable=True),
        sa.Column('inspector_id', UUID, nullable=True),
        sa.Column('inspection_notes', sa.Text(), nullable=True),
        sa.Column('photos', sa.JSON(), nullable=True),
        sa.Column('completed_at', TIMESTAMP, nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
        sa.CheckConstraint(
            'sellable_quantity + damaged_quantity + missing_quantity <= quantity_expected',
            name='ck_quality_checks_breakdown_within_expected',
        ),
        sa.CheckConstraint(
            'sellable_quantity >= 0 AND damaged_quantity >= 0 AND missing_quantity >= 0',
            name='ck_quality_checks_breakdown_non_negative',
        ),
    )

    op.create_table(
        'damaged_inventory',
        sa.Column('id', UUID, primary_key=True),
        sa.Column('damage_number', sa.String(30), nullable=False, unique=True),
        sa.Column('quality_check_id', UUID, sa.ForeignKey('quality_checks.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('return_request_id', UUID, sa.ForeignKey('return_requests.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('product_id', UUID, nullable=False),
        sa.Column('variation_id', UUID, nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('damage_type', sa.String(30), nullable=False),
        sa.Column('damage_severity', sa.String(20), nullable=False),
        sa.Column('damage_description', sa.Text(), nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='PENDING_ASSESSMENT'),
        sa.Column('disposition', sa.String(30), nullable=False),
        sa.Column('estimated_value', MONEY, nullable=True),
        sa.Column('salvage_value', MONEY, nullable=True),
        sa.Column('repair_cost', MONEY, nullable=True),
        sa.Column('reported_by', UUID, nullable=True),
        sa.Column('created_at', TIMESTAMP, nullable=False),
        sa.Column('updated_at', TIMESTAMP, nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_damaged_inventory_quantity_positive'),
    )
    op.create_index('ix_damaged_inventory_quality_check_id', 'damaged_inventory', ['quality_check_id'])
    op.create_index('ix_damaged_inventory_return_request_id', 'damaged_inventory', ['return_request_id'])


def downgrade() -> None:
    """Drop the order and returns tables."""
    op.drop_table('damaged_inventory')
    op.drop_table('quality_checks')
    op.drop_table('return_requests')
    op.drop_table('return_policies')
    op.drop_table('order_status_history')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('inventory_units')
    op.drop_table('product_variations')
    op.drop_table('products')
    op.drop_table('categories')
