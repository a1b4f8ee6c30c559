"""create order reconciliation tables

Revision ID: 3b1f7c2d9a10
Revises:
Create Date: 2026-10-19 10:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3b1f7c2d9a10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'profiles',
        sa.Column('user_id', sa.String(length=64), primary_key=True),
        sa.Column('role', sa.String(length=32), nullable=False, server_default='customer'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('order_number', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('payment_status', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=True),
        sa.Column('gateway_order_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_payment_id', sa.String(length=128), nullable=True),
        sa.Column('gateway_signature', sa.String(length=256), nullable=True),
        sa.Column('shipping_address', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_orders_public_id', 'orders', ['public_id'], unique=True)
    op.create_index('ix_orders_order_number', 'orders', ['order_number'])
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_payment_status', 'orders', ['payment_status'])
    op.create_index('ix_orders_gateway_order_id', 'orders', ['gateway_order_id'])
    op.create_index('uq_orders_gateway_payment_id', 'orders', ['gateway_payment_id'], unique=True)

    op.create_table(
        'order_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=True),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('product_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Integer(), sa.ForeignKey('orders.id', ondelete='CASCADE'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('gateway_refund_id', sa.String(length=128), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_refunds_public_id', 'refunds', ['public_id'], unique=True)
    op.create_index('ix_refunds_order_id', 'refunds', ['order_id'])
    op.create_index('ix_refunds_status', 'refunds', ['status'])
    op.create_index('uq_refunds_gateway_refund_id', 'refunds', ['gateway_refund_id'], unique=True)

    op.create_table(
        'payment_webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=64), nullable=False),
        sa.Column('provider_event_id', sa.String(length=128), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_payment_webhook_events_provider', 'payment_webhook_events', ['provider'])
    op.create_index('ix_payment_webhook_events_status', 'payment_webhook_events', ['status'])
    op.create_index('ix_payment_webhook_events_processed_at', 'payment_webhook_events', ['processed_at'])
    op.create_index('uq_webhook_provider_event', 'payment_webhook_events', ['provider', 'provider_event_id'], unique=True)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('payment_webhook_events')
    op.drop_table('refunds')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('profiles')
