"""Connections and classified orders

Revision ID: 001_connections_and_orders
Revises:
Create Date: 2026-10-17

- connections: one row per linked Shopify store, holding the access token
  and the sync watermark
- orders: synced orders keyed by the remote order id, with compliance flags
  derived at write time
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_connections_and_orders'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create connections and orders tables."""

    op.create_table(
        'connections',
        sa.Column('connection_id', sa.String(32), nullable=False),
        sa.Column('shop_domain', sa.String(), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('scope', sa.String(), nullable=True),
        sa.Column('connected_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('last_sync_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('total_orders_synced', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('needs_reauth', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('connection_id'),
    )

    op.create_table(
        'orders',
        sa.Column('order_id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('connection_id', sa.String(32), nullable=False),
        sa.Column('remote_order_id', sa.String(), nullable=False),
        sa.Column('order_number', sa.String(), nullable=False),
        sa.Column('total_price_cents', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('destination_country', sa.String(2), nullable=True),
        sa.Column('customer_email', sa.String(), nullable=True),
        sa.Column('customer_id', sa.String(), nullable=True),
        sa.Column('fulfillment_status', sa.String(), nullable=False, server_default=sa.text("'null'")),
        sa.Column('financial_status', sa.String(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('line_items', sa.JSON(), nullable=False),
        sa.Column('shipping_address', sa.JSON(), nullable=True),
        sa.Column('remote_created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('remote_updated_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('in_bloc', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('eligible', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('tax_applicable', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('requires_duty_review', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('origin_outside_bloc', sa.Boolean(), nullable=False, server_default=sa.text('FALSE')),
        sa.Column('synced_at', sa.TIMESTAMP(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['connection_id'], ['connections.connection_id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('order_id'),
        sa.UniqueConstraint('remote_order_id'),
    )

    op.create_index('idx_orders_connection_created', 'orders', ['connection_id', 'remote_created_at'])
    op.create_index('idx_orders_connection_eligible', 'orders', ['connection_id', 'eligible'])


def downgrade() -> None:
    """Drop orders and connections tables."""
    op.drop_index('idx_orders_connection_eligible', table_name='orders')
    op.drop_index('idx_orders_connection_created', table_name='orders')
    op.drop_table('orders')
    op.drop_table('connections')
