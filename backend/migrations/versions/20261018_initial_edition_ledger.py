"""Initial edition ledger schema

Revision ID: 20261018_initial
Revises:
Create Date: 2026-10-18

This migration adds:
1. orders (platform and provisional order records)
2. order_refund_lines (refund events per line item)
3. order_line_items (sold units with edition and certificate fields)
4. edition_events (append-only edition history)
5. product_sequence_locks (per-product resequencing lease)
6. resequence_requests (durable queue of products awaiting a pass)
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261018_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ==========================================================================
    # 1. ORDERS TABLE
    # ==========================================================================
    op.create_table('orders',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('order_name', sa.String(length=64), nullable=False),
        sa.Column('normalized_name', sa.String(length=64), nullable=False),
        sa.Column('source', sa.String(length=16), nullable=False),
        sa.Column('financial_status', sa.String(length=32), nullable=True),
        sa.Column('fulfillment_status', sa.String(length=32), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('platform_created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('platform_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('superseded_by_order_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['superseded_by_order_id'], ['orders.id'], name='fk_orders_superseded_by_order_id_orders'),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
    )
    with op.batch_alter_table('orders', schema=None) as batch_op:
        batch_op.create_index('ix_orders_normalized_name', ['normalized_name'], unique=False)
        batch_op.create_index('ix_orders_normalized_name_source', ['normalized_name', 'source'], unique=False)
        batch_op.create_index('ix_orders_superseded_by_order_id', ['superseded_by_order_id'], unique=False)

    # ==========================================================================
    # 2. REFUND LINES TABLE
    # ==========================================================================
    op.create_table('order_refund_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('refund_id', sa.String(length=64), nullable=False),
        sa.Column('line_item_id', sa.String(length=64), nullable=False),
        sa.Column('restock', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_order_refund_lines_order_id_orders'),
        sa.PrimaryKeyConstraint('id', name='pk_order_refund_lines'),
        sa.UniqueConstraint('order_id', 'refund_id', 'line_item_id', name='uq_refund_lines_order_refund_item'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_refund_lines', schema=None) as batch_op:
        batch_op.create_index('ix_order_refund_lines_order_id', ['order_id'], unique=False)
        batch_op.create_index('ix_order_refund_lines_line_item_id', ['line_item_id'], unique=False)

    # ==========================================================================
    # 3. LINE ITEMS TABLE
    # ==========================================================================
    op.create_table('order_line_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('line_item_id', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('variant_id', sa.String(length=64), nullable=True),
        sa.Column('title', sa.String(length=255), nullable=True),
        sa.Column('vendor_name', sa.String(length=255), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('fulfillment_status', sa.String(length=32), nullable=True),
        sa.Column('restocked', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='inactive'),
        sa.Column('edition_number', sa.Integer(), nullable=True),
        sa.Column('edition_total', sa.Integer(), nullable=True),
        sa.Column('certificate_token', sa.String(length=64), nullable=True),
        sa.Column('certificate_url', sa.String(length=512), nullable=True),
        sa.Column('certificate_issued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], name='fk_order_line_items_order_id_orders'),
        sa.PrimaryKeyConstraint('id', name='pk_order_line_items'),
        sa.UniqueConstraint('line_item_id', 'order_id', name='uq_line_items_item_order'),
        sa.UniqueConstraint('certificate_token', name='uq_order_line_items_certificate_token'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('order_line_items', schema=None) as batch_op:
        batch_op.create_index('ix_order_line_items_line_item_id', ['line_item_id'], unique=False)
        batch_op.create_index('ix_order_line_items_order_id', ['order_id'], unique=False)
        batch_op.create_index('ix_order_line_items_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_order_line_items_status', ['status'], unique=False)
        batch_op.create_index('ix_line_items_product_status_created', ['product_id', 'status', 'created_at'], unique=False)

    # ==========================================================================
    # 4. EDITION EVENTS TABLE
    # ==========================================================================
    op.create_table('edition_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('product_id', sa.String(length=64), nullable=True),
        sa.Column('line_item_id', sa.String(length=64), nullable=True),
        sa.Column('order_id', sa.String(length=64), nullable=True),
        sa.Column('before_edition_number', sa.Integer(), nullable=True),
        sa.Column('after_edition_number', sa.Integer(), nullable=True),
        sa.Column('before_status', sa.String(length=16), nullable=True),
        sa.Column('after_status', sa.String(length=16), nullable=True),
        sa.Column('source', sa.String(length=32), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_edition_events'),
        sqlite_autoincrement=True
    )
    with op.batch_alter_table('edition_events', schema=None) as batch_op:
        batch_op.create_index('ix_edition_events_event_type', ['event_type'], unique=False)
        batch_op.create_index('ix_edition_events_product_id', ['product_id'], unique=False)
        batch_op.create_index('ix_edition_events_line_item_created', ['line_item_id', 'created_at'], unique=False)

    # ==========================================================================
    # 5. PRODUCT SEQUENCE LOCKS TABLE
    # ==========================================================================
    op.create_table('product_sequence_locks',
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('owner', sa.String(length=64), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('product_id', name='pk_product_sequence_locks'),
    )

    # ==========================================================================
    # 6. RESEQUENCE REQUESTS TABLE
    # ==========================================================================
    op.create_table('resequence_requests',
        sa.Column('product_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('product_id', name='pk_resequence_requests'),
    )
    with op.batch_alter_table('resequence_requests', schema=None) as batch_op:
        batch_op.create_index('ix_resequence_requests_status', ['status'], unique=False)


def downgrade():
    # Drop tables in reverse order of creation (respect foreign keys)
    op.drop_table('resequence_requests')
    op.drop_table('product_sequence_locks')
    op.drop_table('edition_events')
    op.drop_table('order_line_items')
    op.drop_table('order_refund_lines')
    op.drop_table('orders')
