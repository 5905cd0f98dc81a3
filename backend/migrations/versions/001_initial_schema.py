"""
Alembic migration: Create the delivery lifecycle schema.

Creates the orders table with its lifecycle columns and the constraint tying
courier assignment to the detailed status, the order_status_history audit
trail, the courier_locations sample stream and the delivery_photos evidence
table with one photo per order.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = ('pending', 'completed', 'cancelled')
DELIVERY_STATUSES = (
    'pending',
    'preparing',
    'ready_for_pickup',
    'assigned_to_driver',
    'out_for_delivery',
    'delivered',
    'cancelled',
)
ACTOR_ROLES = ('customer', 'courier', 'kitchen', 'system')


def status_type(values: Sequence[str], name: str) -> sa.Enum:
    return sa.Enum(
        *values,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=32,
    )


def upgrade() -> None:
    """
    Create orders, order_status_history, courier_locations and
    delivery_photos tables with their indexes and constraints.
    """
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('customer_id', sa.Uuid(as_uuid=True), nullable=False, comment='User who placed the order'),
        sa.Column(
            'status',
            status_type(ORDER_STATUSES, 'order_status'),
            nullable=False,
            comment='Coarse customer-facing status',
        ),
        sa.Column(
            'status_detailed',
            status_type(DELIVERY_STATUSES, 'delivery_status'),
            nullable=False,
            comment='Authoritative delivery lifecycle status',
        ),
        sa.Column('assigned_courier_id', sa.Uuid(as_uuid=True), nullable=True, comment='Courier currently holding the order'),
        sa.Column('courier_accepted_at', sa.DateTime(timezone=True), nullable=True, comment='When the current courier claimed the order'),
        sa.Column('out_for_delivery_at', sa.DateTime(timezone=True), nullable=True, comment='When the current courier started the delivery'),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True, comment='When the delivery was completed'),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True, comment='When the order was cancelled'),
        sa.Column('delivered_by_courier_id', sa.Uuid(as_uuid=True), nullable=True, comment='Courier who completed the delivery'),
        sa.Column('delivery_code', sa.String(length=5), nullable=False, comment='5-digit code required to complete the delivery'),
        sa.Column('delivery_photo_ref', sa.String(length=512), nullable=True, comment='Blob reference of the delivery evidence photo'),
        sa.Column('address', sa.JSON(), nullable=False, comment='Delivery address snapshot'),
        sa.Column('items', sa.JSON(), nullable=False, comment='Immutable line items'),
        sa.Column('total_amount', sa.Numeric(precision=10, scale=2), nullable=False, comment='Order total'),
        sa.Column('notes', sa.Text(), nullable=True, comment='Customer notes'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "(status_detailed IN ('assigned_to_driver', 'out_for_delivery')) "
            "= (assigned_courier_id IS NOT NULL)",
            name='ck_orders_assignment_matches_status',
        ),
        sa.CheckConstraint('length(delivery_code) = 5', name='ck_orders_delivery_code_length'),
        sa.CheckConstraint('total_amount >= 0', name='ck_orders_total_amount_non_negative'),
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_status_detailed', 'orders', ['status_detailed'])
    op.create_index('ix_orders_assigned_courier_id', 'orders', ['assigned_courier_id'])
    op.create_index('ix_orders_created_at', 'orders', ['created_at'])
    op.create_index(
        'ix_orders_available_queue',
        'orders',
        ['status_detailed', 'assigned_courier_id', 'created_at'],
    )

    op.create_table(
        'order_status_history',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False, comment='Order the transition was applied to'),
        sa.Column(
            'from_status',
            status_type(DELIVERY_STATUSES, 'history_from_status'),
            nullable=True,
            comment='Detailed status before the transition',
        ),
        sa.Column(
            'to_status',
            status_type(DELIVERY_STATUSES, 'history_to_status'),
            nullable=False,
            comment='Detailed status after the transition',
        ),
        sa.Column(
            'actor_role',
            status_type(ACTOR_ROLES, 'actor_role'),
            nullable=False,
            comment='Role that requested the transition',
        ),
        sa.Column('actor_id', sa.Uuid(as_uuid=True), nullable=True, comment='User that requested the transition'),
        sa.Column('reason', sa.String(length=500), nullable=True, comment='Reason for the transition'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, comment='When the transition was applied'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    op.create_table(
        'courier_locations',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('courier_id', sa.Uuid(as_uuid=True), nullable=False, comment='Courier that produced the sample'),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=True, comment='Order being delivered'),
        sa.Column('latitude', sa.Float(), nullable=False),
        sa.Column('longitude', sa.Float(), nullable=False),
        sa.Column('accuracy', sa.Float(), nullable=True),
        sa.Column('heading', sa.Float(), nullable=True),
        sa.Column('speed', sa.Float(), nullable=True),
        sa.Column('sampled_at', sa.DateTime(timezone=True), nullable=False, comment='When the device produced the fix'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_courier_locations_order_id', 'courier_locations', ['order_id'])
    op.create_index(
        'ix_courier_locations_courier_sampled',
        'courier_locations',
        ['courier_id', 'sampled_at'],
    )

    op.create_table(
        'delivery_photos',
        sa.Column('id', sa.Uuid(as_uuid=True), nullable=False),
        sa.Column('order_id', sa.Uuid(as_uuid=True), nullable=False, comment='Order the photo proves delivery for'),
        sa.Column('courier_id', sa.Uuid(as_uuid=True), nullable=False, comment='Courier that captured the photo'),
        sa.Column('storage_path', sa.String(length=512), nullable=False, comment='Durable blob store reference'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_delivery_photos_order_id'),
    )
    op.create_index('ix_delivery_photos_created_at', 'delivery_photos', ['created_at'])


def downgrade() -> None:
    """Drop every delivery lifecycle table."""
    op.drop_index('ix_delivery_photos_created_at', table_name='delivery_photos')
    op.drop_table('delivery_photos')

    op.drop_index('ix_courier_locations_courier_sampled', table_name='courier_locations')
    op.drop_index('ix_courier_locations_order_id', table_name='courier_locations')
    op.drop_table('courier_locations')

    op.drop_index('ix_order_status_history_order_id', table_name='order_status_history')
    op.drop_table('order_status_history')

    op.drop_index('ix_orders_available_queue', table_name='orders')
    op.drop_index('ix_orders_created_at', table_name='orders')
    op.drop_index('ix_orders_assigned_courier_id', table_name='orders')
    op.drop_index('ix_orders_status_detailed', table_name='orders')
    op.drop_index('ix_orders_customer_id', table_name='orders')
    op.drop_table('orders')
