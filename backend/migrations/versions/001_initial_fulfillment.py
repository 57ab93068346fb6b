"""
Alembic migration: Initial order fulfillment schema.

Creates the orders table with its fulfillment state columns and checks,
customer contact profiles, the notification outbox and delivery log, and
operator earnings.

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ORDER_STATUSES = (
    'placed',
    'unclaimed',
    'claimed',
    'in_progress',
    'picked_up',
    'washing',
    'washed',
    'drying',
    'folded',
    'delivering',
    'returned',
    'completed',
    'cancelled',
)

NOTIFICATION_TYPES = (
    'unclaimed',
    'claimed',
    'picked_up',
    'washing',
    'drying',
    'folded',
    'delivered',
    'completed',
    'cancelled',
)

ENUM_TYPES = {
    'order_status': ORDER_STATUSES,
    'pickup_type': ('locker', 'pickup_delivery'),
    'service_type': ('wash_fold', 'delicates_airdry', 'wash_hang_dry', 'express'),
    'notification_type': NOTIFICATION_TYPES,
    'notification_channel': ('email', 'sms'),
    'outbox_state': ('pending', 'sent', 'failed'),
    'delivery_status': ('sent', 'failed'),
    'earning_status': ('pending', 'paid'),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUM_TYPES[name], name=name, create_type=False)


def _base_columns() -> list:
    """Primary key and timestamps shared by every table."""
    return [
        sa.Column(
            'id',
            postgresql.UUID(as_uuid=True),
            nullable=False,
            server_default=sa.text('gen_random_uuid()'),
            comment='Unique identifier for the record',
        ),
        sa.Column(
            'created_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP'),
            comment='Timestamp when record was created',
        ),
        sa.Column(
            'updated_at',
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text('CURRENT_TIMESTAMP'),
            comment='Timestamp when record was last updated',
        ),
    ]


def upgrade() -> None:
    """
    Upgrade database schema to the initial fulfillment model.

    The orders table carries the persisted fulfillment state as ``status``
    plus ``current_step``; the range check keeps the step pointer inside the
    13-step checklist.
    """
    for name, values in ENUM_TYPES.items():
        labels = ", ".join(f"'{value}'" for value in values)
        op.execute(f"CREATE TYPE {name} AS ENUM ({labels})")

    # Orders
    op.create_table(
        'orders',
        *_base_columns(),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Customer who placed the order'),
        sa.Column('washer_id', postgresql.UUID(as_uuid=True), nullable=True,
                  comment='Operator holding the claim'),
        sa.Column('pickup_type', _enum('pickup_type'), nullable=False),
        sa.Column('service_type', _enum('service_type'), nullable=False),
        sa.Column('is_express', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('status', _enum('order_status'), nullable=False,
                  server_default=sa.text("'placed'"),
                  comment='Coarse status projected from the fulfillment state'),
        sa.Column('current_step', sa.Integer(), nullable=False, server_default=sa.text('1'),
                  comment='Next checklist step to perform'),
        sa.Column('step_photos', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb"),
                  comment='Step number to stored evidence reference'),
        sa.Column('step_completed_at', postgresql.JSONB(), nullable=False,
                  server_default=sa.text("'{}'::jsonb"),
                  comment='Step number to completion timestamp'),
        sa.Column('bag_count', sa.Integer(), nullable=False, server_default=sa.text('1')),
        sa.Column('total_amount_cents', sa.Integer(), nullable=False),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('business_cut_cents', sa.Integer(), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('operator_payout_cents', sa.Integer(), nullable=False,
                  server_default=sa.text('0')),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('pickup_address', sa.String(length=500), nullable=True),
        sa.Column('delivery_address', sa.String(length=500), nullable=True),
        sa.Column('zip_code', sa.String(length=10), nullable=False),
        sa.Column('locker_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('special_instructions', sa.Text(), nullable=True),
        sa.Column('pickup_window_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('pickup_window_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('delivery_window_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('delivery_window_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('cancelled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
        sa.UniqueConstraint('stripe_payment_intent_id', name='uq_orders_payment_intent'),
        sa.CheckConstraint(
            'current_step >= 1 AND current_step <= 13',
            name='ck_orders_current_step_range',
        ),
        sa.CheckConstraint('bag_count >= 1', name='ck_orders_bag_count_positive'),
        sa.CheckConstraint('total_amount_cents >= 0', name='ck_orders_total_non_negative'),
        comment='Customer laundry orders and their fulfillment state',
    )
    op.create_index('ix_orders_customer_id', 'orders', ['customer_id'])
    op.create_index('ix_orders_washer_id', 'orders', ['washer_id'])
    op.create_index('ix_orders_status', 'orders', ['status'])
    op.create_index('ix_orders_zip_code', 'orders', ['zip_code'])
    op.create_index('ix_orders_washer_status', 'orders', ['washer_id', 'status'])
    op.create_index(
        'ix_orders_status_zip_created', 'orders', ['status', 'zip_code', 'created_at']
    )
    op.create_index('ix_orders_customer_created', 'orders', ['customer_id', 'created_at'])

    # Customer contact profiles
    op.create_table(
        'customer_profiles',
        *_base_columns(),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False,
                  comment='Auth provider subject'),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('phone', sa.String(length=32), nullable=True),
        sa.Column('first_name', sa.String(length=100), nullable=True),
        sa.Column('last_name', sa.String(length=100), nullable=True),
        sa.Column('email_notifications', sa.Boolean(), nullable=False,
                  server_default=sa.text('true')),
        sa.Column('sms_notifications', sa.Boolean(), nullable=False,
                  server_default=sa.text('true')),
        sa.PrimaryKeyConstraint('id', name='pk_customer_profiles'),
    )
    op.create_index(
        'ix_customer_profiles_user_id', 'customer_profiles', ['user_id'], unique=True
    )

    # Notification outbox
    op.create_table(
        'notification_outbox',
        *_base_columns(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('notification_type', _enum('notification_type'), nullable=False),
        sa.Column('order_number', sa.String(length=16), nullable=False),
        sa.Column('current_step', sa.Integer(), nullable=True),
        sa.Column('state', _enum('outbox_state'), nullable=False,
                  server_default=sa.text("'pending'")),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('available_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_notification_outbox'),
        comment='Notification events written with the order change that caused them',
    )
    op.create_index(
        'ix_notification_outbox_state_available',
        'notification_outbox',
        ['state', 'available_at'],
    )
    op.create_index('ix_notification_outbox_order', 'notification_outbox', ['order_id'])

    # Delivery log
    op.create_table(
        'notification_logs',
        *_base_columns(),
        sa.Column('outbox_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('notification_type', _enum('notification_type'), nullable=False),
        sa.Column('channel', _enum('notification_channel'), nullable=False),
        sa.Column('status', _enum('delivery_status'), nullable=False),
        sa.Column('recipient', sa.String(length=255), nullable=True),
        sa.Column('message_content', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_notification_logs'),
    )
    op.create_index('ix_notification_logs_outbox_id', 'notification_logs', ['outbox_id'])
    op.create_index('ix_notification_logs_order_id', 'notification_logs', ['order_id'])

    # Operator earnings
    op.create_table(
        'operator_earnings',
        *_base_columns(),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('operator_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('gross_amount_cents', sa.Integer(), nullable=False),
        sa.Column('payout_amount_cents', sa.Integer(), nullable=False),
        sa.Column('tip_cents', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('revenue_share_percent', sa.Integer(), nullable=False),
        sa.Column('status', _enum('earning_status'), nullable=False,
                  server_default=sa.text("'pending'")),
        sa.Column('payout_reference', sa.String(length=255), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_operator_earnings'),
        sa.UniqueConstraint('order_id', name='uq_operator_earnings_order'),
    )
    op.create_index(
        'ix_operator_earnings_operator_created',
        'operator_earnings',
        ['operator_id', 'created_at'],
    )


def downgrade() -> None:
    """Drop the fulfillment schema and its enum types."""
    op.drop_index('ix_operator_earnings_operator_created', table_name='operator_earnings')
    op.drop_table('operator_earnings')

    op.drop_index('ix_notification_logs_order_id', table_name='notification_logs')
    op.drop_index('ix_notification_logs_outbox_id', table_name='notification_logs')
    op.drop_table('notification_logs')

    op.drop_index('ix_notification_outbox_order', table_name='notification_outbox')
    op.drop_index('ix_notification_outbox_state_available', table_name='notification_outbox')
    op.drop_table('notification_outbox')

    op.drop_index('ix_customer_profiles_user_id', table_name='customer_profiles')
    op.drop_table('customer_profiles')

    for index in (
        'ix_orders_customer_created',
        'ix_orders_status_zip_created',
        'ix_orders_washer_status',
        'ix_orders_zip_code',
        'ix_orders_status',
        'ix_orders_washer_id',
        'ix_orders_customer_id',
    ):
        op.drop_index(index, table_name='orders')
    op.drop_table('orders')

    for name in reversed(list(ENUM_TYPES)):
        op.execute(f'DROP TYPE IF EXISTS {name}')
