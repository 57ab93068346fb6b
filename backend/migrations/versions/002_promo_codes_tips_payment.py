"""
Alembic migration: Promo codes, tips and payment confirmation time.

Adds the promo code catalogue and its usage log, and the order columns for
the applied code, the pre-payment tip and the time Stripe confirmed payment.

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 15:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers, used by Alembic
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _base_columns() -> list:
    return [
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False,
                  server_default=sa.text('gen_random_uuid()')),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    """Add promo codes and the order tip, promo and paid_at columns."""
    op.execute("CREATE TYPE promo_discount_type AS ENUM ('percentage', 'fixed_amount')")

    op.create_table(
        'promo_codes',
        *_base_columns(),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column(
            'discount_type',
            postgresql.ENUM('percentage', 'fixed_amount',
                            name='promo_discount_type', create_type=False),
            nullable=False,
        ),
        sa.Column('discount_value', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('one_time_use_per_user', sa.Boolean(), nullable=False,
                  server_default=sa.text('false')),
        sa.Column('valid_from', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('valid_until', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_promo_codes'),
        sa.UniqueConstraint('code', name='uq_promo_codes_code'),
        sa.CheckConstraint('discount_value > 0', name='ck_promo_codes_value_positive'),
    )

    op.create_table(
        'promo_code_usage',
        *_base_columns(),
        sa.Column('promo_code_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('customer_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('discount_amount_cents', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_promo_code_usage'),
        sa.UniqueConstraint('order_id', name='uq_promo_code_usage_order'),
    )
    op.create_index(
        'ix_promo_code_usage_code_customer',
        'promo_code_usage',
        ['promo_code_id', 'customer_id'],
    )

    op.add_column('orders', sa.Column('tip_cents', sa.Integer(), nullable=False,
                                      server_default=sa.text('0')))
    op.add_column('orders', sa.Column('promo_code', sa.String(length=50), nullable=True))
    op.add_column('orders', sa.Column('paid_at', sa.TIMESTAMP(timezone=True), nullable=True))
    op.create_check_constraint('ck_orders_tip_non_negative', 'orders', 'tip_cents >= 0')

    # Orders already open or beyond were paid before this column existed
    op.execute(
        "UPDATE orders SET paid_at = created_at "
        "WHERE stripe_payment_intent_id IS NOT NULL AND status NOT IN ('placed', 'cancelled')"
    )


def downgrade() -> None:
    """Drop promo codes and the order tip, promo and paid_at columns."""
    op.drop_constraint('ck_orders_tip_non_negative', 'orders', type_='check')
    op.drop_column('orders', 'paid_at')
    op.drop_column('orders', 'promo_code')
    op.drop_column('orders', 'tip_cents')

    op.drop_index('ix_promo_code_usage_code_customer', table_name='promo_code_usage')
    op.drop_table('promo_code_usage')
    op.drop_table('promo_codes')
    op.execute('DROP TYPE IF EXISTS promo_discount_type')
