"""Create tenants and subscriptions tables

Revision ID: 0001_billing_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '0001_billing_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the tenant directory and the append-mostly subscriptions table."""

    op.create_table(
        'tenants',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255)),
        sa.Column('stripe_customer_id', sa.String(255), unique=True),
        sa.Column('current_subscription_id', sa.Uuid()),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('tenant_id', sa.String(64), nullable=False, index=True),

        # Plan and status
        sa.Column('plan', sa.String(20), server_default='free', nullable=False),
        sa.Column('status', sa.String(20), server_default='active', nullable=False),

        # Stripe IDs
        sa.Column('stripe_customer_id', sa.String(255), index=True),
        sa.Column('stripe_subscription_id', sa.String(255), unique=True),
        sa.Column('stripe_price_id', sa.String(255)),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean, server_default=sa.false(), nullable=False),

        # Usage tracking
        sa.Column('units_created_this_period', sa.Integer, server_default='0', nullable=False),
        sa.Column('usage_reset_at', sa.DateTime(timezone=True)),

        # Lifecycle dates
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('canceled_at', sa.DateTime(timezone=True)),
        sa.Column('ended_at', sa.DateTime(timezone=True)),

        # Metadata
        sa.Column('source', sa.String(30)),
        sa.Column('cancel_reason', sa.String(500)),
        sa.Column('last_invoice_id', sa.String(255)),
        sa.Column('last_payment_status', sa.String(20)),
        sa.Column('last_payment_amount', sa.Integer),
        sa.Column('card_brand', sa.String(30)),
        sa.Column('card_last4', sa.String(4)),
        sa.Column('card_exp_month', sa.Integer),
        sa.Column('card_exp_year', sa.Integer),

        sa.Column('version', sa.Integer, server_default='1', nullable=False),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),

        sa.CheckConstraint('units_created_this_period >= 0', name='ck_subscriptions_units_non_negative'),
    )

    op.create_index(
        'ix_subscriptions_tenant_status',
        'subscriptions',
        ['tenant_id', 'status']
    )
    op.create_index(
        'ix_subscriptions_status_period_end',
        'subscriptions',
        ['status', 'current_period_end']
    )

    # At most one active subscription per tenant
    op.create_index(
        'uq_subscriptions_tenant_active',
        'subscriptions',
        ['tenant_id'],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
        sqlite_where=sa.text("status = 'active'"),
    )


def downgrade() -> None:
    """Drop billing tables."""
    op.drop_index('uq_subscriptions_tenant_active', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status_period_end', table_name='subscriptions')
    op.drop_index('ix_subscriptions_tenant_status', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('tenants')
