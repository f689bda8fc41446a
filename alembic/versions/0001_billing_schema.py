"""Billing schema: users, plans, subscriptions, transactions, processed payment events

Revision ID: 0001
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


OPEN_STATUS_PREDICATE = "status IN ('pending', 'active', 'grace')"


def upgrade() -> None:
    """Create the billing tables."""

    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False, index=True),
        sa.Column('full_name', sa.String(200)),
        sa.Column('phone', sa.String(32)),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'plans',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(100), nullable=False, index=True),

        # Prices in minor units
        sa.Column('monthly_price', sa.Integer, nullable=False),
        sa.Column('annual_price', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3), server_default='USD', nullable=False),
        sa.Column('features', sa.JSON, nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.true(), nullable=False, index=True),

        # Versioning
        sa.Column('version', sa.Integer, server_default='1', nullable=False),
        sa.Column('supersedes_id', sa.String(36), sa.ForeignKey('plans.id')),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('plans.id'), nullable=False),

        # Subscription details
        sa.Column('billing_period', sa.String(20), server_default='monthly', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('is_active', sa.Boolean, server_default=sa.false(), nullable=False),

        # Billing period dates
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),

        # Cancellation
        sa.Column('cancel_at_period_end', sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True)),
        sa.Column('cancellation_reason', sa.String(500)),

        # Payments and dunning
        sa.Column('last_payment_date', sa.DateTime(timezone=True)),
        sa.Column('last_payment_amount', sa.Integer),
        sa.Column('failed_payment_attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('grace_period_end', sa.DateTime(timezone=True), index=True),
        sa.Column('expired_at', sa.DateTime(timezone=True)),

        # Optimistic concurrency
        sa.Column('version', sa.Integer, server_default='1', nullable=False),

        # Timestamps
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    # One pending/active/grace subscription per user
    op.create_index(
        'uq_subscriptions_user_open',
        'subscriptions',
        ['user_id'],
        unique=True,
        postgresql_where=sa.text(OPEN_STATUS_PREDICATE),
        sqlite_where=sa.text(OPEN_STATUS_PREDICATE),
    )

    # Sweep queries
    op.create_index(
        'ix_subscriptions_status_period_end',
        'subscriptions',
        ['status', 'current_period_end']
    )

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('subscription_id', sa.String(36), sa.ForeignKey('subscriptions.id'), nullable=False, index=True),

        # Signed amount in minor units
        sa.Column('amount', sa.Integer, nullable=False),
        sa.Column('currency', sa.String(3), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('plan_id', sa.String(36), sa.ForeignKey('plans.id')),
        sa.Column('previous_plan_id', sa.String(36), sa.ForeignKey('plans.id')),

        # Gateway
        sa.Column('gateway', sa.String(32)),
        sa.Column('gateway_reference', sa.String(255), index=True),
        sa.Column('error', sa.String(1000)),
        sa.Column('processed_at', sa.DateTime(timezone=True)),
        sa.Column('renews_period_end', sa.DateTime(timezone=True)),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'processed_payment_events',
        sa.Column('event_key', sa.String(300), primary_key=True),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False, index=True),
    )


def downgrade() -> None:
    """Drop the billing tables."""

    op.drop_table('processed_payment_events')
    op.drop_table('transactions')
    op.drop_index('ix_subscriptions_status_period_end', table_name='subscriptions')
    op.drop_index('uq_subscriptions_user_open', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('plans')
    op.drop_table('users')
