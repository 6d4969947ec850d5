"""initial billing schema

Revision ID: 2026_10_19_0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create subscriptions, billing cycles, usage records and free-tier usage."""

    # ========================================================================
    # Create subscriptions table
    # ========================================================================
    op.create_table(
        'subscriptions',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('stripe_customer_id', sa.String(255), nullable=False),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('included_token_credit', sa.Numeric(24, 12), nullable=False),
        sa.Column('plan_type', sa.String(20), nullable=False, server_default='paid'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint(
            "status IN ('active', 'past_due', 'canceled', 'unpaid', 'incomplete', "
            "'incomplete_expired', 'trialing', 'paused')",
            name='ck_subscriptions_status',
        ),
        sa.CheckConstraint('included_token_credit >= 0', name='ck_included_credit_non_negative'),
        sa.UniqueConstraint('stripe_subscription_id', name='uq_subscriptions_stripe_subscription_id'),
    )

    op.create_index('idx_subscriptions_user_id', 'subscriptions', ['user_id'])
    op.create_index('idx_subscriptions_stripe_customer_id', 'subscriptions', ['stripe_customer_id'])

    # ========================================================================
    # Create billing_cycles table
    # ========================================================================
    op.create_table(
        'billing_cycles',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('subscription_id', UUID(as_uuid=True), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('token_cost', sa.Numeric(24, 12), nullable=False, server_default='0'),
        sa.Column('included_credit', sa.Numeric(24, 12), nullable=False),
        sa.Column('overage_amount', sa.Numeric(24, 12), nullable=False, server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('stripe_invoice_id', sa.String(255), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint("status IN ('active', 'completed')", name='ck_billing_cycles_status'),
        sa.CheckConstraint('tokens_used >= 0', name='ck_cycle_tokens_non_negative'),
        sa.CheckConstraint('token_cost >= 0', name='ck_cycle_cost_non_negative'),
        sa.CheckConstraint('overage_amount >= 0', name='ck_cycle_overage_non_negative'),
        sa.CheckConstraint('period_end >= period_start', name='ck_cycle_period_order'),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name='fk_billing_cycles_subscription', ondelete='CASCADE',
        ),
    )

    # At most one active cycle per user
    op.create_index(
        'uq_billing_cycles_one_active_per_user', 'billing_cycles', ['user_id'],
        unique=True, postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index('idx_billing_cycles_user_id', 'billing_cycles', ['user_id'])
    op.create_index('idx_billing_cycles_subscription_id', 'billing_cycles', ['subscription_id'])
    op.create_index('idx_billing_cycles_status_period_end', 'billing_cycles', ['status', 'period_end'])

    # ========================================================================
    # Create usage_records table
    # ========================================================================
    op.create_table(
        'usage_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('conversation_id', sa.String(255), nullable=False),
        sa.Column('node_id', sa.String(255), nullable=False),
        sa.Column('model', sa.String(255), nullable=False),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False),
        sa.Column('token_cost', sa.Numeric(24, 12), nullable=False),
        sa.Column('billing_cycle_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_used >= 0', name='ck_usage_tokens_non_negative'),
        sa.CheckConstraint('token_cost >= 0', name='ck_usage_cost_non_negative'),
        sa.ForeignKeyConstraint(
            ['billing_cycle_id'], ['billing_cycles.id'],
            name='fk_usage_records_billing_cycle', ondelete='SET NULL',
        ),
    )

    op.create_index('idx_usage_records_user_id_created_at', 'usage_records', ['user_id', 'created_at'])
    op.create_index('idx_usage_records_conversation_id', 'usage_records', ['conversation_id'])
    op.create_index('idx_usage_records_created_at', 'usage_records', ['created_at'])
    op.create_index(
        'idx_usage_records_billing_cycle_id', 'usage_records', ['billing_cycle_id'],
        postgresql_where=sa.text('billing_cycle_id IS NOT NULL'),
    )

    # ========================================================================
    # Create free_tier_usage table
    # ========================================================================
    op.create_table(
        'free_tier_usage',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('conversation_id', sa.String(255), nullable=False),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_locked', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_used >= 0', name='ck_free_tier_tokens_non_negative'),
        sa.CheckConstraint('is_locked', name='ck_free_tier_locked'),
        sa.UniqueConstraint('conversation_id', name='uq_free_tier_usage_conversation_id'),
    )

    op.create_index('idx_free_tier_usage_user_id', 'free_tier_usage', ['user_id'])


def downgrade() -> None:
    """Drop all billing tables."""
    op.drop_table('free_tier_usage')
    op.drop_table('usage_records')
    op.drop_table('billing_cycles')
    op.drop_table('subscriptions')
