"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create initial database schema."""

    # ========================================================================
    # Create entitlements table
    # ========================================================================
    op.create_table(
        'entitlements',
        sa.Column('user_id', sa.String(255), primary_key=True),
        sa.Column('plan', sa.String(20), nullable=False, server_default='trial'),
        sa.Column('credits', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('subscription_status', sa.String(30), nullable=False, server_default='none'),
        sa.Column('payment_customer_ref', sa.String(255), nullable=True),
        sa.Column('subscription_ref', sa.String(255), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('credits >= 0', name='ck_entitlement_credits_non_negative'),
        sa.CheckConstraint("plan IN ('trial', 'starter', 'pro', 'payg')", name='ck_entitlement_plan'),
    )

    op.create_index('idx_entitlements_customer_ref', 'entitlements', ['payment_customer_ref'])
    op.create_index('idx_entitlements_subscription_ref', 'entitlements', ['subscription_ref'])

    # ========================================================================
    # Create credit_history table (append-only)
    # ========================================================================
    op.create_table(
        'credit_history',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), sa.ForeignKey('entitlements.user_id'), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('credits_before', sa.BigInteger(), nullable=False),
        sa.Column('credits_after', sa.BigInteger(), nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('related_generation_id', sa.Uuid(), nullable=True),
        sa.Column('related_event_id', sa.String(255), nullable=True),
        sa.Column('expirable', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('consumed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        # Constraints
        sa.CheckConstraint('credits_after = credits_before + amount', name='ck_history_balance_consistency'),
        sa.CheckConstraint('credits_after >= 0', name='ck_history_credits_after_non_negative'),
        sa.CheckConstraint(
            "kind IN ('usage', 'purchase', 'refund', 'expiration', 'adjustment')",
            name='history_kind',
        ),
    )

    op.create_index('ix_credit_history_user_id', 'credit_history', ['user_id'])
    op.create_index('idx_credit_history_created_at', 'credit_history', ['created_at'])
    op.create_index('idx_credit_history_kind', 'credit_history', ['kind'])
    op.create_index('idx_credit_history_related_event', 'credit_history', ['related_event_id'])
    op.create_index(
        'idx_credit_history_expirable_open',
        'credit_history',
        ['created_at'],
        postgresql_where=sa.text('expirable AND consumed_at IS NULL'),
    )

    # ========================================================================
    # Create processed_events table (webhook idempotency)
    # ========================================================================
    op.create_table(
        'processed_events',
        sa.Column('event_id', sa.String(255), primary_key=True),
        sa.Column('event_kind', sa.String(50), nullable=False),
        sa.Column('outcome', sa.String(20), nullable=False),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    # ========================================================================
    # Create conversations and conversation_messages tables
    # ========================================================================
    op.create_table(
        'conversations',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(255), nullable=False, server_default='New Conversation'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_index('ix_conversations_user_id', 'conversations', ['user_id'])

    op.create_table(
        'conversation_messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column(
            'conversation_id',
            sa.Uuid(),
            sa.ForeignKey('conversations.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('intent', sa.String(100), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint("role IN ('user', 'assistant')", name='ck_message_role'),
    )

    op.create_index('ix_conversation_messages_conversation_id', 'conversation_messages', ['conversation_id'])

    # ========================================================================
    # Create generation_records table (audit of every generation run)
    # ========================================================================
    op.create_table(
        'generation_records',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column(
            'conversation_id',
            sa.Uuid(),
            sa.ForeignKey('conversations.id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('workflow_document', sa.JSON(), nullable=True),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('credits_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('generation_time_ms', sa.Integer(), nullable=False),
        sa.Column('error_kind', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),

        sa.CheckConstraint('credits_used >= 0', name='ck_generation_credits_used_non_negative'),
    )

    op.create_index('ix_generation_records_user_id', 'generation_records', ['user_id'])
    op.create_index('idx_generation_records_created_at', 'generation_records', ['created_at'])

    # ========================================================================
    # Create read-only catalog tables
    # ========================================================================
    op.create_table(
        'node_patterns',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('node_type', sa.String(255), nullable=False),
        sa.Column('node_name', sa.String(255), nullable=False),
        sa.Column('node_config', sa.JSON(), nullable=False),
        sa.Column('use_case', sa.Text(), nullable=True),
        sa.Column('is_featured', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_index('ix_node_patterns_node_type', 'node_patterns', ['node_type'])

    op.create_table(
        'workflow_tips',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('category', sa.String(100), nullable=True),
        sa.Column('hints', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )

    op.create_table(
        'workflow_templates',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('workflow_json', sa.JSON(), nullable=False),
        sa.Column('use_cases', sa.JSON(), nullable=False),
        sa.Column('hints', sa.JSON(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_public', sa.Boolean(), nullable=False, server_default=sa.true()),
    )


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('workflow_templates')
    op.drop_table('workflow_tips')
    op.drop_index('ix_node_patterns_node_type', table_name='node_patterns')
    op.drop_table('node_patterns')
    op.drop_index('idx_generation_records_created_at', table_name='generation_records')
    op.drop_index('ix_generation_records_user_id', table_name='generation_records')
    op.drop_table('generation_records')
    op.drop_index('ix_conversation_messages_conversation_id', table_name='conversation_messages')
    op.drop_table('conversation_messages')
    op.drop_index('ix_conversations_user_id', table_name='conversations')
    op.drop_table('conversations')
    op.drop_table('processed_events')
    op.drop_index('idx_credit_history_expirable_open', table_name='credit_history')
    op.drop_index('idx_credit_history_related_event', table_name='credit_history')
    op.drop_index('idx_credit_history_kind', table_name='credit_history')
    op.drop_index('idx_credit_history_created_at', table_name='credit_history')
    op.drop_index('ix_credit_history_user_id', table_name='credit_history')
    op.drop_table('credit_history')
    op.drop_index('idx_entitlements_subscription_ref', table_name='entitlements')
    op.drop_index('idx_entitlements_customer_ref', table_name='entitlements')
    op.drop_table('entitlements')
