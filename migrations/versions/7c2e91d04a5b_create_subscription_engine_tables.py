"""Create subscription engine tables

Revision ID: 7c2e91d04a5b
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e91d04a5b'
down_revision = None
branch_labels = None
depends_on = None

OPEN_PREDICATE = sa.text("status IN ('PENDING', 'ACTIVE', 'PAST_DUE')")


def upgrade():
    op.create_table('tiers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('creator_id', sa.String(length=36), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('interval', sa.String(length=20), nullable=False),
        sa.Column('perks', sa.JSON(), nullable=True),
        sa.Column('rank', sa.Integer(), nullable=False),
        sa.Column('max_subscribers', sa.Integer(), nullable=True),
        sa.Column('current_subscribers', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint('price_cents > 0', name='ck_tiers_price_positive'),
        sa.CheckConstraint('max_subscribers IS NULL OR max_subscribers >= 1', name='ck_tiers_cap_positive'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_tiers_creator_id', 'tiers', ['creator_id'], unique=False)
    op.create_index('ix_tiers_is_active', 'tiers', ['is_active'], unique=False)

    op.create_table('external_customers',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=False),
        sa.Column('processor_customer_id', sa.String(length=255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id'),
        sa.UniqueConstraint('processor_customer_id')
    )

    op.create_table('subscriptions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('subscriber_id', sa.String(length=36), nullable=False),
        sa.Column('creator_id', sa.String(length=36), nullable=False),
        sa.Column('tier_id', sa.String(length=36), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('past_due_since', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ended_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_event_seq', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['tier_id'], ['tiers.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_subscription_id')
    )
    op.create_index('ix_subscriptions_subscriber_id', 'subscriptions', ['subscriber_id'], unique=False)
    op.create_index('ix_subscriptions_creator_id', 'subscriptions', ['creator_id'], unique=False)
    op.create_index('ix_subscriptions_tier_id', 'subscriptions', ['tier_id'], unique=False)
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'], unique=False)
    # At most one non-terminal subscription per (subscriber, creator)
    op.create_index(
        'uq_subscriptions_open_per_creator', 'subscriptions',
        ['subscriber_id', 'creator_id'], unique=True,
        postgresql_where=OPEN_PREDICATE,
        sqlite_where=OPEN_PREDICATE,
    )

    op.create_table('processed_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('external_event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('canonical_type', sa.String(length=64), nullable=True),
        sa.Column('subscription_id', sa.String(length=36), nullable=True),
        sa.Column('outcome', sa.String(length=32), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_event_id')
    )
    op.create_index('ix_processed_events_subscription_id', 'processed_events', ['subscription_id'], unique=False)

    op.create_table('refund_intents',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('subscription_id', sa.String(length=36), nullable=False),
        sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('reason', sa.String(length=64), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=True),
        sa.Column('source_event_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('subscription_id', 'reason', name='uq_refund_intent_subscription_reason')
    )

    op.create_table('gated_content',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('creator_id', sa.String(length=36), nullable=False),
        sa.Column('minimum_tier_id', sa.String(length=36), nullable=True),
        sa.Column('title', sa.String(length=500), nullable=True),
        sa.Column('kind', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['minimum_tier_id'], ['tiers.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_gated_content_creator_id', 'gated_content', ['creator_id'], unique=False)

    op.create_table('audit_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('subscription_id', sa.String(length=36), nullable=True),
        sa.Column('tier_id', sa.String(length=36), nullable=True),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_events_subscription_id', 'audit_events', ['subscription_id'], unique=False)


def downgrade():
    op.drop_index('ix_audit_events_subscription_id', table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_index('ix_gated_content_creator_id', table_name='gated_content')
    op.drop_table('gated_content')
    op.drop_table('refund_intents')
    op.drop_index('ix_processed_events_subscription_id', table_name='processed_events')
    op.drop_table('processed_events')
    op.drop_index('uq_subscriptions_open_per_creator', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_tier_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_creator_id', table_name='subscriptions')
    op.drop_index('ix_subscriptions_subscriber_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_table('external_customers')
    op.drop_index('ix_tiers_is_active', table_name='tiers')
    op.drop_index('ix_tiers_creator_id', table_name='tiers')
    op.drop_table('tiers')
