"""add processor catalog ids, scheduled cancellation and refund-intent cancel marker

Revision ID: b41d6e2f8c13
Revises: 7c2e91d04a5b
Create Date: 2026-10-18 14:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b41d6e2f8c13'
down_revision = '7c2e91d04a5b'
branch_labels = None
depends_on = None


def upgrade():
    # --- Tiers: persistent Stripe Product / Price ---
    with op.batch_alter_table('tiers', schema=None) as batch_op:
        batch_op.add_column(sa.Column('stripe_product_id', sa.String(length=255), nullable=True))
        batch_op.add_column(sa.Column('stripe_price_id', sa.String(length=255), nullable=True))
        batch_op.create_unique_constraint('uq_tiers_stripe_price_id', ['stripe_price_id'])

    # --- Subscriptions: cancel at period end ---
    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.add_column(sa.Column(
            'cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()
        ))
        batch_op.add_column(sa.Column('cancel_requested_at', sa.DateTime(timezone=True), nullable=True))

    # --- Refund intents: processor subscription canceled ---
    with op.batch_alter_table('refund_intents', schema=None) as batch_op:
        batch_op.add_column(sa.Column('processor_canceled_at', sa.DateTime(timezone=True), nullable=True))


def downgrade():
    with op.batch_alter_table('refund_intents', schema=None) as batch_op:
        batch_op.drop_column('processor_canceled_at')

    with op.batch_alter_table('subscriptions', schema=None) as batch_op:
        batch_op.drop_column('cancel_requested_at')
        batch_op.drop_column('cancel_at_period_end')

    with op.batch_alter_table('tiers', schema=None) as batch_op:
        batch_op.drop_constraint('uq_tiers_stripe_price_id', type_='unique')
        batch_op.drop_column('stripe_price_id')
        batch_op.drop_column('stripe_product_id')
