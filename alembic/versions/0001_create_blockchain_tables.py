"""create blockchain payment tables

Revision ID: 0001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

payment_type = sa.Enum('ONE_TIME', 'SUBSCRIPTION', name='paymenttype')
payment_status = sa.Enum('CONFIRMED', name='paymentstatus')
# Shared by the second table; the type already exists by then
existing_payment_status = postgresql.ENUM('CONFIRMED', name='paymentstatus', create_type=False)
subscription_status = sa.Enum('ACTIVE', 'CANCELLED', name='subscriptionstatus')
order_payment_status = sa.Enum('PENDING', 'PAID', name='orderpaymentstatus')


def upgrade() -> None:
    op.create_table(
        'blockchain_payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('payer_address', sa.String(length=42), nullable=False),
        sa.Column('merchant_address', sa.String(length=42), nullable=False),
        sa.Column('amount_wei', sa.String(length=78), nullable=False),
        sa.Column('amount_eth', sa.Numeric(precision=78, scale=18), nullable=False),
        sa.Column('payment_type', payment_type, nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_blockchain_payments_transaction_hash', 'blockchain_payments', ['transaction_hash'], unique=True)
    op.create_index('ix_blockchain_payments_payer_address', 'blockchain_payments', ['payer_address'])
    op.create_index('ix_blockchain_payments_merchant_address', 'blockchain_payments', ['merchant_address'])
    op.create_index('ix_blockchain_payments_order_id', 'blockchain_payments', ['order_id'])

    op.create_table(
        'blockchain_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('subscriber_address', sa.String(length=42), nullable=False),
        sa.Column('merchant_address', sa.String(length=42), nullable=False),
        sa.Column('amount_wei', sa.String(length=78), nullable=False),
        sa.Column('amount_eth', sa.Numeric(precision=78, scale=18), nullable=False),
        sa.Column('interval_seconds', sa.BigInteger(), nullable=False),
        sa.Column('last_payment_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('payment_count', sa.Integer(), nullable=False),
        sa.Column('status', subscription_status, nullable=False),
        sa.Column('created_tx_hash', sa.String(length=66), nullable=False),
        sa.Column('created_block_number', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancelled_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_blockchain_subscriptions_subscription_id', 'blockchain_subscriptions', ['subscription_id'], unique=True)
    op.create_index('ix_blockchain_subscriptions_subscriber_address', 'blockchain_subscriptions', ['subscriber_address'])
    op.create_index('ix_blockchain_subscriptions_merchant_address', 'blockchain_subscriptions', ['merchant_address'])

    op.create_table(
        'blockchain_subscription_payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.String(), nullable=False),
        sa.Column('transaction_hash', sa.String(length=66), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=False),
        sa.Column('amount_wei', sa.String(length=78), nullable=False),
        sa.Column('amount_eth', sa.Numeric(precision=78, scale=18), nullable=False),
        sa.Column('payment_number', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', existing_payment_status, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_blockchain_subscription_payments_subscription_id', 'blockchain_subscription_payments', ['subscription_id'])
    op.create_index('ix_blockchain_subscription_payments_transaction_hash', 'blockchain_subscription_payments', ['transaction_hash'], unique=True)

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.String(), nullable=False),
        sa.Column('payment_status', order_payment_status, nullable=False),
        sa.Column('payment_method', sa.String(), nullable=True),
        sa.Column('blockchain_tx_hash', sa.String(length=66), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_orders_order_id', 'orders', ['order_id'], unique=True)

    op.create_table(
        'dead_letter_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_kind', sa.String(length=50), nullable=False),
        sa.Column('transaction_hash', sa.String(length=66), nullable=True),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_dead_letter_events_event_kind', 'dead_letter_events', ['event_kind'])
    op.create_index('ix_dead_letter_events_transaction_hash', 'dead_letter_events', ['transaction_hash'])


def downgrade() -> None:
    op.drop_table('dead_letter_events')
    op.drop_table('orders')
    op.drop_table('blockchain_subscription_payments')
    op.drop_table('blockchain_subscriptions')
    op.drop_table('blockchain_payments')
    bind = op.get_bind()
    for enum_type in (order_payment_status, subscription_status, payment_status, payment_type):
        enum_type.drop(bind, checkfirst=True)
