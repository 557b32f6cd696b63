"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create metering schema."""

    # ========================================================================
    # Create entitlements table
    # ========================================================================
    op.create_table(
        'entitlements',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('plan', sa.String(50), nullable=False, server_default='metered'),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('periodic_allowance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_period_reset', sa.DateTime(timezone=True), nullable=True),
        sa.Column('features', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('external_customer_id', sa.String(255), nullable=True),
        sa.Column('plan_event_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('credit_balance >= 0', name='ck_credit_balance_non_negative'),
        sa.CheckConstraint('periodic_allowance >= 0', name='ck_periodic_allowance_non_negative'),
        sa.CheckConstraint("status IN ('active', 'past_due', 'canceled', 'inactive')", name='ck_entitlement_status'),
        sa.UniqueConstraint('user_id', name='uq_entitlements_user_id'),
    )

    op.create_index('idx_entitlements_customer', 'entitlements', ['external_customer_id'])
    op.create_index('idx_entitlements_plan_status', 'entitlements', ['plan', 'status'])

    # ========================================================================
    # Create credit_purchases table
    # ========================================================================
    op.create_table(
        'credit_purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('external_payment_id', sa.String(255), nullable=False),
        sa.Column('pack_id', sa.String(50), nullable=True),
        sa.Column('credits_granted', sa.Integer(), nullable=False),
        sa.Column('amount_paid_minor', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='EUR'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),

        sa.CheckConstraint('credits_granted > 0', name='ck_purchase_credits_positive'),
        sa.CheckConstraint('amount_paid_minor >= 0', name='ck_purchase_amount_non_negative'),
        sa.CheckConstraint("status IN ('pending', 'completed')", name='ck_purchase_status'),
        sa.UniqueConstraint('external_payment_id', name='uq_credit_purchases_payment_id'),
    )

    op.create_index('idx_credit_purchases_user_created', 'credit_purchases', ['user_id', 'created_at'])

    # ========================================================================
    # Create credit_grants table
    # ========================================================================
    op.create_table(
        'credit_grants',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount > 0', name='ck_grant_amount_positive'),
        sa.UniqueConstraint('idempotency_key', name='uq_credit_grants_idempotency'),
    )

    op.create_index('idx_credit_grants_user', 'credit_grants', ['user_id'])

    # ========================================================================
    # Create usage_records table
    # ========================================================================
    op.create_table(
        'usage_records',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    op.create_index(
        'idx_usage_records_user_action_created',
        'usage_records',
        ['user_id', 'action_type', 'created_at'],
    )

    # ========================================================================
    # Create download_quotas table
    # ========================================================================
    op.create_table(
        'download_quotas',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('artifact_id', sa.String(255), nullable=False),
        sa.Column('owner_id', sa.String(255), nullable=False),
        sa.Column('downloads_remaining', sa.Integer(), nullable=False, server_default='10'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('downloads_remaining >= 0', name='ck_downloads_non_negative'),
        sa.UniqueConstraint('artifact_id', name='uq_download_quotas_artifact'),
    )

    op.create_index('idx_download_quotas_owner', 'download_quotas', ['owner_id'])

    # ========================================================================
    # Create webhook_events table
    # ========================================================================
    op.create_table(
        'webhook_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('provider', sa.String(50), nullable=False, server_default='stripe'),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('outcome', sa.String(50), nullable=False, server_default='processed'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('event_id', name='uq_webhook_events_event_id'),
    )

    op.create_index('idx_webhook_events_processed_at', 'webhook_events', ['processed_at'])


def downgrade() -> None:
    """Drop metering schema."""
    op.drop_table('webhook_events')
    op.drop_table('download_quotas')
    op.drop_table('usage_records')
    op.drop_table('credit_grants')
    op.drop_table('credit_purchases')
    op.drop_table('entitlements')
