"""Token ledger, subscriptions, promo codes and jobs

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # token_accounts: one ledger per shop
    op.create_table(
        'token_accounts',
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_purchased', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('last_purchase_usd', sa.Numeric(10, 2), nullable=True),
        sa.Column('last_purchase_tokens', sa.BigInteger(), nullable=True),
        sa.Column('last_purchase_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_purchase_charge_id', sa.String(255), nullable=True),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_token_accounts')),
        sa.CheckConstraint('balance >= 0', name=op.f('ck_token_accounts_balance_non_negative')),
    )
    op.create_index(op.f('ix_token_accounts_shop'), 'token_accounts', ['shop'], unique=True)

    op.create_table(
        'token_purchases',
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('usd_amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('app_revenue_share', sa.Numeric(10, 2), nullable=False),
        sa.Column('token_budget_share', sa.Numeric(10, 2), nullable=False),
        sa.Column('tokens_received', sa.BigInteger(), nullable=False),
        sa.Column('external_charge_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_token_purchases')),
        sa.ForeignKeyConstraint(
            ['account_id'], ['token_accounts.id'],
            name=op.f('fk_token_purchases_account_id_token_accounts'), ondelete='CASCADE',
        ),
        sa.UniqueConstraint('account_id', 'external_charge_id', name=op.f('uq_token_purchases_account_charge')),
    )
    op.create_index(op.f('ix_token_purchases_account_id'), 'token_purchases', ['account_id'])

    op.create_table(
        'token_usage_entries',
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('feature', sa.String(100), nullable=False),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False),
        sa.Column('related_entity_id', sa.String(255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('reservation_id', sa.UUID(), nullable=True),
        sa.Column('status', sa.String(20), nullable=True),
        sa.Column('estimated_amount', sa.BigInteger(), nullable=True),
        sa.Column('actual_tokens_used', sa.BigInteger(), nullable=True),
        sa.Column('refunded_amount', sa.BigInteger(), nullable=True),
        sa.Column('reconciliation_shortfall', sa.BigInteger(), nullable=True),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_token_usage_entries')),
        sa.ForeignKeyConstraint(
            ['account_id'], ['token_accounts.id'],
            name=op.f('fk_token_usage_entries_account_id_token_accounts'), ondelete='CASCADE',
        ),
        sa.UniqueConstraint('reservation_id', name=op.f('uq_token_usage_entries_reservation_id')),
    )
    op.create_index(op.f('ix_token_usage_entries_account_id'), 'token_usage_entries', ['account_id'])
    op.create_index(op.f('ix_token_usage_entries_status'), 'token_usage_entries', ['status'])

    # subscriptions: plan quota and trial window
    op.create_table(
        'subscriptions',
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('plan', sa.String(50), nullable=False),
        sa.Column('query_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('query_limit', sa.Integer(), nullable=False, server_default='50'),
        sa.Column('product_limit', sa.Integer(), nullable=False, server_default='150'),
        sa.Column('allowed_providers', sa.JSON(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('promo_code', sa.String(64), nullable=True),
        sa.Column('discount_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_subscriptions')),
    )
    op.create_index(op.f('ix_subscriptions_shop'), 'subscriptions', ['shop'], unique=True)

    op.create_table(
        'quota_consumptions',
        sa.Column('subscription_id', sa.UUID(), nullable=False),
        sa.Column('request_key', sa.String(255), nullable=False),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_quota_consumptions')),
        sa.ForeignKeyConstraint(
            ['subscription_id'], ['subscriptions.id'],
            name=op.f('fk_quota_consumptions_subscription_id_subscriptions'), ondelete='CASCADE',
        ),
        sa.UniqueConstraint('subscription_id', 'request_key', name=op.f('uq_quota_consumptions_request')),
    )
    op.create_index(op.f('ix_quota_consumptions_subscription_id'), 'quota_consumptions', ['subscription_id'])

    # promo_codes / promo_allowlist
    op.create_table(
        'promo_codes',
        sa.Column('code', sa.String(64), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('discount_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('granted_plan', sa.String(50), nullable=True),
        sa.Column('max_uses', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('campaign', sa.String(100), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_promo_codes')),
        sa.CheckConstraint('current_uses <= max_uses', name=op.f('ck_promo_codes_uses_within_cap')),
        sa.CheckConstraint('current_uses >= 0', name=op.f('ck_promo_codes_uses_non_negative')),
    )
    op.create_index(op.f('ix_promo_codes_code'), 'promo_codes', ['code'], unique=True)

    op.create_table(
        'promo_allowlist',
        sa.Column('shop', sa.String(255), nullable=False),
        sa.Column('promo_type', sa.String(32), nullable=False),
        sa.Column('trial_days', sa.Integer(), nullable=False, server_default='30'),
        sa.Column('discount_percent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('campaign', sa.String(100), nullable=True),
        sa.Column('added_by', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_promo_allowlist')),
    )
    op.create_index(op.f('ix_promo_allowlist_shop'), 'promo_allowlist', ['shop'], unique=True)

    # jobs: background run records
    op.create_table(
        'jobs',
        sa.Column('job_type', sa.String(100), nullable=False),
        sa.Column('status', sa.String(50), nullable=False, server_default='pending'),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('parameters', sa.JSON(), nullable=True),
        sa.Column('result_summary', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('celery_task_id', sa.String(255), nullable=True),
        sa.Column('id', sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id', name=op.f('pk_jobs')),
    )
    op.create_index(op.f('ix_jobs_job_type'), 'jobs', ['job_type'])


def downgrade() -> None:
    op.drop_index(op.f('ix_jobs_job_type'), table_name='jobs')
    op.drop_table('jobs')
    op.drop_index(op.f('ix_promo_allowlist_shop'), table_name='promo_allowlist')
    op.drop_table('promo_allowlist')
    op.drop_index(op.f('ix_promo_codes_code'), table_name='promo_codes')
    op.drop_table('promo_codes')
    op.drop_index(op.f('ix_quota_consumptions_subscription_id'), table_name='quota_consumptions')
    op.drop_table('quota_consumptions')
    op.drop_index(op.f('ix_subscriptions_shop'), table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index(op.f('ix_token_usage_entries_status'), table_name='token_usage_entries')
    op.drop_index(op.f('ix_token_usage_entries_account_id'), table_name='token_usage_entries')
    op.drop_table('token_usage_entries')
    op.drop_index(op.f('ix_token_purchases_account_id'), table_name='token_purchases')
    op.drop_table('token_purchases')
    op.drop_index(op.f('ix_token_accounts_shop'), table_name='token_accounts')
    op.drop_table('token_accounts')
