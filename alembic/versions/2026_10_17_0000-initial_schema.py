"""initial schema

Revision ID: 2026_10_17_0000
Revises:
Create Date: 2026-10-17 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_17_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create faucet schema."""

    # ========================================================================
    # Create users table
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('handle', sa.String(255), nullable=False),
        sa.Column('role', sa.String(32), nullable=False, server_default='user'),
        sa.Column('domain', sa.String(255), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint("channel IN ('web', 'telegram', 'discord')", name='ck_users_channel'),
        sa.CheckConstraint("role IN ('user', 'privileged', 'admin')", name='ck_users_role'),
        sa.UniqueConstraint('channel', 'handle', name='uq_users_channel_handle'),
    )

    # ========================================================================
    # Create mint_requests table
    # ========================================================================
    op.create_table(
        'mint_requests',
        sa.Column('id', UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('channel', sa.String(32), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='pending'),
        sa.Column('tx_reference', sa.String(255), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),

        sa.CheckConstraint('amount > 0', name='ck_mint_requests_amount_positive'),
        sa.CheckConstraint('attempt >= 0', name='ck_mint_requests_attempt_non_negative'),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name='ck_mint_requests_status',
        ),
    )

    # Claim scans status + requested_at; reports scan requested_at
    op.create_index('idx_mint_requests_status_requested_at', 'mint_requests', ['status', 'requested_at'])
    op.create_index('idx_mint_requests_requested_at', 'mint_requests', ['requested_at'])
    op.create_index('idx_mint_requests_user_id', 'mint_requests', ['user_id'])

    # ========================================================================
    # Create quotas table
    # ========================================================================
    op.create_table(
        'quotas',
        sa.Column('user_id', UUID(as_uuid=True), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('day', sa.Date(), nullable=False),
        sa.Column('minted_total', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('success_count', sa.Integer(), nullable=False, server_default='0'),

        sa.PrimaryKeyConstraint('user_id', 'day'),
        sa.CheckConstraint('minted_total >= 0', name='ck_quotas_minted_non_negative'),
        sa.CheckConstraint('success_count >= 0', name='ck_quotas_success_non_negative'),
    )

    # ========================================================================
    # Create mint_failures table (append-only)
    # ========================================================================
    op.create_table(
        'mint_failures',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column(
            'request_id',
            UUID(as_uuid=True),
            sa.ForeignKey('mint_requests.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('reason', sa.Text(), nullable=False),
    )
    op.create_index('idx_mint_failures_request_id', 'mint_failures', ['request_id'])

    # ========================================================================
    # Create system_config table
    # ========================================================================
    op.create_table(
        'system_config',
        sa.Column('key', sa.String(255), primary_key=True),
        sa.Column('value', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )


def downgrade() -> None:
    """Drop faucet schema."""
    op.drop_table('system_config')
    op.drop_index('idx_mint_failures_request_id', table_name='mint_failures')
    op.drop_table('mint_failures')
    op.drop_table('quotas')
    op.drop_index('idx_mint_requests_user_id', table_name='mint_requests')
    op.drop_index('idx_mint_requests_requested_at', table_name='mint_requests')
    op.drop_index('idx_mint_requests_status_requested_at', table_name='mint_requests')
    op.drop_table('mint_requests')
    op.drop_table('users')
