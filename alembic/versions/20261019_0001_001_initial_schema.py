"""Initial schema - profiles, linking tokens and audit log

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-19

Creates the three tables the routing pipeline reads and writes.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Profiles table (one row per account)
    op.create_table(
        'profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('email', sa.String(255), unique=True, nullable=True),
        sa.Column('telegram_chat_id', sa.String(64), nullable=True),
        sa.Column('telegram_username', sa.String(100), nullable=True),
        sa.Column('telegram_first_name', sa.String(200), nullable=True),
        sa.Column('telegram_last_name', sa.String(200), nullable=True),
        sa.Column('telegram_linked_at', sa.DateTime, nullable=True),
        sa.Column('tier', sa.String(20), nullable=False, server_default='free'),
        sa.Column('trial_started_at', sa.DateTime, nullable=True),
        sa.Column('trial_expires_at', sa.DateTime, nullable=True),
        sa.Column('quota_used', sa.Integer, nullable=False, server_default='0'),
        sa.Column('quota_limit', sa.Integer, nullable=False, server_default='50'),
        sa.Column('last_activity_at', sa.DateTime, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime, server_default=sa.func.now()),
        sa.CheckConstraint(
            'quota_limit = -1 OR quota_used <= quota_limit',
            name='ck_profiles_quota_within_limit',
        ),
        sa.CheckConstraint('quota_used >= 0', name='ck_profiles_quota_non_negative'),
    )
    op.create_index('ix_profiles_telegram_chat_id', 'profiles', ['telegram_chat_id'], unique=True)
    op.create_index('ix_profiles_tier', 'profiles', ['tier'])

    # Linking tokens (only the SHA-256 of the code is stored)
    op.create_table(
        'linking_tokens',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('token_hash', sa.String(64), unique=True, nullable=False),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
        sa.Column('expires_at', sa.DateTime, nullable=False),
        sa.Column('redeemed_at', sa.DateTime, nullable=True),
        sa.Column('redeemed_chat_id', sa.String(64), nullable=True),
    )
    op.create_index('ix_linking_tokens_account_id', 'linking_tokens', ['account_id'])
    op.create_index('ix_linking_tokens_expires', 'linking_tokens', ['expires_at'])

    # Audit log (append-only)
    op.create_table(
        'audit_log',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('chat_id', sa.String(64), nullable=True),
        sa.Column('action_type', sa.String(50), nullable=False),
        sa.Column('action_detail', sa.String(255), nullable=False),
        sa.Column('context_json', sa.Text, nullable=True),
        sa.Column('success', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('duration_ms', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.func.now()),
    )
    op.create_index('ix_audit_log_account_id', 'audit_log', ['account_id'])
    op.create_index('ix_audit_log_action_type', 'audit_log', ['action_type'])
    op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])
    op.create_index('ix_audit_log_account_time', 'audit_log', ['account_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('audit_log')
    op.drop_table('linking_tokens')
    op.drop_table('profiles')
