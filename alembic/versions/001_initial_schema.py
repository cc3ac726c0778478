"""Initial schema - creates all tables and indexes for portal-mail.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

This migration creates the complete database schema from scratch.
For databases created with `portal-mail init-db`, use `alembic stamp head` instead of running this.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables and indexes."""

    # ==========================================================================
    # Accounts & sync state
    # ==========================================================================

    # email_accounts - Connected mailboxes (tokens are Fernet ciphertext)
    op.create_table('email_accounts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False, server_default='google'),
        sa.Column('access_token', sa.Text(), nullable=True),  # Encrypted
        sa.Column('refresh_token', sa.Text(), nullable=True),  # Encrypted
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )
    op.create_index('ix_email_accounts_user_id', 'email_accounts', ['user_id'])

    # email_sync_state - 1:1 with accounts: status, history watermark, lease
    op.create_table('email_sync_state',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='idle'),
        sa.Column('history_id', sa.String(64), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_full_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_incremental_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('messages_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lease_owner', sa.String(100), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id')
    )

    # ==========================================================================
    # Mailbox mirror
    # ==========================================================================

    # email_threads - One row per (account, remote thread)
    op.create_table('email_threads',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('remote_thread_id', sa.String(255), nullable=True),
        sa.Column('subject', sa.Text(), nullable=False, server_default=''),
        sa.Column('snippet', sa.Text(), nullable=True),
        sa.Column('participants', postgresql.JSON(), nullable=False),
        sa.Column('labels', postgresql.JSON(), nullable=False),
        sa.Column('is_starred', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'remote_thread_id', name='uq_email_threads_account_remote')
    )
    op.create_index('ix_email_threads_account_last_message', 'email_threads', ['account_id', 'last_message_at'])

    # email_messages - Mirrored messages (bodies encrypted)
    op.create_table('email_messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('thread_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('remote_message_id', sa.String(255), nullable=False),
        sa.Column('from_address', postgresql.JSON(), nullable=False),
        sa.Column('to_addresses', postgresql.JSON(), nullable=False),
        sa.Column('cc_addresses', postgresql.JSON(), nullable=True),
        sa.Column('bcc_addresses', postgresql.JSON(), nullable=True),
        sa.Column('subject', sa.Text(), nullable=False, server_default=''),
        sa.Column('snippet', sa.Text(), nullable=True),
        sa.Column('body_html', sa.Text(), nullable=True),  # Encrypted
        sa.Column('body_text', sa.Text(), nullable=True),  # Encrypted
        sa.Column('labels', postgresql.JSON(), nullable=False),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('is_starred', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('in_reply_to', sa.String(500), nullable=True),
        sa.Column('references', postgresql.JSON(), nullable=True),
        sa.Column('raw_headers', postgresql.JSON(), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('tracking_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('tracking_pixel_id', sa.String(64), nullable=True),
        sa.Column('first_opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_opened_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('open_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.ForeignKeyConstraint(['thread_id'], ['email_threads.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('remote_message_id'),
        sa.UniqueConstraint('tracking_pixel_id')
    )
    op.create_index('ix_email_messages_thread_id', 'email_messages', ['thread_id'])
    op.create_index('ix_email_messages_received_at', 'email_messages', ['received_at'])

    # ==========================================================================
    # Delivery
    # ==========================================================================

    # email_drafts - Composed messages, the source of automatic retries
    op.create_table('email_drafts',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('to_addresses', postgresql.JSON(), nullable=False),
        sa.Column('cc_addresses', postgresql.JSON(), nullable=True),
        sa.Column('bcc_addresses', postgresql.JSON(), nullable=True),
        sa.Column('subject', sa.Text(), nullable=False, server_default=''),
        sa.Column('body_html', sa.Text(), nullable=True),  # Encrypted
        sa.Column('body_text', sa.Text(), nullable=True),  # Encrypted
        sa.Column('in_reply_to', sa.String(500), nullable=True),
        sa.Column('references', postgresql.JSON(), nullable=True),
        sa.Column('remote_thread_id', sa.String(255), nullable=True),
        sa.Column('attachments', sa.Text(), nullable=True),  # Encrypted JSON
        sa.Column('tracking_enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['email_accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_email_drafts_account_id', 'email_drafts', ['account_id'])

    # email_send_status - One row per logical outbound message (audit trail)
    op.create_table('email_send_status',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('account_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('draft_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='sending'),
        sa.Column('remote_message_id', sa.String(255), nullable=True),
        sa.Column('remote_thread_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('bounce_type', sa.String(20), nullable=True),
        sa.Column('bounce_reason', sa.Text(), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payload', sa.Text(), nullable=True),  # Encrypted JSON
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['email_accounts.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['draft_id'], ['email_drafts.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['message_id'], ['email_messages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_send_status_retry_ceiling')
    )
    op.create_index('ix_email_send_status_draft_id', 'email_send_status', ['draft_id'])
    op.create_index('ix_email_send_status_message_id', 'email_send_status', ['message_id'])
    op.create_index('ix_email_send_status_status_next_retry', 'email_send_status', ['status', 'next_retry_at'])
    op.create_index('ix_email_send_status_status_scheduled', 'email_send_status', ['status', 'scheduled_for'])

    # ==========================================================================
    # Open tracking
    # ==========================================================================

    op.create_table('email_opens',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('location', sa.String(200), nullable=True),
        sa.ForeignKeyConstraint(['message_id'], ['email_messages.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_email_opens_message_id', 'email_opens', ['message_id'])
    op.create_index('ix_email_opens_opened_at', 'email_opens', ['opened_at'])


def downgrade() -> None:
    """Drop all tables."""
    # Drop in reverse order due to foreign key constraints
    op.drop_table('email_opens')
    op.drop_table('email_send_status')
    op.drop_table('email_drafts')
    op.drop_table('email_messages')
    op.drop_table('email_threads')
    op.drop_table('email_sync_state')
    op.drop_table('email_accounts')
