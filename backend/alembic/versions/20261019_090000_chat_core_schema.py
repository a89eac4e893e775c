"""Chat core schema - folders, chats, messages and operation receipts

Revision ID: 20261019_090000
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_090000'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'folders',
        sa.Column('id', sa.String(40), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_folders_user_id', 'folders', ['user_id'])

    op.create_table(
        'chats',
        sa.Column('id', sa.String(40), nullable=False),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('folder_id', sa.String(40), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('is_favorite', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_archived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('message_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_seq', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('field_versions', sa.JSON(), nullable=False),
        sa.Column('client_correlation_id', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['folder_id'], ['folders.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'client_correlation_id', name='uq_chats_user_correlation')
    )
    op.create_index('ix_chats_user_id', 'chats', ['user_id'])
    op.create_index('ix_chats_folder_id', 'chats', ['folder_id'])
    op.create_index('ix_chats_user_updated', 'chats', ['user_id', 'updated_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.String(40), nullable=False),
        sa.Column('chat_id', sa.String(40), nullable=False),
        sa.Column('seq', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(16), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('content_type', sa.String(50), nullable=False, server_default='text'),
        sa.Column('status', sa.String(16), nullable=False, server_default='sent'),
        sa.Column('correlation_id', sa.String(64), nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('reply_to_id', sa.String(40), nullable=True),
        sa.Column('thread_id', sa.String(40), nullable=True),
        sa.Column('reactions', sa.JSON(), nullable=False),
        sa.Column('edit_history', sa.JSON(), nullable=False),
        sa.Column('is_truncated', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('edited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['chat_id'], ['chats.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('chat_id', 'seq', name='uq_messages_chat_seq'),
        sa.UniqueConstraint('chat_id', 'correlation_id', 'attempt', name='uq_messages_correlation_attempt')
    )
    op.create_index('ix_messages_chat_id', 'messages', ['chat_id'])
    op.create_index('ix_messages_correlation_id', 'messages', ['correlation_id'])
    op.create_index('ix_messages_thread_id', 'messages', ['thread_id'])

    op.create_check_constraint(
        'check_message_role',
        'messages',
        "role IN ('user', 'bot')"
    )
    op.create_check_constraint(
        'check_message_status',
        'messages',
        "status IN ('sending', 'sent', 'delivered', 'read', 'failed')"
    )

    op.create_table(
        'operation_receipts',
        sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
        sa.Column('user_id', sa.String(255), nullable=False),
        sa.Column('correlation_id', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(32), nullable=False),
        sa.Column('response', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'correlation_id', name='uq_receipts_user_correlation')
    )


def downgrade() -> None:
    # Drop tables in reverse order due to foreign key constraints
    op.drop_table('operation_receipts')
    op.drop_table('messages')
    op.drop_table('chats')
    op.drop_table('folders')
