"""create notifications table

Revision ID: 3f2a9c1d7b40
Revises:
Create Date: 2026-10-17 09:12:31.402117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

NOTIFICATION_TYPES = (
    'TASK_REMINDER', 'MEETING_REMINDER', 'DOCUMENT_ANALYSIS', 'SYSTEM_UPDATE',
    'TASK_UPDATE', 'CALENDAR_SYNC', 'GENERAL',
)
NOTIFICATION_PRIORITIES = ('LOW', 'NORMAL', 'HIGH', 'URGENT')
NOTIFICATION_STATUSES = ('PENDING', 'SENT', 'DELIVERED', 'READ', 'FAILED')


def _channel_columns(channel: str, enabled_default: bool) -> list[sa.Column]:
    return [
        sa.Column(f'{channel}_enabled', sa.Boolean(), nullable=False, server_default=sa.true() if enabled_default else sa.false()),
        sa.Column(f'{channel}_sent', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(f'{channel}_sent_at', sa.DateTime(), nullable=True),
        sa.Column(f'{channel}_message_id', sa.String(length=200), nullable=True),
        sa.Column(f'{channel}_error', sa.Text(), nullable=True),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('title', sa.String(length=100), nullable=False),
        sa.Column('content', sa.String(length=500), nullable=False),
        sa.Column('type', sa.Enum(*NOTIFICATION_TYPES, name='notificationtype'), nullable=False),
        sa.Column('priority', sa.Enum(*NOTIFICATION_PRIORITIES, name='notificationpriority'), nullable=False),
        sa.Column('priority_rank', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum(*NOTIFICATION_STATUSES, name='notificationstatus'), nullable=False),
        sa.Column('recipient_user_id', sa.String(length=100), nullable=False),
        sa.Column('recipient_username', sa.String(length=200), nullable=False),
        sa.Column('recipient_email', sa.String(length=320), nullable=True),
        sa.Column('recipient_wechat_open_id', sa.String(length=128), nullable=True),
        *_channel_columns('web', True),
        sa.Column('web_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('web_read_at', sa.DateTime(), nullable=True),
        *_channel_columns('wechat', True),
        *_channel_columns('email', False),
        sa.Column('scheduled_for', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('related_task_id', sa.String(length=100), nullable=True),
        sa.Column('related_meeting_id', sa.String(length=100), nullable=True),
        sa.Column('related_document_id', sa.String(length=100), nullable=True),
        sa.Column('related_calendar_event_id', sa.String(length=100), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_retry_at', sa.DateTime(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(), nullable=True),
        sa.Column('source', sa.String(length=50), nullable=False, server_default='system'),
        sa.Column('tags', sa.String(length=500), nullable=True),
        sa.Column('user_agent', sa.String(length=500), nullable=True),
        sa.Column('client_ip', sa.String(length=64), nullable=True),
        sa.Column('lease_owner', sa.String(length=200), nullable=True),
        sa.Column('lease_expires_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_notifications_recipient_created', 'notifications', ['recipient_user_id', 'created_at'])
    op.create_index('ix_notifications_status_scheduled', 'notifications', ['status', 'scheduled_for'])
    op.create_index('ix_notifications_status_next_retry', 'notifications', ['status', 'next_retry_at'])
    op.create_index('ix_notifications_type_priority', 'notifications', ['type', 'priority'])
    op.create_index('ix_notifications_expires_at', 'notifications', ['expires_at'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_notifications_expires_at', table_name='notifications')
    op.drop_index('ix_notifications_type_priority', table_name='notifications')
    op.drop_index('ix_notifications_status_next_retry', table_name='notifications')
    op.drop_index('ix_notifications_status_scheduled', table_name='notifications')
    op.drop_index('ix_notifications_recipient_created', table_name='notifications')
    op.drop_table('notifications')
