"""Create email_queue table

Revision ID: 001
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Table may already exist if it was created by Base.metadata.create_all
    conn = op.get_bind()
    inspector = inspect(conn)
    if 'email_queue' in inspector.get_table_names():
        return

    op.create_table(
        'email_queue',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('recipient_email', sa.Text(), nullable=False),
        sa.Column('subject', sa.Text(), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('retry_reserved', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('provider_message_id', sa.String(length=255), nullable=True),
        sa.Column('school_id', sa.String(length=36), nullable=True),
        sa.Column('source_table', sa.String(length=100), nullable=True),
        sa.Column('record_id', sa.String(length=36), nullable=True),
        sa.Column('rule_id', sa.String(length=36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            "status IN ('pending', 'sent', 'failed', 'cancelled', 'rate_limited')",
            name='ck_email_queue_status'
        ),
    )
    op.create_index('ix_email_queue_school_id', 'email_queue', ['school_id'])
    op.create_index('ix_email_queue_status_created_at', 'email_queue', ['status', 'created_at'])
    op.create_index('ix_email_queue_status_next_retry_at', 'email_queue', ['status', 'next_retry_at'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    if 'email_queue' in inspector.get_table_names():
        op.drop_index('ix_email_queue_status_next_retry_at', table_name='email_queue')
        op.drop_index('ix_email_queue_status_created_at', table_name='email_queue')
        op.drop_index('ix_email_queue_school_id', table_name='email_queue')
        op.drop_table('email_queue')
