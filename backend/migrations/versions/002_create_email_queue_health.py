"""Create email_queue_health table

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    if 'email_queue_health' in inspector.get_table_names():
        return

    op.create_table(
        'email_queue_health',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('check_timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('pending_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stuck_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processing_time_avg_ms', sa.Integer(), nullable=True),
        sa.Column('health_status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_email_queue_health_check_timestamp', 'email_queue_health', ['check_timestamp'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    if 'email_queue_health' in inspector.get_table_names():
        op.drop_index('ix_email_queue_health_check_timestamp', table_name='email_queue_health')
        op.drop_table('email_queue_health')
