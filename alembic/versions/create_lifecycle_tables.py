"""Create users and activity_logs tables for lifecycle tracking.

Revision ID: create_lifecycle_tables
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'create_lifecycle_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True, index=True),
        sa.Column('phone', sa.String(20), nullable=True),
        sa.Column('email_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('phone_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('position_level', sa.String(50), nullable=True),
        sa.Column('tasks_per_day', sa.Integer(), nullable=True),
        sa.Column('total_earnings', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('wallet_balance', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('referred_by_id', sa.String(36),
                  sa.ForeignKey('users.id', ondelete='SET NULL'),
                  nullable=True, index=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True, index=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False, index=True),
    )

    op.create_table(
        'activity_logs',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(36),
                  sa.ForeignKey('users.id', ondelete='CASCADE'),
                  nullable=False, index=True),
        sa.Column('activity', sa.String(50), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('source', sa.String(30), nullable=True),
        sa.Column('session_id', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('device_id', sa.String(100), nullable=True),
        sa.Column('admin_id', sa.String(36), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True),
                  server_default=sa.func.now(), nullable=False, index=True),
    )

    # Latest STAGE_TRANSITION per user, per-type counts and histories
    op.create_index(
        'ix_activity_logs_user_activity_created',
        'activity_logs',
        ['user_id', 'activity', 'created_at'],
    )
    # Range scans for analytics
    op.create_index(
        'ix_activity_logs_activity_created',
        'activity_logs',
        ['activity', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_activity_logs_activity_created', table_name='activity_logs')
    op.drop_index('ix_activity_logs_user_activity_created', table_name='activity_logs')
    op.drop_table('activity_logs')
    op.drop_table('users')
