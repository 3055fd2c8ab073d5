"""phone auth: users, block records, request logs, device sightings, failed attempts

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261019_01'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('phone', sa.String(32), nullable=False),
        sa.Column('name', sa.String(128), nullable=True),
        sa.Column('role', sa.String(16), nullable=False, server_default='customer'),
        sa.Column('is_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_login', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_phone', 'users', ['phone'], unique=True)

    op.create_table(
        'block_records',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('phone', sa.String(32), nullable=False),
        sa.Column('daily_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_permanently_blocked', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('temporary_block_until', sa.DateTime(), nullable=True),
        sa.Column('last_updated', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_block_records_phone', 'block_records', ['phone'], unique=True)
    op.create_index('ix_block_records_last_updated', 'block_records', ['last_updated'])

    op.create_table(
        'request_logs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('ip', sa.String(64), nullable=False),
        sa.Column('scope', sa.String(32), nullable=False, server_default='global'),
        sa.Column('endpoint', sa.String(256), nullable=True),
        sa.Column('user_agent', sa.String(512), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_request_logs_ip_created', 'request_logs', ['ip', 'created_at'])

    op.create_table(
        'device_fingerprints',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('phone', sa.String(32), nullable=False),
        sa.Column('user_agent', sa.String(512), nullable=False, server_default='unknown'),
        sa.Column('ip', sa.String(64), nullable=True),
        sa.Column('seen_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_device_fingerprints_phone_seen', 'device_fingerprints', ['phone', 'seen_at'])

    op.create_table(
        'failed_attempts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('identifier', sa.String(64), nullable=False),
        sa.Column('kind', sa.String(8), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('identifier', 'kind', name='uq_failed_attempts_identifier_kind'),
    )
    op.create_index('ix_failed_attempts_identifier', 'failed_attempts', ['identifier'])

    op.create_table(
        'failed_attempt_reasons',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            'failed_attempt_id',
            sa.Integer(),
            sa.ForeignKey('failed_attempts.id', ondelete='CASCADE'),
            nullable=False,
        ),
        sa.Column('detail', sa.String(512), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_failed_attempt_reasons_failed_attempt_id', 'failed_attempt_reasons', ['failed_attempt_id'])


def downgrade() -> None:
    op.drop_index('ix_failed_attempt_reasons_failed_attempt_id', table_name='failed_attempt_reasons')
    op.drop_table('failed_attempt_reasons')
    op.drop_index('ix_failed_attempts_identifier', table_name='failed_attempts')
    op.drop_table('failed_attempts')
    op.drop_index('ix_device_fingerprints_phone_seen', table_name='device_fingerprints')
    op.drop_table('device_fingerprints')
    op.drop_index('ix_request_logs_ip_created', table_name='request_logs')
    op.drop_table('request_logs')
    op.drop_index('ix_block_records_last_updated', table_name='block_records')
    op.drop_index('ix_block_records_phone', table_name='block_records')
    op.drop_table('block_records')
    op.drop_index('ix_users_phone', table_name='users')
    op.drop_table('users')
