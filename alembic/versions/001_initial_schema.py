"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create enums
    event_type_enum = postgresql.ENUM(
        'FINGERPRINT_REGISTERED', 'FINGERPRINT_BLOCKED', 'SUSPICIOUS_ACTIVITY',
        'SESSION_CREATED', 'SESSION_EXPIRED',
        'MAGIC_LINK_REQUESTED', 'MAGIC_LINK_RATE_LIMITED', 'MAGIC_LINK_USED', 'MAGIC_LINK_REJECTED',
        'AUTH_CODE_FAILED', 'ACCOUNT_LOCKED', 'LOGIN_SUCCESS', 'LOGOUT',
        name='event_type_enum',
        create_type=True
    )
    event_type_enum.create(op.get_bind(), checkfirst=True)

    # Create magic_link_tokens table
    op.create_table(
        'magic_link_tokens',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('phone', sa.String(20), nullable=False),
        sa.Column('store_id', sa.String(128), nullable=False),
        sa.Column('fingerprint', sa.String(128), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('table_id', sa.String(128), nullable=True),
        sa.Column('is_delivery', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('is_used', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('used_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_hash')
    )
    op.create_index('ix_magic_link_tokens_phone', 'magic_link_tokens', ['phone'])
    op.create_index('ix_magic_link_tokens_fingerprint', 'magic_link_tokens', ['fingerprint'])
    op.create_index('idx_magic_link_phone_created', 'magic_link_tokens', ['phone', 'created_at'])

    # Create security_audit_logs table
    op.create_table(
        'security_audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', event_type_enum, nullable=False),
        sa.Column('risk_score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('fingerprint', sa.String(128), nullable=True),
        sa.Column('store_id', sa.String(128), nullable=True),
        sa.Column('customer_id', sa.String(64), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=False),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_security_audit_logs_fingerprint', 'security_audit_logs', ['fingerprint'])
    op.create_index('idx_audit_created_at', 'security_audit_logs', ['created_at'])
    op.create_index('idx_audit_ip_address', 'security_audit_logs', ['ip_address'])


def downgrade() -> None:
    op.drop_index('idx_audit_ip_address', table_name='security_audit_logs')
    op.drop_index('idx_audit_created_at', table_name='security_audit_logs')
    op.drop_index('ix_security_audit_logs_fingerprint', table_name='security_audit_logs')
    op.drop_table('security_audit_logs')
    op.drop_index('idx_magic_link_phone_created', table_name='magic_link_tokens')
    op.drop_index('ix_magic_link_tokens_fingerprint', table_name='magic_link_tokens')
    op.drop_index('ix_magic_link_tokens_phone', table_name='magic_link_tokens')
    op.drop_table('magic_link_tokens')

    # Drop enums
    op.execute('DROP TYPE IF EXISTS event_type_enum')
