"""initial schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Detect database type
    bind = op.get_bind()
    is_sqlite = bind.dialect.name == 'sqlite'

    # Choose appropriate JSON type
    json_type = sa.JSON() if is_sqlite else postgresql.JSONB(astext_type=sa.Text())

    # Ids are stored as strings on both backends
    id_type = sa.String(36)

    # Choose appropriate timestamp default
    timestamp_default = sa.text("(datetime('now'))") if is_sqlite else sa.text('now()')
    true_default = '1' if is_sqlite else 'true'

    # Create policies table
    op.create_table(
        'policies',
        sa.Column('id', id_type, nullable=False),
        sa.Column('user_id', id_type, nullable=False),
        sa.Column('agent_id', id_type, nullable=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('conditions', json_type, nullable=False, server_default='{}'),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('scope_template', json_type, nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=true_default),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.CheckConstraint(
            "action IN ('auto_approve', 'require_approval', 'deny')",
            name='ck_policies_action',
        ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_policies_user_id', 'policies', ['user_id'])
    op.create_index('ix_policies_agent_id', 'policies', ['agent_id'])
    # Composite index for the evaluation lookup
    op.create_index('ix_policies_user_active_priority', 'policies', ['user_id', 'is_active', 'priority'])

    # Create permission_requests table
    op.create_table(
        'permission_requests',
        sa.Column('id', id_type, nullable=False),
        sa.Column('user_id', id_type, nullable=False),
        sa.Column('agent_id', id_type, nullable=False),
        sa.Column('action', sa.String(length=255), nullable=False),
        sa.Column('resource', sa.String(length=255), nullable=True),
        sa.Column('scope', json_type, nullable=False, server_default='{}'),
        sa.Column('context', json_type, nullable=False, server_default='{}'),
        sa.Column('status', sa.String(length=50), nullable=False, server_default='pending'),
        sa.Column('policy_id', id_type, nullable=True),
        sa.Column('decision_reason', sa.Text(), nullable=True),
        sa.Column('decided_by', sa.String(length=50), nullable=True),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.CheckConstraint(
            "status IN ('pending', 'approved', 'denied', 'expired', 'cancelled', 'used')",
            name='ck_permission_requests_status',
        ),
        sa.ForeignKeyConstraint(['policy_id'], ['policies.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_permission_requests_user_id', 'permission_requests', ['user_id'])
    op.create_index('ix_permission_requests_agent_id', 'permission_requests', ['agent_id'])
    op.create_index('ix_permission_requests_status', 'permission_requests', ['status'])
    op.create_index('ix_permission_requests_expires_at', 'permission_requests', ['expires_at'])
    op.create_index('ix_permission_requests_created_at', 'permission_requests', ['created_at'])

    # Create tokens table
    op.create_table(
        'tokens',
        sa.Column('id', id_type, nullable=False),
        sa.Column('permission_request_id', id_type, nullable=False),
        sa.Column('token_hash', sa.String(length=64), nullable=False),
        sa.Column('scope', json_type, nullable=False, server_default='{}'),
        sa.Column('uses_remaining', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('used_at', sa.DateTime(), nullable=True),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.CheckConstraint('uses_remaining >= -1', name='ck_tokens_uses_remaining'),
        sa.ForeignKeyConstraint(['permission_request_id'], ['permission_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('token_hash')
    )
    op.create_index('ix_tokens_token_hash', 'tokens', ['token_hash'])
    op.create_index('ix_tokens_permission_request_id', 'tokens', ['permission_request_id'])
    op.create_index('ix_tokens_expires_at', 'tokens', ['expires_at'])

    # Create otp_payloads table
    op.create_table(
        'otp_payloads',
        sa.Column('id', id_type, nullable=False),
        sa.Column('permission_request_id', id_type, nullable=False),
        sa.Column('encrypted_payload', sa.Text(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('sender', sa.String(length=255), nullable=True),
        sa.Column('subject', sa.String(length=255), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.CheckConstraint("source IN ('sms', 'email', 'whatsapp')", name='ck_otp_payloads_source'),
        sa.ForeignKeyConstraint(['permission_request_id'], ['permission_requests.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('permission_request_id')
    )

    # Create audit_logs table
    op.create_table(
        'audit_logs',
        sa.Column('id', id_type, nullable=False),
        sa.Column('user_id', id_type, nullable=True),
        sa.Column('agent_id', id_type, nullable=True),
        sa.Column('permission_request_id', id_type, nullable=True),
        sa.Column('event_type', sa.String(length=50), nullable=False),
        sa.Column('details', json_type, nullable=False, server_default='{}'),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=timestamp_default),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_agent_id', 'audit_logs', ['agent_id'])
    op.create_index('ix_audit_logs_permission_request_id', 'audit_logs', ['permission_request_id'])
    op.create_index('ix_audit_logs_event_type', 'audit_logs', ['event_type'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])
    # Composite index for per-user timelines
    op.create_index('ix_audit_logs_user_created', 'audit_logs', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('otp_payloads')
    op.drop_table('tokens')
    op.drop_table('permission_requests')
    op.drop_table('policies')
