"""create team, domain, scan, security_score, notification and audit_log tables

Revision ID: s1_scan_pipeline_schema
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa

revision = 's1_scan_pipeline_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── team ──
    op.create_table(
        'team',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('webhook_url', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    # ── domain ──
    op.create_table(
        'domain',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('team_id', sa.Integer(), sa.ForeignKey('team.id', ondelete='CASCADE'), nullable=False),
        sa.Column('url', sa.String(500), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('scan_frequency', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('last_scanned_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_domain_team_id', 'domain', ['team_id'])

    # ── scan ──
    op.create_table(
        'scan',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('domain_id', sa.Integer(), sa.ForeignKey('domain.id', ondelete='CASCADE'), nullable=False),
        sa.Column('scan_type', sa.String(20), nullable=False, server_default='full'),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('overall_score', sa.Integer(), nullable=True),
        sa.Column('overall_grade', sa.String(2), nullable=True),
        sa.Column('raw_headers', sa.JSON(), nullable=True),
        sa.Column('csp_policy', sa.Text(), nullable=True),
        sa.Column('csp_grade', sa.String(2), nullable=True),
        sa.Column('csp_issues', sa.JSON(), nullable=True),
        sa.Column('scan_duration_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.String(500), nullable=True),
        sa.Column('scanned_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_scan_domain_id', 'scan', ['domain_id'])
    op.create_index('ix_scan_scanned_at', 'scan', ['scanned_at'])
    op.create_index('ix_scan_domain_scanned_at', 'scan', ['domain_id', 'scanned_at'])

    # ── security_score ──
    op.create_table(
        'security_score',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('scan_id', sa.Integer(), sa.ForeignKey('scan.id', ondelete='CASCADE'), nullable=False),
        sa.Column('header_name', sa.String(100), nullable=False),
        sa.Column('header_value', sa.Text(), nullable=True),
        sa.Column('is_present', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('grade', sa.String(2), nullable=False, server_default='F'),
        sa.Column('issues', sa.JSON(), nullable=True),
        sa.Column('recommendations', sa.JSON(), nullable=True),
    )
    op.create_index('ix_security_score_scan_id', 'security_score', ['scan_id'])

    # ── notification ──
    op.create_table(
        'notification',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('team_id', sa.Integer(), nullable=False),
        sa.Column('domain_id', sa.Integer(), nullable=True),
        sa.Column('type', sa.String(40), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('severity', sa.String(20), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_notification_team_id', 'notification', ['team_id'])

    # ── audit_log ──
    op.create_table(
        'audit_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('team_id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('category', sa.String(50), nullable=False),
        sa.Column('target_type', sa.String(50), nullable=True),
        sa.Column('target_id', sa.String(50), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata_json', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_audit_log_team_id', 'audit_log', ['team_id'])


def downgrade():
    op.drop_index('ix_audit_log_team_id', table_name='audit_log')
    op.drop_table('audit_log')

    op.drop_index('ix_notification_team_id', table_name='notification')
    op.drop_table('notification')

    op.drop_index('ix_security_score_scan_id', table_name='security_score')
    op.drop_table('security_score')

    op.drop_index('ix_scan_domain_scanned_at', table_name='scan')
    op.drop_index('ix_scan_scanned_at', table_name='scan')
    op.drop_index('ix_scan_domain_id', table_name='scan')
    op.drop_table('scan')

    op.drop_index('ix_domain_team_id', table_name='domain')
    op.drop_table('domain')

    op.drop_table('team')
