"""Initial schema

Revision ID: 001_initial
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """
    Create initial database schema:
    - system_logs table: Persisted structured log entries
    - companies / enrichments / reports tables: Work items of the cron jobs
    - campaigns table: Weekly email schedules
    - invitations / audit_log tables: Records subject to maintenance retention
    """
    bind = op.get_bind()
    inspector = inspect(bind)
    existing_tables = inspector.get_table_names()

    if 'system_logs' not in existing_tables:
        op.create_table(
            'system_logs',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('level', sa.String(length=10), nullable=False),
            sa.Column('category', sa.String(length=30), nullable=False),
            sa.Column('message', sa.String(length=1000), nullable=False),
            sa.Column('metadata', sa.JSON(), nullable=True),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('session_id', sa.String(length=64), nullable=True),
            sa.Column('request_id', sa.String(length=64), nullable=True),
            sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
            sa.Column('duration', sa.Float(), nullable=True),
            sa.Column('tags', sa.String(length=255), nullable=True),
            sa.Column('environment', sa.String(length=20), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_system_logs_level', 'system_logs', ['level'])
        op.create_index('ix_system_logs_category', 'system_logs', ['category'])
        op.create_index('ix_system_logs_created_at', 'system_logs', ['created_at'])

    if 'companies' not in existing_tables:
        op.create_table(
            'companies',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('selected', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_companies_user_id', 'companies', ['user_id'])

    if 'enrichments' not in existing_tables:
        op.create_table(
            'enrichments',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('company_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='PENDING'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_enrichments_company_id', 'enrichments', ['company_id'])
        op.create_index('ix_enrichments_status', 'enrichments', ['status'])
        op.create_index('ix_enrichments_created_at', 'enrichments', ['created_at'])
        op.create_index('ix_enrichments_updated_at', 'enrichments', ['updated_at'])

    if 'campaigns' not in existing_tables:
        op.create_table(
            'campaigns',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('weekday', sa.Integer(), nullable=False),
            sa.Column('hour', sa.Integer(), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )

    if 'reports' not in existing_tables:
        op.create_table(
            'reports',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('company_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.String(length=64), nullable=False),
            sa.Column('tier', sa.String(length=20), nullable=False, server_default='ENHANCED'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_reports_company_id', 'reports', ['company_id'])
        op.create_index('ix_reports_user_id', 'reports', ['user_id'])
        op.create_index('ix_reports_created_at', 'reports', ['created_at'])

    if 'invitations' not in existing_tables:
        op.create_table(
            'invitations',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('token', sa.String(length=64), nullable=False),
            sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('token')
        )
        op.create_index('ix_invitations_expires_at', 'invitations', ['expires_at'])

    if 'audit_log' not in existing_tables:
        op.create_table(
            'audit_log',
            sa.Column('id', sa.Integer(), nullable=False, autoincrement=True),
            sa.Column('user_id', sa.String(length=64), nullable=True),
            sa.Column('action', sa.String(length=50), nullable=False),
            sa.Column('entity', sa.String(length=50), nullable=False),
            sa.Column('metadata', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_audit_log_created_at', 'audit_log', ['created_at'])


def downgrade() -> None:
    """
    Drop all tables (indexes go with them).
    """
    for table in (
        'audit_log',
        'invitations',
        'reports',
        'campaigns',
        'enrichments',
        'companies',
        'system_logs',
    ):
        op.drop_table(table)
