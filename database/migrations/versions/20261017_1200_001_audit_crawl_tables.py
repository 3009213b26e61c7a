"""audit crawl tables

Revision ID: 001_audit_crawl_tables
Revises:
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = '001_audit_crawl_tables'
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade():
    op.create_table(
        'audits',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('project_id', sa.String(64), nullable=True),
        sa.Column('root_url', sa.String(2048), nullable=False),
        sa.Column('site_description', sa.Text, nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default='running'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('fail_reason', sa.String(255), nullable=True),
        sa.Column('fail_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('aeo_score', sa.Float, nullable=True),
        sa.Column('geo_score', sa.Float, nullable=True),
        sa.Column('citations_status', sa.String(32), nullable=True),
        sa.Column('config_json', JSON_TYPE, nullable=False),
        sa.Column('industry', sa.String(64), nullable=True),
        sa.Column('industry_source', sa.String(32), nullable=True),
        sa.Column('industry_confidence', sa.Float, nullable=True),
    )
    op.create_index('idx_audits_status_started', 'audits', ['status', 'started_at'])

    op.create_table(
        'audit_pages',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('audit_id', sa.String(64), sa.ForeignKey('audits.id', ondelete='CASCADE'), nullable=False),
        sa.Column('url', sa.String(2048), nullable=False),
        sa.Column('status_code', sa.Integer, nullable=True),
        sa.Column('content_type', sa.String(255), nullable=True),
        sa.Column('html_static', sa.Text, nullable=True),
        sa.Column('html_rendered', sa.Text, nullable=True),
        sa.Column('skip_reason', sa.String(64), nullable=True),
        sa.Column('discovered_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('fetched_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('audit_id', 'url', name='uq_audit_pages_audit_url'),
    )
    op.create_index('idx_audit_pages_audit_id', 'audit_pages', ['audit_id'])

    op.create_table(
        'audit_page_analysis',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('page_id', sa.String(64), sa.ForeignKey('audit_pages.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('title', sa.Text, nullable=True),
        sa.Column('h1', sa.Text, nullable=True),
        sa.Column('canonical', sa.String(2048), nullable=True),
        sa.Column('schema_types', JSON_TYPE, nullable=False),
        sa.Column('jsonld', JSON_TYPE, nullable=False),
        sa.Column('checks_json', JSON_TYPE, nullable=False),
        sa.Column('aeo_score', sa.Float, nullable=True),
        sa.Column('geo_score', sa.Float, nullable=True),
        sa.Column('render_gap_ratio', sa.Float, nullable=True),
        sa.Column('is_spa', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('analyzed_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )


def downgrade():
    op.drop_table('audit_page_analysis')
    op.drop_index('idx_audit_pages_audit_id', table_name='audit_pages')
    op.drop_table('audit_pages')
    op.drop_index('idx_audits_status_started', table_name='audits')
    op.drop_table('audits')
