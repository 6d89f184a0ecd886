"""inventory records, sync jobs and job audit

Revision ID: 001_reconciliation_schema
Revises:
Create Date: 2026-10-16 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '001_reconciliation_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'inventory_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('variant_key', sa.String(length=128), nullable=False),
        sa.Column('base_product_key', sa.String(length=128), nullable=False),
        sa.Column('color', sa.String(length=64), nullable=True),
        sa.Column('size', sa.String(length=32), nullable=True),
        sa.Column('stock_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('channel_variant_id', sa.String(length=128), nullable=True),
        sa.Column('channel_inventory_item_id', sa.String(length=128), nullable=True),
        sa.Column('last_known_channel_quantity', sa.Integer(), nullable=True),
        sa.Column('sync_status', sa.String(length=16), nullable=False, server_default='unresolved'),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_inventory_records_variant_key', 'inventory_records', ['variant_key'], unique=True)
    op.create_index('ix_inventory_records_base_product_key', 'inventory_records', ['base_product_key'])
    op.create_index('ix_inventory_records_channel_variant_id', 'inventory_records', ['channel_variant_id'])
    op.create_index('ix_inventory_records_channel_inventory_item_id', 'inventory_records',
                    ['channel_inventory_item_id'])
    op.create_index('ix_inventory_records_sync_status', 'inventory_records', ['sync_status'])

    op.create_table(
        'sync_jobs',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='queued'),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('sync_type', sa.String(length=16), nullable=False, server_default='inventory'),
        sa.Column('trigger_source', sa.String(length=16), nullable=False, server_default='manual'),
        sa.Column('scanned', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('resolved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_estimate', sa.Integer(), nullable=True),
        sa.Column('cursor', sa.Integer(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('scheduled_for', sa.DateTime(timezone=True), nullable=True),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('tags', sa.JSON(), nullable=False),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_sync_jobs_kind', 'sync_jobs', ['kind'])
    op.create_index('ix_sync_jobs_status', 'sync_jobs', ['status'])

    op.create_table(
        'sync_job_audit',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('job_id', sa.String(length=64), sa.ForeignKey('sync_jobs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('actor', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('from_status', sa.String(length=16), nullable=True),
        sa.Column('to_status', sa.String(length=16), nullable=False),
        sa.Column('at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_sync_job_audit_job_id', 'sync_job_audit', ['job_id'])


def downgrade() -> None:
    op.drop_index('ix_sync_job_audit_job_id', table_name='sync_job_audit')
    op.drop_table('sync_job_audit')
    op.drop_index('ix_sync_jobs_status', table_name='sync_jobs')
    op.drop_index('ix_sync_jobs_kind', table_name='sync_jobs')
    op.drop_table('sync_jobs')
    op.drop_index('ix_inventory_records_sync_status', table_name='inventory_records')
    op.drop_index('ix_inventory_records_channel_inventory_item_id', table_name='inventory_records')
    op.drop_index('ix_inventory_records_channel_variant_id', table_name='inventory_records')
    op.drop_index('ix_inventory_records_base_product_key', table_name='inventory_records')
    op.drop_index('ix_inventory_records_variant_key', table_name='inventory_records')
    op.drop_table('inventory_records')
