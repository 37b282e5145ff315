"""NHTSA rating pipeline schema.

Revision ID: 001_nhtsa_rating_pipeline
Revises:
Create Date: 2026-10-17 09:00:00.000000

Creates the rating store, the per-vehicle sync log, pipeline state,
job leases and the vehicle catalog used by discovery.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_nhtsa_rating_pipeline'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the rating pipeline tables."""

    # Authoritative ratings, one row per (year, make, model)
    op.create_table(
        'nhtsa_vehicle_cache',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('make', sa.String(100), nullable=False),
        sa.Column('model', sa.String(150), nullable=False),

        # Star ratings, NULL when not rated
        sa.Column('overall_rating', sa.Float(), nullable=True),
        sa.Column('front_crash', sa.Float(), nullable=True),
        sa.Column('side_crash', sa.Float(), nullable=True),
        sa.Column('rollover', sa.Float(), nullable=True),

        sa.Column('vehicle_picture', sa.String(500), nullable=True),
        sa.Column('vehicle_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('raw_data', postgresql.JSONB(), nullable=True),
        sa.Column('source', sa.String(20), nullable=False, server_default='csv'),  # 'csv', 'api', 'manual'

        sa.Column('cached_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),  # NULL = permanent
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('year', 'make', 'model', name='uq_nhtsa_vehicle_cache_vehicle'),
    )
    op.create_index('ix_nhtsa_vehicle_cache_year', 'nhtsa_vehicle_cache', ['year'])
    op.create_index('ix_nhtsa_vehicle_cache_make', 'nhtsa_vehicle_cache', ['make'])
    op.create_index('ix_nhtsa_vehicle_cache_expires_at', 'nhtsa_vehicle_cache', ['expires_at'])
    op.create_index('ix_nhtsa_vehicle_cache_overall_rating', 'nhtsa_vehicle_cache', ['overall_rating'])

    # Reconciliation progress per vehicle
    op.create_table(
        'nhtsa_sync_log',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('make', sa.String(100), nullable=False),
        sa.Column('model', sa.String(150), nullable=False),
        sa.Column('catalog_model', sa.String(150), nullable=True),

        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),  # 'pending', 'syncing', 'success', 'no_data', 'failed'
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error_message', sa.String(255), nullable=True),

        sa.Column('vehicle_id', sa.Integer(), nullable=True),
        sa.Column('overall_rating', sa.Float(), nullable=True),
        sa.Column('has_data', sa.Boolean(), nullable=False, server_default=sa.false()),

        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('year', 'make', 'model', name='uq_nhtsa_sync_log_vehicle'),
    )
    op.create_index('ix_nhtsa_sync_log_status', 'nhtsa_sync_log', ['status'])
    op.create_index(
        'ix_nhtsa_sync_log_status_next_attempt',
        'nhtsa_sync_log',
        ['status', 'next_attempt_at'],
    )

    # Import markers, error history, reports, checkpoints, backfill session
    op.create_table(
        'nhtsa_sync_state',
        sa.Column('key', sa.String(100), primary_key=True),
        sa.Column('value', postgresql.JSONB(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        'nhtsa_job_lease',
        sa.Column('name', sa.String(100), primary_key=True),
        sa.Column('owner', sa.String(100), nullable=False),
        sa.Column('acquired_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        'vehicle_catalog',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('year', sa.Integer(), nullable=False),
        sa.Column('make', sa.String(100), nullable=False),
        sa.Column('model', sa.String(150), nullable=False),
        sa.Column('vehicle_type', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint('year', 'make', 'model', name='uq_vehicle_catalog_vehicle'),
    )
    op.create_index('ix_vehicle_catalog_year', 'vehicle_catalog', ['year'])


def downgrade() -> None:
    """Drop the rating pipeline tables."""

    op.drop_index('ix_vehicle_catalog_year', table_name='vehicle_catalog')
    op.drop_table('vehicle_catalog')

    op.drop_table('nhtsa_job_lease')
    op.drop_table('nhtsa_sync_state')

    op.drop_index('ix_nhtsa_sync_log_status_next_attempt', table_name='nhtsa_sync_log')
    op.drop_index('ix_nhtsa_sync_log_status', table_name='nhtsa_sync_log')
    op.drop_table('nhtsa_sync_log')

    op.drop_index('ix_nhtsa_vehicle_cache_overall_rating', table_name='nhtsa_vehicle_cache')
    op.drop_index('ix_nhtsa_vehicle_cache_expires_at', table_name='nhtsa_vehicle_cache')
    op.drop_index('ix_nhtsa_vehicle_cache_make', table_name='nhtsa_vehicle_cache')
    op.drop_index('ix_nhtsa_vehicle_cache_year', table_name='nhtsa_vehicle_cache')
    op.drop_table('nhtsa_vehicle_cache')
