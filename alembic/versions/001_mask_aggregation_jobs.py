"""Add mask_aggregation_jobs table

Revision ID: 001_mask_aggregation_jobs
Revises:
Create Date: 2026-10-19

One row per consensus aggregation:
- results / results_version: append-only run list guarded by a version CAS
- status: pending -> processing -> complete | failed
- final_mask: binary PNG, purgeable after the consumer reads it
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_mask_aggregation_jobs'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'mask_aggregation_jobs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('source_width', sa.Integer(), nullable=False),
        sa.Column('source_height', sa.Integer(), nullable=False),
        sa.Column('quorum_required', sa.Integer(), nullable=False),
        sa.Column('expected_runs', sa.Integer(), nullable=False),
        sa.Column('results', sa.JSON(), nullable=True),
        sa.Column('results_version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('compose_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('final_mask', sa.LargeBinary(), nullable=True),
        sa.Column('error_message', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('purged_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Watchdog sweeps filter on status and age
    op.create_index('ix_mask_aggregation_jobs_status', 'mask_aggregation_jobs', ['status'])
    op.create_index('ix_mask_aggregation_jobs_created_at', 'mask_aggregation_jobs', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_mask_aggregation_jobs_created_at', 'mask_aggregation_jobs')
    op.drop_index('ix_mask_aggregation_jobs_status', 'mask_aggregation_jobs')
    op.drop_table('mask_aggregation_jobs')
