"""deployments table

Revision ID: 001
Revises: 
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Enums stored as VARCHAR (native_enum=False on the model)
    op.create_table(
        'deployments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('site_id', sa.String(100), nullable=False, server_default='default'),
        sa.Column('commit_hash', sa.String(64), nullable=False),
        sa.Column('commit_message', sa.Text(), nullable=True),
        sa.Column('commit_author', sa.String(255), nullable=True),
        sa.Column('commit_date', sa.String(64), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('trigger_type', sa.String(20), nullable=False, server_default='manual'),
        sa.Column('triggered_by', sa.String(255), nullable=True),
        sa.Column('deployment_method', sa.String(20), nullable=False, server_default='ci_artifact'),
        sa.Column('correlation_id', sa.String(100), nullable=True),
        sa.Column('workflow_run_id', sa.BigInteger(), nullable=True),
        sa.Column('build_url', sa.String(500), nullable=True),
        sa.Column('artifact_id', sa.String(100), nullable=True),
        sa.Column('artifact_name', sa.String(255), nullable=True),
        sa.Column('artifact_size', sa.BigInteger(), nullable=True),
        sa.Column('artifact_download_url', sa.Text(), nullable=True),
        sa.Column('backup_path', sa.String(500), nullable=True),
        sa.Column('file_manifest', sa.Text(), nullable=True),
        sa.Column('deployment_logs', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('failure_point', sa.String(50), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('deployed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    )

    op.create_index('ix_deployments_site_id', 'deployments', ['site_id'])
    op.create_index('ix_deployments_commit_hash', 'deployments', ['commit_hash'])
    op.create_index('ix_deployments_status', 'deployments', ['status'])
    op.create_index('ix_deployments_correlation_id', 'deployments', ['correlation_id'])
    op.create_index('ix_deployments_workflow_run_id', 'deployments', ['workflow_run_id'])
    # Active-record lookup per site
    op.create_index('ix_deployments_site_status', 'deployments', ['site_id', 'status'])


def downgrade() -> None:
    op.drop_index('ix_deployments_site_status', table_name='deployments')
    op.drop_index('ix_deployments_workflow_run_id', table_name='deployments')
    op.drop_index('ix_deployments_correlation_id', table_name='deployments')
    op.drop_index('ix_deployments_status', table_name='deployments')
    op.drop_index('ix_deployments_commit_hash', table_name='deployments')
    op.drop_index('ix_deployments_site_id', table_name='deployments')
    op.drop_table('deployments')
