"""Create image_records table

Revision ID: 001_image_records
Revises: 
Create Date: 2026-10-19

One row per uploaded garment photo:
- original file metadata and public URLs
- extracted color palette
- processing status, error text and attempt counter
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_image_records'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'image_records',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('owner_id', sa.String(), nullable=False),
        sa.Column('original_filename', sa.String(), nullable=True),
        sa.Column('original_url', sa.String(), nullable=False),
        sa.Column('optimized_url', sa.String(), nullable=True),
        sa.Column('thumbnail_url', sa.String(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=False, server_default='image/png'),
        sa.Column('width', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('height', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('size', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dominant_color', sa.String(), nullable=False, server_default='#cccccc'),
        sa.Column('colors', sa.JSON(), nullable=True),
        sa.Column('processing_status', sa.String(), nullable=False, server_default='pending'),
        sa.Column('processing_error', sa.String(), nullable=True),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    )

    op.create_index('ix_image_records_owner_id', 'image_records', ['owner_id'])
    op.create_index('ix_image_records_processing_status', 'image_records', ['processing_status'])
    # Stall recovery scans processing records by start time
    op.create_index(
        'ix_image_records_status_started',
        'image_records',
        ['processing_status', 'processing_started_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_image_records_status_started', table_name='image_records')
    op.drop_index('ix_image_records_processing_status', table_name='image_records')
    op.drop_index('ix_image_records_owner_id', table_name='image_records')
    op.drop_table('image_records')
