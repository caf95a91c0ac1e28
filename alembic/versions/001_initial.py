"""Initial migration

Revision ID: 001_initial
Revises: 
Create Date: 2026-09-14

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
    # Create generations table
    op.create_table(
        'generations',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('generation_id', sa.String(36), nullable=False, unique=True, index=True),
        sa.Column('owner_id', sa.String(100), nullable=False, index=True),
        sa.Column('mode', sa.Enum('text_to_song', 'lyrics_to_song', 'instrumental', name='generationmode'), nullable=False),
        sa.Column('request_data', postgresql.JSON(), nullable=True),
        sa.Column('task_count', sa.Integer(), nullable=False, default=2),
        sa.Column('status', sa.Enum('processing', 'completed', 'failed', 'mixed', name='generationstatus'), nullable=False, default='processing'),
        sa.Column('metadata', postgresql.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create generated_content table
    op.create_table(
        'generated_content',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('provider_task_id', sa.String(100), nullable=False, unique=True, index=True),
        sa.Column('owner_id', sa.String(100), nullable=False, index=True),
        sa.Column('generation_pk', sa.Integer(), sa.ForeignKey('generations.id', ondelete='CASCADE'), nullable=True, index=True),
        sa.Column('content_type', sa.String(20), nullable=False, default='song'),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('status', sa.Enum('pending', 'processing', 'completed', 'failed', 'cancelled', name='taskstatus'), nullable=False, default='pending'),
        sa.Column('check_attempts', sa.Integer(), nullable=False, default=0),
        sa.Column('content_url', sa.Text(), nullable=True),
        sa.Column('thumbnail_url', sa.Text(), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('provider_metadata', postgresql.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('fail_code', sa.String(50), nullable=True),
        sa.Column('error_category', sa.String(50), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True),
    )

    # Create indexes
    op.create_index('ix_generations_status', 'generations', ['status'])
    op.create_index('ix_generated_content_status', 'generated_content', ['status'])
    op.create_index('ix_generated_content_created_at', 'generated_content', ['created_at'])


def downgrade() -> None:
    op.drop_index('ix_generated_content_created_at')
    op.drop_index('ix_generated_content_status')
    op.drop_index('ix_generations_status')
    op.drop_table('generated_content')
    op.drop_table('generations')
    op.execute('DROP TYPE IF EXISTS taskstatus')
    op.execute('DROP TYPE IF EXISTS generationstatus')
    op.execute('DROP TYPE IF EXISTS generationmode')
