"""Add last_accessed_at for archiving

Revision ID: 002_add_access_tracking
Revises: 001_initial
Create Date: 2026-09-28

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '002_add_access_tracking'
down_revision: Union[str, None] = '001_initial'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column(
        'generations',
        sa.Column('last_accessed_at', sa.DateTime(timezone=True), nullable=True)
    )
    op.add_column(
        'generated_content',
        sa.Column('last_accessed_at', sa.DateTime(timezone=True), nullable=True)
    )


def downgrade() -> None:
    op.drop_column('generated_content', 'last_accessed_at')
    op.drop_column('generations', 'last_accessed_at')
