"""add_stacks_last_deploy_failed

Revision ID: 8f4b2d6e1a73
Revises: 3c1e7a9d2b40
Create Date: 2026-10-15 16:41:27.093312

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '8f4b2d6e1a73'
down_revision: Union[str, Sequence[str], None] = '3c1e7a9d2b40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.add_column(
        'stacks',
        sa.Column('last_deploy_failed', sa.Boolean(), server_default=sa.false(), nullable=False),
        schema='hostops',
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_column('stacks', 'last_deploy_failed', schema='hostops')
