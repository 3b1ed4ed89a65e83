"""create_audit_entries_and_stacks

Revision ID: 3c1e7a9d2b40
Revises:
Create Date: 2026-10-12 09:14:03.512847

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3c1e7a9d2b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('audit_entries',
    sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
    sa.Column('session_id', sa.String(length=36), nullable=False),
    sa.Column('actor', sa.String(length=128), nullable=False),
    sa.Column('action', sa.String(length=32), nullable=False),
    sa.Column('target', sa.Text(), nullable=False),
    sa.Column('success', sa.Boolean(), nullable=False),
    sa.Column('outcome', sa.String(length=16), nullable=False),
    sa.Column('detail', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    schema='hostops'
    )
    op.create_index('idx_audit_entries_created_at', 'audit_entries', ['created_at'], unique=False, schema='hostops')
    op.create_index('idx_audit_entries_action', 'audit_entries', ['action'], unique=False, schema='hostops')
    op.create_table('stacks',
    sa.Column('id', sa.String(length=64), nullable=False),
    sa.Column('name', sa.String(length=64), nullable=False),
    sa.Column('description', sa.Text(), nullable=False),
    sa.Column('compose_content', sa.Text(), nullable=False),
    sa.Column('env_content', sa.Text(), nullable=False),
    sa.Column('path', sa.Text(), nullable=False),
    sa.Column('created_by', sa.String(length=128), nullable=True),
    sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('name', name='uq_stacks_name'),
    schema='hostops'
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('stacks', schema='hostops')
    op.drop_index('idx_audit_entries_action', table_name='audit_entries', schema='hostops')
    op.drop_index('idx_audit_entries_created_at', table_name='audit_entries', schema='hostops')
    op.drop_table('audit_entries', schema='hostops')
