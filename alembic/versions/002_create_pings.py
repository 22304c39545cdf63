"""Create pings table

Revision ID: 002_create_pings
Revises: 001_create_users
Create Date: 2017-10-02

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '002_create_pings'
down_revision: Union[str, None] = '001_create_users'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create pings table and the per-user reverse-chronological index."""
    op.create_table(
        'pings',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user', sa.Integer(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('likes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('echoes', sa.Integer(), nullable=False, server_default='0'),
        sa.CheckConstraint('likes >= 0', name='ck_pings_likes_non_negative'),
        sa.CheckConstraint('echoes >= 0', name='ck_pings_echoes_non_negative'),
        sa.ForeignKeyConstraint(['user'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True,
    )
    op.create_index(
        'pings_user_timestamp_index',
        'pings',
        ['user', sa.text('"timestamp" DESC')],
        unique=False,
    )


def downgrade() -> None:
    """Drop pings table."""
    op.drop_index('pings_user_timestamp_index', table_name='pings')
    op.drop_table('pings')
