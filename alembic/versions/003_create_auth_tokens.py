"""Create auth_tokens table

Revision ID: 003_create_auth_tokens
Revises: 002_create_pings
Create Date: 2017-10-03

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '003_create_auth_tokens'
down_revision: Union[str, None] = '002_create_pings'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create auth_tokens table. One token per user, keys unique."""
    op.create_table(
        'auth_tokens',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user', sa.Integer(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.current_timestamp()),
        sa.Column('key', sa.Text(), nullable=False),
        sa.ForeignKeyConstraint(['user'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user'),
        sqlite_autoincrement=True,
    )
    op.create_index('auth_token_key_index', 'auth_tokens', ['key'], unique=True)


def downgrade() -> None:
    """Drop auth_tokens table."""
    op.drop_index('auth_token_key_index', table_name='auth_tokens')
    op.drop_table('auth_tokens')
