"""add list_size to recommendation_cache

Revision ID: 8d3f0b6c2e17
Revises: 5c1e7d2a9b40
Create Date: 2025-04-12 10:05:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '8d3f0b6c2e17'
down_revision: Union[str, None] = '5c1e7d2a9b40'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Entries written before this column existed carry no size and are
    # served for any limit until they expire
    op.add_column('recommendation_cache', sa.Column('list_size', sa.Integer(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('recommendation_cache') as batch_op:
        batch_op.drop_column('list_size')
