"""add served_at to recommendation_logs

Revision ID: 5c1e7d2a9b40
Revises: 000000000000
Create Date: 2025-04-12 09:30:00.000000

Funnel rows are upserted per (user, book, algorithm), so created_at only
records the first serve. served_at tracks the latest one.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e7d2a9b40'
down_revision: Union[str, None] = '000000000000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('recommendation_logs', sa.Column('served_at', sa.DateTime(), nullable=True))
    # Existing rows were last served when they were created
    op.execute("UPDATE recommendation_logs SET served_at = created_at")
    with op.batch_alter_table('recommendation_logs') as batch_op:
        batch_op.alter_column('served_at', existing_type=sa.DateTime(), nullable=False)

    op.create_index('ix_recommendation_logs_served_at', 'recommendation_logs', ['served_at'])
    op.create_index(
        'idx_recommendation_logs_algorithm_updated',
        'recommendation_logs',
        ['algorithm', 'updated_at'],
    )


def downgrade() -> None:
    op.drop_index('idx_recommendation_logs_algorithm_updated', table_name='recommendation_logs')
    op.drop_index('ix_recommendation_logs_served_at', table_name='recommendation_logs')
    with op.batch_alter_table('recommendation_logs') as batch_op:
        batch_op.drop_column('served_at')
