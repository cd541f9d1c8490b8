"""baseline_schema

Revision ID: 000000000000
Revises:
Create Date: 2025-03-01 00:00:00.000000

Creates the catalog, social graph, preference, cache and feedback tables.
All other migrations should depend on this revision.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '000000000000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("username", sa.String(), nullable=True),
        sa.Column("display_name", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)

    op.create_table(
        "books",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("authors", sa.JSON(), nullable=False),
        sa.Column("genres", sa.JSON(), nullable=False),
        sa.Column("average_rating", sa.Float(), nullable=True),
        sa.Column("ratings_count", sa.Integer(), nullable=False),
        sa.Column("page_count", sa.Integer(), nullable=True),
        sa.Column("published_date", sa.String(), nullable=True),
        sa.Column("published_year", sa.Integer(), nullable=True),
        sa.Column("cover_image_url", sa.String(), nullable=True),
        sa.Column("thumbnail_url", sa.String(), nullable=True),
        sa.Column("genre_search", sa.String(), nullable=False, server_default=""),
        sa.Column("author_search", sa.String(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_books_published_year", "books", ["published_year"])

    op.create_table(
        "user_preferences",
        sa.Column("user_id", sa.String(), primary_key=True, nullable=False),
        sa.Column("top_genres", sa.JSON(), nullable=False),
        sa.Column("favorite_authors", sa.JSON(), nullable=False),
        sa.Column("genre_weights", sa.JSON(), nullable=False),
        sa.Column("reading_pace", sa.Float(), nullable=True),
        sa.Column("recent_genres", sa.JSON(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )

    op.create_table(
        "follows",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("follower_id", sa.String(), nullable=False),
        sa.Column("followed_id", sa.String(), nullable=False),
        sa.Column("interaction_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("follower_id", "followed_id", name="uq_follows_follower_followed"),
    )
    op.create_index("ix_follows_follower_id", "follows", ["follower_id"])
    op.create_index("ix_follows_followed_id", "follows", ["followed_id"])

    op.create_table(
        "user_book_activity",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("book_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "book_id", "kind", name="uq_user_book_activity_kind"),
    )
    op.create_index("ix_user_book_activity_user_id", "user_book_activity", ["user_id"])
    op.create_index("ix_user_book_activity_book_id", "user_book_activity", ["book_id"])

    op.create_table(
        "recommendation_cache",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("surface", sa.String(), nullable=False),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("algorithm", sa.String(), nullable=False, server_default="hybrid"),
        sa.Column("generated_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("is_stale", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "surface", name="uq_recommendation_cache_user_surface"),
    )
    op.create_index("ix_recommendation_cache_user_id", "recommendation_cache", ["user_id"])
    op.create_index("ix_recommendation_cache_generated_at", "recommendation_cache", ["generated_at"])
    op.create_index("ix_recommendation_cache_expires_at", "recommendation_cache", ["expires_at"])
    op.create_index("ix_recommendation_cache_is_stale", "recommendation_cache", ["is_stale"])

    op.create_table(
        "feedback_events",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("book_id", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("algorithm", sa.String(), nullable=False),
        sa.Column("converted_action", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_feedback_events_user_id", "feedback_events", ["user_id"])
    op.create_index("ix_feedback_events_algorithm", "feedback_events", ["algorithm"])
    op.create_index("ix_feedback_events_created_at", "feedback_events", ["created_at"])

    op.create_table(
        "recommendation_logs",
        sa.Column("id", sa.String(), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("book_id", sa.String(), nullable=False),
        sa.Column("algorithm", sa.String(), nullable=False),
        sa.Column("score", sa.Float(), nullable=True),
        sa.Column("score_breakdown", sa.JSON(), nullable=True),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("position", sa.Integer(), nullable=True),
        sa.Column("surface", sa.String(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("shown", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("shown_at", sa.DateTime(), nullable=True),
        sa.Column("clicked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("clicked_at", sa.DateTime(), nullable=True),
        sa.Column("converted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("converted_at", sa.DateTime(), nullable=True),
        sa.Column("converted_action", sa.String(), nullable=True),
        sa.Column("dismissed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("dismissed_at", sa.DateTime(), nullable=True),
        sa.Column("funnel_violation", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "book_id", "algorithm", name="uq_recommendation_logs_user_book_algorithm"),
    )
    op.create_index("ix_recommendation_logs_user_id", "recommendation_logs", ["user_id"])
    op.create_index("ix_recommendation_logs_book_id", "recommendation_logs", ["book_id"])
    op.create_index("ix_recommendation_logs_algorithm", "recommendation_logs", ["algorithm"])
    op.create_index("ix_recommendation_logs_created_at", "recommendation_logs", ["created_at"])
    op.create_index("idx_recommendation_logs_algorithm_created", "recommendation_logs", ["algorithm", "created_at"])


def downgrade() -> None:
    op.drop_table("recommendation_logs")
    op.drop_table("feedback_events")
    op.drop_table("recommendation_cache")
    op.drop_table("user_book_activity")
    op.drop_table("follows")
    op.drop_table("user_preferences")
    op.drop_table("books")
    op.drop_table("users")
