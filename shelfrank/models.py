from sqlalchemy import Column, String, Integer, Boolean, DateTime, Float, JSON, UniqueConstraint, event
import uuid
import enum
import sqlalchemy as sa
from shelfrank.database import Base
from shelfrank.utils.timing import utcnow


def _uuid_str() -> str:
    return str(uuid.uuid4())


class ActivityKind(str, enum.Enum):
    LIKED = "liked"
    SHELVED = "shelved"


class Surface(str, enum.Enum):
    HOME = "home"
    FRIENDS = "friends"


class FeedbackAction(str, enum.Enum):
    SHOWN = "shown"
    CLICKED = "clicked"
    CONVERTED = "converted"
    DISMISSED = "dismissed"


class ConvertedAction(str, enum.Enum):
    RATED = "rated"
    ADDED_TO_SHELF = "added_to_shelf"
    LIKED = "liked"
    ADDED_TO_TBR = "added_to_tbr"
    STARTED_READING = "started_reading"


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid_str)
    username = Column(String, unique=True, index=True, nullable=True)
    display_name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Book(Base):
    __tablename__ = "books"

    id = Column(String, primary_key=True, default=_uuid_str)
    title = Column(String, nullable=False)
    authors = Column(JSON, nullable=False, default=list)
    genres = Column(JSON, nullable=False, default=list)
    average_rating = Column(Float, nullable=True)
    ratings_count = Column(Integer, nullable=False, default=0)
    page_count = Column(Integer, nullable=True)
    published_date = Column(String, nullable=True)  # raw string from the metadata source
    published_year = Column(Integer, nullable=True, index=True)
    cover_image_url = Column(String, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    # Lower-cased "|"-joined copies of genres/authors for portable substring filtering
    genre_search = Column(String, nullable=False, default="")
    author_search = Column(String, nullable=False, default="")
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


def _parse_year(published_date):
    if not published_date:
        return None
    head = str(published_date).strip()[:4]
    return int(head) if head.isdigit() else None


@event.listens_for(Book, "before_insert")
@event.listens_for(Book, "before_update")
def _sync_book_search_columns(mapper, connection, target):
    """Keep the search columns and published_year derived from the source fields."""
    target.genre_search = "|".join(g.strip().lower() for g in (target.genres or []))
    target.author_search = "|".join(a.strip().lower() for a in (target.authors or []))
    target.published_year = _parse_year(target.published_date)


class UserPreference(Base):
    """
    Taste profile for a user. Written by signal ingestion (outside this service);
    this service only reads it.
    """
    __tablename__ = "user_preferences"

    user_id = Column(String, primary_key=True)
    top_genres = Column(JSON, nullable=False, default=list)  # [{"genre": str, "weight": float}]
    favorite_authors = Column(JSON, nullable=False, default=list)
    genre_weights = Column(JSON, nullable=False, default=dict)
    reading_pace = Column(Float, nullable=True)  # books per month
    recent_genres = Column(JSON, nullable=False, default=list)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Follow(Base):
    __tablename__ = "follows"

    id = Column(String, primary_key=True, default=_uuid_str)
    follower_id = Column(String, nullable=False, index=True)
    followed_id = Column(String, nullable=False, index=True)
    interaction_count = Column(Integer, nullable=False, default=0)  # likes/comments on followed user's posts
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("follower_id", "followed_id", name="uq_follows_follower_followed"),
    )


class UserBookActivity(Base):
    """Liked and shelved books per user."""
    __tablename__ = "user_book_activity"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, nullable=False, index=True)
    book_id = Column(String, nullable=False, index=True)
    kind = Column(String, nullable=False)  # one of: liked | shelved
    rating = Column(Integer, nullable=True)  # 1-5 stars, shelved books only
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", "kind", name="uq_user_book_activity_kind"),
    )


class RecommendationCacheEntry(Base):
    """
    Pre-computed recommendations for one (user, surface) key.
    Overwritten on regeneration; rows untouched for the retention window are pruned.
    """
    __tablename__ = "recommendation_cache"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, nullable=False, index=True)
    surface = Column(String, nullable=False)  # home | friends
    items = Column(JSON, nullable=False, default=list)
    # The list length requested when the entry was built; a list diversified
    # for one size is not reused for another
    list_size = Column(Integer, nullable=True)
    algorithm = Column(String, nullable=False, default="hybrid")
    generated_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    is_stale = Column(Boolean, nullable=False, default=False, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "surface", name="uq_recommendation_cache_user_surface"),
    )


class FeedbackEventLog(Base):
    """Append-only raw feedback events."""
    __tablename__ = "feedback_events"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, nullable=False, index=True)
    book_id = Column(String, nullable=False)
    action = Column(String, nullable=False)
    algorithm = Column(String, nullable=False, index=True)
    converted_action = Column(String, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)


class RecommendationLog(Base):
    """
    One funnel row per (user, book, algorithm): what was recommended and how
    the user responded. Used for evaluating algorithm variants.
    """
    __tablename__ = "recommendation_logs"

    id = Column(String, primary_key=True, default=_uuid_str)
    user_id = Column(String, nullable=False, index=True)
    book_id = Column(String, nullable=False, index=True)
    algorithm = Column(String, nullable=False, index=True)
    score = Column(Float, nullable=True)
    score_breakdown = Column(JSON, nullable=True)
    reason = Column(String, nullable=True)
    position = Column(Integer, nullable=True)
    surface = Column(String, nullable=True)
    session_id = Column(String, nullable=True)

    shown = Column(Boolean, nullable=False, default=False)
    shown_at = Column(DateTime, nullable=True)
    clicked = Column(Boolean, nullable=False, default=False)
    clicked_at = Column(DateTime, nullable=True)
    converted = Column(Boolean, nullable=False, default=False)
    converted_at = Column(DateTime, nullable=True)
    converted_action = Column(String, nullable=True)
    dismissed = Column(Boolean, nullable=False, default=False)
    dismissed_at = Column(DateTime, nullable=True)
    # Set when "converted" arrived without a prior "clicked"; stored, not rejected
    funnel_violation = Column(Boolean, nullable=False, default=False)

    # Refreshed on every impression; attribution keys on the latest serve
    served_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "book_id", "algorithm", name="uq_recommendation_logs_user_book_algorithm"),
        sa.Index("idx_recommendation_logs_algorithm_created", "algorithm", "created_at"),
        sa.Index("idx_recommendation_logs_algorithm_updated", "algorithm", "updated_at"),
    )
