"""
External store interfaces and their SQLAlchemy-backed implementations.

The recommendation pipeline only talks to the Protocols below. The SQL stores
open one session per call and run the blocking query in a worker thread, so
concurrent strategies never share a session.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from pydantic import BaseModel, Field
from sqlalchemy import and_, or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from shelfrank.database import SessionLocal
from shelfrank.models import (
    ActivityKind,
    Book,
    FeedbackAction,
    FeedbackEventLog,
    Follow,
    RecommendationCacheEntry,
    RecommendationLog,
    User,
    UserBookActivity,
    UserPreference,
)
from shelfrank.schemas.feedback import FeedbackEvent
from shelfrank.schemas.recommendation import (
    ActivityItem,
    CatalogEntry,
    GenreWeight,
    ScoredRecommendation,
    UserActivity,
    UserPreferenceProfile,
)
from shelfrank.utils.timing import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

# (field, descending)
SortKey = Tuple[str, bool]
SORTABLE_FIELDS = {"average_rating", "ratings_count", "published_year", "page_count", "title"}


class CatalogFilter(BaseModel):
    """Catalog query filter. Genre/author terms are case-insensitive substring matches."""
    genres_any: List[str] = Field(default_factory=list)
    authors_any: List[str] = Field(default_factory=list)
    # True: match genres OR authors; False: each non-empty group must match
    genres_or_authors: bool = False
    min_rating: Optional[float] = None
    min_ratings_count: Optional[int] = None
    require_cover: bool = False
    min_pages: Optional[int] = None  # entries with unknown page count pass
    max_pages: Optional[int] = None
    exclude_ids: List[str] = Field(default_factory=list)


class CachedEntry(BaseModel):
    user_id: str
    surface: str
    items: List[ScoredRecommendation] = Field(default_factory=list)
    list_size: Optional[int] = None
    algorithm: str = "hybrid"
    generated_at: datetime
    expires_at: Optional[datetime] = None
    is_stale: bool = False
    updated_at: Optional[datetime] = None


class FunnelRow(BaseModel):
    user_id: str
    book_id: str
    algorithm: str
    score: Optional[float] = None
    position: Optional[int] = None
    reason: Optional[str] = None
    surface: Optional[str] = None
    shown: bool = False
    clicked: bool = False
    converted: bool = False
    dismissed: bool = False
    converted_action: Optional[str] = None
    funnel_violation: bool = False
    created_at: datetime
    served_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class PreferenceStore(Protocol):
    async def read(self, user_id: str) -> Optional[UserPreferenceProfile]: ...


class CatalogStore(Protocol):
    async def query(self, filter: CatalogFilter, sort: Sequence[SortKey], limit: int) -> List[CatalogEntry]: ...

    async def get(self, book_id: str) -> Optional[CatalogEntry]: ...

    async def get_many(self, book_ids: Sequence[str]) -> List[CatalogEntry]: ...


class SocialGraphStore(Protocol):
    async def get_following(self, user_id: str) -> List[str]: ...

    async def get_activity(self, user_id: str) -> UserActivity: ...

    async def get_interaction_count(self, user_id: str, followed_id: str) -> int: ...

    async def get_display_name(self, user_id: str) -> Optional[str]: ...


class CacheStore(Protocol):
    async def get(self, key: Tuple[str, str]) -> Optional[CachedEntry]: ...

    async def upsert(self, key: Tuple[str, str], entry: CachedEntry, ttl: timedelta) -> CachedEntry: ...

    async def mark_stale(self, user_ids: Sequence[str], surface: Optional[str] = None) -> int: ...

    async def delete_older_than(self, cutoff: datetime) -> int: ...

    async def all_entries(self) -> List[CachedEntry]: ...


class FeedbackStore(Protocol):
    async def append(self, event: FeedbackEvent) -> None: ...

    async def upsert_funnel(
        self,
        user_id: str,
        book_id: str,
        algorithm: str,
        at: datetime,
        action: Optional[FeedbackAction] = None,
        converted_action: Optional[str] = None,
        impression: Optional[ScoredRecommendation] = None,
        surface: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> FunnelRow: ...

    async def latest_algorithm(self, user_id: str, book_id: str, since: datetime) -> Optional[str]: ...

    async def query_window(self, algorithm: Optional[str], since: datetime) -> List[FunnelRow]: ...

    async def count_recent(self, user_id: str, book_id: str, since: datetime) -> int: ...


# ---------------------------------------------------------------------------
# SQLAlchemy implementations
# ---------------------------------------------------------------------------

class _SqlStore:
    def __init__(self, session_factory: sessionmaker = SessionLocal):
        self._session_factory = session_factory

    def _with_session(self, fn: Callable[..., T], *args) -> T:
        db: Session = self._session_factory()
        try:
            result = fn(db, *args)
            db.commit()
            return result
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    async def _run(self, fn: Callable[..., T], *args) -> T:
        return await asyncio.to_thread(self._with_session, fn, *args)


def _book_to_entry(book: Book) -> CatalogEntry:
    return CatalogEntry(
        id=book.id,
        title=book.title,
        authors=list(book.authors or []),
        genres=list(book.genres or []),
        average_rating=book.average_rating,
        ratings_count=book.ratings_count or 0,
        page_count=book.page_count,
        published_date=book.published_date,
        cover_image_url=book.cover_image_url,
        thumbnail_url=book.thumbnail_url,
    )


class SqlPreferenceStore(_SqlStore):
    async def read(self, user_id: str) -> Optional[UserPreferenceProfile]:
        return await self._run(self._read, user_id)

    @staticmethod
    def _read(db: Session, user_id: str) -> Optional[UserPreferenceProfile]:
        row = db.get(UserPreference, user_id)
        if row is None:
            return None
        top_genres = [
            GenreWeight(genre=g["genre"], weight=max(0.0, min(1.0, float(g.get("weight", 0.0)))))
            for g in (row.top_genres or [])
            if g.get("genre")
        ]
        top_genres.sort(key=lambda g: g.weight, reverse=True)
        return UserPreferenceProfile(
            user_id=user_id,
            top_genres=top_genres,
            favorite_authors=list(row.favorite_authors or []),
            genre_weights=dict(row.genre_weights or {}),
            reading_pace=row.reading_pace,
            recent_genres=list(row.recent_genres or []),
        )


class SqlCatalogStore(_SqlStore):
    async def query(self, filter: CatalogFilter, sort: Sequence[SortKey], limit: int) -> List[CatalogEntry]:
        if limit <= 0:
            return []
        return await self._run(self._query, filter, list(sort), limit)

    async def get(self, book_id: str) -> Optional[CatalogEntry]:
        return await self._run(self._get, book_id)

    async def get_many(self, book_ids: Sequence[str]) -> List[CatalogEntry]:
        if not book_ids:
            return []
        return await self._run(self._get_many, list(book_ids))

    @staticmethod
    def _query(db: Session, f: CatalogFilter, sort: List[SortKey], limit: int) -> List[CatalogEntry]:
        q = db.query(Book)

        genre_clauses = [Book.genre_search.contains(t.lower(), autoescape=True) for t in f.genres_any]
        author_clauses = [Book.author_search.contains(a.lower(), autoescape=True) for a in f.authors_any]
        if f.genres_or_authors:
            if genre_clauses or author_clauses:
                q = q.filter(or_(*genre_clauses, *author_clauses))
        else:
            if genre_clauses:
                q = q.filter(or_(*genre_clauses))
            if author_clauses:
                q = q.filter(or_(*author_clauses))

        if f.min_rating is not None:
            q = q.filter(Book.average_rating >= f.min_rating)
        if f.min_ratings_count is not None:
            q = q.filter(Book.ratings_count >= f.min_ratings_count)
        if f.require_cover:
            q = q.filter(or_(Book.cover_image_url.isnot(None), Book.thumbnail_url.isnot(None)))
        if f.min_pages is not None:
            q = q.filter(or_(Book.page_count.is_(None), Book.page_count >= f.min_pages))
        if f.max_pages is not None:
            q = q.filter(or_(Book.page_count.is_(None), Book.page_count <= f.max_pages))
        if f.exclude_ids:
            q = q.filter(Book.id.notin_(f.exclude_ids))

        order = []
        for field, descending in sort:
            if field not in SORTABLE_FIELDS:
                raise ValueError(f"Unsupported catalog sort field: {field}")
            column = getattr(Book, field)
            order.append(column.desc().nulls_last() if descending else column.asc().nulls_last())
        order.append(Book.id.asc())  # deterministic tie-break

        return [_book_to_entry(b) for b in q.order_by(*order).limit(limit).all()]

    @staticmethod
    def _get(db: Session, book_id: str) -> Optional[CatalogEntry]:
        book = db.get(Book, book_id)
        return _book_to_entry(book) if book else None

    @staticmethod
    def _get_many(db: Session, book_ids: List[str]) -> List[CatalogEntry]:
        books = db.query(Book).filter(Book.id.in_(book_ids)).all()
        by_id = {b.id: b for b in books}
        return [_book_to_entry(by_id[i]) for i in book_ids if i in by_id]


class SqlSocialGraphStore(_SqlStore):
    async def get_following(self, user_id: str) -> List[str]:
        return await self._run(self._get_following, user_id)

    async def get_activity(self, user_id: str) -> UserActivity:
        return await self._run(self._get_activity, user_id)

    async def get_interaction_count(self, user_id: str, followed_id: str) -> int:
        return await self._run(self._get_interaction_count, user_id, followed_id)

    async def get_display_name(self, user_id: str) -> Optional[str]:
        return await self._run(self._get_display_name, user_id)

    @staticmethod
    def _get_following(db: Session, user_id: str) -> List[str]:
        rows = (
            db.query(Follow.followed_id)
            .filter(Follow.follower_id == user_id)
            .order_by(Follow.followed_id.asc())
            .all()
        )
        return [r[0] for r in rows]

    @staticmethod
    def _get_activity(db: Session, user_id: str) -> UserActivity:
        rows = (
            db.query(UserBookActivity)
            .filter(UserBookActivity.user_id == user_id)
            .order_by(UserBookActivity.created_at.desc(), UserBookActivity.book_id.asc())
            .all()
        )
        activity = UserActivity()
        for row in rows:
            item = ActivityItem(book_id=row.book_id, rating=row.rating, at=row.created_at)
            if row.kind == ActivityKind.LIKED.value:
                activity.liked.append(item)
            elif row.kind == ActivityKind.SHELVED.value:
                activity.shelved.append(item)
        return activity

    @staticmethod
    def _get_interaction_count(db: Session, user_id: str, followed_id: str) -> int:
        row = (
            db.query(Follow.interaction_count)
            .filter(Follow.follower_id == user_id, Follow.followed_id == followed_id)
            .one_or_none()
        )
        return int(row[0] or 0) if row else 0

    @staticmethod
    def _get_display_name(db: Session, user_id: str) -> Optional[str]:
        user = db.get(User, user_id)
        if user is None:
            return None
        return user.display_name or user.username


def _cache_row_to_entry(row: RecommendationCacheEntry) -> CachedEntry:
    return CachedEntry(
        user_id=row.user_id,
        surface=row.surface,
        items=[ScoredRecommendation.model_validate(i) for i in (row.items or [])],
        list_size=row.list_size,
        algorithm=row.algorithm,
        generated_at=row.generated_at,
        expires_at=row.expires_at,
        is_stale=row.is_stale,
        updated_at=row.updated_at,
    )


class SqlCacheStore(_SqlStore):
    async def get(self, key: Tuple[str, str]) -> Optional[CachedEntry]:
        return await self._run(self._get, key)

    async def upsert(self, key: Tuple[str, str], entry: CachedEntry, ttl: timedelta) -> CachedEntry:
        try:
            return await self._run(self._upsert, key, entry, ttl)
        except IntegrityError:
            # A concurrent regeneration inserted the row first; overwrite it
            logger.debug("Cache upsert raced for key=%s, retrying as update", key)
            return await self._run(self._upsert, key, entry, ttl)

    async def mark_stale(self, user_ids: Sequence[str], surface: Optional[str] = None) -> int:
        if not user_ids:
            return 0
        return await self._run(self._mark_stale, list(user_ids), surface)

    async def delete_older_than(self, cutoff: datetime) -> int:
        return await self._run(self._delete_older_than, cutoff)

    async def all_entries(self) -> List[CachedEntry]:
        return await self._run(self._all_entries)

    @staticmethod
    def _find(db: Session, key: Tuple[str, str]) -> Optional[RecommendationCacheEntry]:
        user_id, surface = key
        return (
            db.query(RecommendationCacheEntry)
            .filter(RecommendationCacheEntry.user_id == user_id, RecommendationCacheEntry.surface == surface)
            .one_or_none()
        )

    @classmethod
    def _get(cls, db: Session, key: Tuple[str, str]) -> Optional[CachedEntry]:
        row = cls._find(db, key)
        return _cache_row_to_entry(row) if row else None

    @classmethod
    def _upsert(cls, db: Session, key: Tuple[str, str], entry: CachedEntry, ttl: timedelta) -> CachedEntry:
        user_id, surface = key
        row = cls._find(db, key)
        if row is None:
            row = RecommendationCacheEntry(user_id=user_id, surface=surface)
            db.add(row)
        row.items = [item.model_dump() for item in entry.items]
        row.list_size = entry.list_size
        row.algorithm = entry.algorithm
        row.generated_at = entry.generated_at
        row.expires_at = entry.generated_at + ttl
        row.is_stale = False
        row.updated_at = entry.generated_at
        db.flush()
        return _cache_row_to_entry(row)

    @staticmethod
    def _mark_stale(db: Session, user_ids: List[str], surface: Optional[str]) -> int:
        q = db.query(RecommendationCacheEntry).filter(RecommendationCacheEntry.user_id.in_(user_ids))
        if surface is not None:
            q = q.filter(RecommendationCacheEntry.surface == surface)
        return q.update({RecommendationCacheEntry.is_stale: True}, synchronize_session=False)

    @staticmethod
    def _delete_older_than(db: Session, cutoff: datetime) -> int:
        return (
            db.query(RecommendationCacheEntry)
            .filter(RecommendationCacheEntry.updated_at < cutoff)
            .delete(synchronize_session=False)
        )

    @staticmethod
    def _all_entries(db: Session) -> List[CachedEntry]:
        rows = db.query(RecommendationCacheEntry).order_by(RecommendationCacheEntry.generated_at.asc()).all()
        return [_cache_row_to_entry(r) for r in rows]


def _log_row_to_funnel(row: RecommendationLog) -> FunnelRow:
    return FunnelRow(
        user_id=row.user_id,
        book_id=row.book_id,
        algorithm=row.algorithm,
        score=row.score,
        position=row.position,
        reason=row.reason,
        surface=row.surface,
        shown=row.shown,
        clicked=row.clicked,
        converted=row.converted,
        dismissed=row.dismissed,
        converted_action=row.converted_action,
        funnel_violation=row.funnel_violation,
        served_at=row.served_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class SqlFeedbackStore(_SqlStore):
    async def append(self, event: FeedbackEvent) -> None:
        await self._run(self._append, event)

    async def upsert_funnel(
        self,
        user_id: str,
        book_id: str,
        algorithm: str,
        at: datetime,
        action: Optional[FeedbackAction] = None,
        converted_action: Optional[str] = None,
        impression: Optional[ScoredRecommendation] = None,
        surface: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> FunnelRow:
        args = (user_id, book_id, algorithm, at, action, converted_action, impression, surface, session_id)
        try:
            return await self._run(self._upsert_funnel, *args)
        except IntegrityError:
            logger.debug("Funnel upsert raced for user=%s book=%s algorithm=%s, retrying", user_id, book_id, algorithm)
            return await self._run(self._upsert_funnel, *args)

    async def latest_algorithm(self, user_id: str, book_id: str, since: datetime) -> Optional[str]:
        return await self._run(self._latest_algorithm, user_id, book_id, since)

    async def query_window(self, algorithm: Optional[str], since: datetime) -> List[FunnelRow]:
        return await self._run(self._query_window, algorithm, since)

    async def count_recent(self, user_id: str, book_id: str, since: datetime) -> int:
        return await self._run(self._count_recent, user_id, book_id, since)

    @staticmethod
    def _append(db: Session, event: FeedbackEvent) -> None:
        db.add(FeedbackEventLog(
            user_id=event.user_id,
            book_id=event.book_id,
            action=event.action.value,
            algorithm=event.algorithm,
            converted_action=event.converted_action.value if event.converted_action else None,
            created_at=event.timestamp,
        ))

    @staticmethod
    def _upsert_funnel(
        db: Session,
        user_id: str,
        book_id: str,
        algorithm: str,
        at: datetime,
        action: Optional[FeedbackAction],
        converted_action: Optional[str],
        impression: Optional[ScoredRecommendation],
        surface: Optional[str],
        session_id: Optional[str],
    ) -> FunnelRow:
        row = (
            db.query(RecommendationLog)
            .filter(
                RecommendationLog.user_id == user_id,
                RecommendationLog.book_id == book_id,
                RecommendationLog.algorithm == algorithm,
            )
            .one_or_none()
        )
        if row is None:
            row = RecommendationLog(
                user_id=user_id,
                book_id=book_id,
                algorithm=algorithm,
                shown=False,
                clicked=False,
                converted=False,
                dismissed=False,
                funnel_violation=False,
                created_at=at,
                served_at=at,
            )
            db.add(row)

        if impression is not None:
            row.served_at = at
            row.score = impression.final_score
            row.score_breakdown = dict(impression.score_breakdown)
            row.reason = impression.reason
            row.position = impression.position
            row.surface = surface
            row.session_id = session_id

        if action is not None:
            if action == FeedbackAction.CONVERTED and not row.clicked:
                row.funnel_violation = True
            setattr(row, action.value, True)
            setattr(row, f"{action.value}_at", at)
            if action == FeedbackAction.CONVERTED and converted_action:
                row.converted_action = converted_action

        row.updated_at = at
        db.flush()
        return _log_row_to_funnel(row)

    @staticmethod
    def _latest_algorithm(db: Session, user_id: str, book_id: str, since: datetime) -> Optional[str]:
        row = (
            db.query(RecommendationLog.algorithm)
            .filter(
                RecommendationLog.user_id == user_id,
                RecommendationLog.book_id == book_id,
                RecommendationLog.served_at >= since,
            )
            .order_by(RecommendationLog.served_at.desc(), RecommendationLog.algorithm.asc())
            .first()
        )
        return row[0] if row else None

    @staticmethod
    def _query_window(db: Session, algorithm: Optional[str], since: datetime) -> List[FunnelRow]:
        # Rows count toward the window when served or acted on inside it
        q = db.query(RecommendationLog).filter(RecommendationLog.updated_at >= since)
        if algorithm is not None:
            q = q.filter(RecommendationLog.algorithm == algorithm)
        return [_log_row_to_funnel(r) for r in q.order_by(RecommendationLog.created_at.asc()).all()]

    @staticmethod
    def _count_recent(db: Session, user_id: str, book_id: str, since: datetime) -> int:
        return (
            db.query(func.count(RecommendationLog.id))
            .filter(
                and_(
                    RecommendationLog.user_id == user_id,
                    RecommendationLog.book_id == book_id,
                    RecommendationLog.served_at >= since,
                )
            )
            .scalar()
            or 0
        )


@dataclass
class StoreBundle:
    """The external stores one pipeline run talks to."""
    preferences: PreferenceStore
    catalog: CatalogStore
    social: SocialGraphStore
    cache: CacheStore
    feedback: FeedbackStore

    @classmethod
    def sql(cls, session_factory: sessionmaker = SessionLocal) -> "StoreBundle":
        return cls(
            preferences=SqlPreferenceStore(session_factory),
            catalog=SqlCatalogStore(session_factory),
            social=SqlSocialGraphStore(session_factory),
            cache=SqlCacheStore(session_factory),
            feedback=SqlFeedbackStore(session_factory),
        )
