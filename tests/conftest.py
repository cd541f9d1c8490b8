"""Pytest configuration for shelfrank tests."""
import asyncio
import os
import tempfile
from datetime import datetime, timedelta
from typing import List, Optional

import pytest

# The app module builds its engine at import time; keep it away from ./shelfrank.db
_TMP_DIR = tempfile.mkdtemp(prefix="shelfrank-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TMP_DIR}/app.db")

from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from shelfrank.database import Base, build_engine  # noqa: E402
import shelfrank.models  # noqa: E402,F401
from shelfrank.models import (  # noqa: E402
    Book,
    Follow,
    User,
    UserBookActivity,
    UserPreference,
)
from shelfrank.services.stores import StoreBundle  # noqa: E402

# TEST_DATABASE_URL may point at a Postgres test database; defaults to a temp SQLite file
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL") or f"sqlite:///{_TMP_DIR}/test.db"

NOW = datetime(2025, 3, 14, 15, 0, 0)


class FrozenClock:
    """Callable clock for services; advance() moves it forward."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(scope="session")
def engine():
    test_engine = build_engine(TEST_DATABASE_URL)
    if not Base.metadata.tables:
        raise RuntimeError("No tables registered in Base.metadata. Did you import shelfrank.models?")
    Base.metadata.create_all(bind=test_engine)

    yield test_engine

    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    """
    Session factory for the stores under test.

    Stores commit their own sessions, so isolation comes from emptying every
    table after the test rather than a rolled-back outer transaction.
    """
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture(scope="function")
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def stores(session_factory) -> StoreBundle:
    return StoreBundle.sql(session_factory)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

@pytest.fixture
def add_book(db):
    def _add(
        book_id: str,
        title: Optional[str] = None,
        authors: Optional[List[str]] = None,
        genres: Optional[List[str]] = None,
        rating: Optional[float] = 4.2,
        ratings_count: int = 100,
        pages: Optional[int] = 320,
        published: Optional[str] = "2015-06-01",
        cover: bool = True,
    ) -> Book:
        book = Book(
            id=book_id,
            title=title or f"Title {book_id}",
            authors=authors if authors is not None else ["Some Author"],
            genres=genres if genres is not None else ["Fiction"],
            average_rating=rating,
            ratings_count=ratings_count,
            page_count=pages,
            published_date=published,
            cover_image_url=f"https://covers.example/{book_id}.jpg" if cover else None,
        )
        db.add(book)
        db.commit()
        return book

    return _add


@pytest.fixture
def add_user(db):
    def _add(user_id: str, display_name: Optional[str] = None) -> User:
        user = User(id=user_id, username=user_id, display_name=display_name)
        db.add(user)
        db.commit()
        return user

    return _add


@pytest.fixture
def set_preferences(db):
    def _set(
        user_id: str,
        top_genres=None,
        favorite_authors=None,
        reading_pace: Optional[float] = None,
        recent_genres=None,
    ) -> UserPreference:
        pref = UserPreference(
            user_id=user_id,
            top_genres=[{"genre": g, "weight": w} for g, w in (top_genres or [])],
            favorite_authors=favorite_authors or [],
            genre_weights={},
            reading_pace=reading_pace,
            recent_genres=recent_genres or [],
        )
        db.merge(pref)
        db.commit()
        return pref

    return _set


@pytest.fixture
def follow(db):
    def _follow(follower_id: str, followed_id: str, interactions: int = 0) -> Follow:
        row = Follow(follower_id=follower_id, followed_id=followed_id, interaction_count=interactions)
        db.add(row)
        db.commit()
        return row

    return _follow


@pytest.fixture
def add_activity(db):
    def _add(user_id: str, book_id: str, kind: str = "liked", rating: Optional[int] = None, at: datetime = NOW):
        row = UserBookActivity(user_id=user_id, book_id=book_id, kind=kind, rating=rating, created_at=at)
        db.add(row)
        db.commit()
        return row

    return _add


# ---------------------------------------------------------------------------
# Fault injection
# ---------------------------------------------------------------------------

class FailingStore:
    """Wraps a store; the named methods raise instead of delegating."""

    def __init__(self, inner, fail: set, exc: Exception = None):
        self._inner = inner
        self._fail = set(fail)
        self._exc = exc or ConnectionError("store unreachable")
        self.calls: List[str] = []

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if name not in self._fail:
            return attr

        async def _raise(*args, **kwargs):
            self.calls.append(name)
            raise self._exc

        return _raise


class SlowStore:
    """Wraps a store; the named methods sleep before delegating."""

    def __init__(self, inner, slow: set, delay: float = 1.0):
        self._inner = inner
        self._slow = set(slow)
        self._delay = delay

    def __getattr__(self, name):
        attr = getattr(self._inner, name)
        if name not in self._slow:
            return attr

        async def _slow(*args, **kwargs):
            await asyncio.sleep(self._delay)
            return await attr(*args, **kwargs)

        return _slow
