from dataclasses import replace

import pytest

from conftest import FailingStore, SlowStore
from shelfrank.schemas.recommendation import (
    ActivityItem,
    GenreWeight,
    UserActivity,
    UserPreferenceProfile,
)
from shelfrank.services.candidates import (
    enabled_strategies,
    generate_candidates,
    is_positive_signal,
    rank_seed_books,
)
from shelfrank.services.recommendation_config import DEFAULT_CONFIG, apply_overrides

FANTASY_FAN = UserPreferenceProfile(
    user_id="reader",
    top_genres=[GenreWeight(genre="Fantasy", weight=0.8)],
    favorite_authors=["Brandon Sanderson"],
)


@pytest.fixture
def fantasy_catalog(add_book):
    add_book("mistborn", title="Mistborn", authors=["Brandon Sanderson"], genres=["Epic Fantasy"], rating=4.6, ratings_count=5000)
    add_book("elantris", title="Elantris", authors=["Brandon Sanderson"], genres=["Fantasy"], rating=4.1, ratings_count=900)
    add_book("hobbit", title="The Hobbit", authors=["J.R.R. Tolkien"], genres=["Fantasy"], rating=4.3, ratings_count=8000)
    add_book("gone-girl", title="Gone Girl", authors=["Gillian Flynn"], genres=["Thriller"], rating=4.0, ratings_count=7000)
    add_book("obscure", title="Obscure", authors=["Nobody"], genres=["Poetry"], rating=3.0, ratings_count=2)


def test_empty_profile_only_runs_trending():
    names = [s.name for s in enabled_strategies(UserPreferenceProfile.empty("new"), DEFAULT_CONFIG)]
    assert names == ["trending"]


def test_friend_strategy_follows_feature_flag():
    config = apply_overrides(DEFAULT_CONFIG, {"features": {"enable_friend_recommendations": False}})
    names = [s.name for s in enabled_strategies(FANTASY_FAN, config)]
    assert "friend" not in names
    assert names == ["genre", "author", "similar", "trending"]


def test_positive_signals():
    assert is_positive_signal("liked", 1, DEFAULT_CONFIG)
    assert is_positive_signal("shelved", None, DEFAULT_CONFIG)
    assert is_positive_signal("shelved", 3, DEFAULT_CONFIG)
    assert not is_positive_signal("shelved", 2, DEFAULT_CONFIG)


def test_seed_books_ranked_by_signal_weight():
    activity = UserActivity(
        liked=[ActivityItem(book_id="liked-only")],
        shelved=[
            ActivityItem(book_id="five-stars", rating=5),
            ActivityItem(book_id="one-star", rating=1),
        ],
    )
    # five stars: 1.0 + 2.0; liked: 1.5; one star: 1.0 - 1.0 = 0 (dropped)
    assert rank_seed_books(activity, DEFAULT_CONFIG) == ["five-stars", "liked-only"]


@pytest.mark.asyncio
async def test_empty_profile_gets_trending_candidates(stores, fantasy_catalog):
    batch = await generate_candidates(
        "new", UserPreferenceProfile.empty("new"), DEFAULT_CONFIG, stores, timeout=5, activity=UserActivity(),
    )

    assert set(batch.counts) == {"trending"}
    ids = [c.book_id for c in batch.candidates]
    # trending needs rating >= 4.0, sorted by rating count
    assert ids[:4] == ["hobbit", "gone-girl", "mistborn", "elantris"]
    assert "obscure" not in ids


@pytest.mark.asyncio
async def test_strategies_are_merged_into_one_record_per_book(stores, fantasy_catalog):
    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, stores, timeout=5, activity=UserActivity())

    ids = [c.book_id for c in batch.candidates]
    assert len(ids) == len(set(ids))

    mistborn = next(c for c in batch.candidates if c.book_id == "mistborn")
    assert mistborn.source_strategy == "genre"
    assert mistborn.sources[:2] == ["genre", "author"]
    assert "trending" in mistborn.sources
    assert batch.failures == {}


@pytest.mark.asyncio
async def test_genre_strategy_skips_books_without_a_cover(stores, fantasy_catalog, add_book):
    add_book("bare", title="Bare", authors=["Someone Else"], genres=["Fantasy"], rating=4.5, ratings_count=3000, cover=False)

    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, stores, timeout=5, activity=UserActivity())

    assert batch.counts["genre"] == 3
    bare = next(c for c in batch.candidates if c.book_id == "bare")
    assert "genre" not in bare.sources
    assert bare.source_strategy == "trending"


@pytest.mark.asyncio
async def test_books_the_user_has_are_never_candidates(stores, fantasy_catalog, add_activity):
    add_activity("reader", "mistborn")
    add_activity("reader", "hobbit", kind="shelved", rating=4)

    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, stores, timeout=5)

    ids = {c.book_id for c in batch.candidates}
    assert "mistborn" not in ids
    assert "hobbit" not in ids
    assert "elantris" in ids


@pytest.mark.asyncio
async def test_similar_candidates_carry_their_seed(stores, fantasy_catalog, add_activity):
    add_activity("reader", "elantris", kind="shelved", rating=5)

    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, stores, timeout=5)

    mistborn = next(c for c in batch.candidates if c.book_id == "mistborn")
    assert "similar" in mistborn.sources
    assert mistborn.signals["seed_title"] == "Elantris"
    assert mistborn.signals["seed_book_id"] == "elantris"


@pytest.mark.asyncio
async def test_friend_candidates_list_contributing_friends(stores, fantasy_catalog, follow, add_activity):
    follow("reader", "alice")
    follow("reader", "bob")
    add_activity("alice", "gone-girl")
    add_activity("bob", "gone-girl")

    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, stores, timeout=5, activity=UserActivity())

    gone_girl = next(c for c in batch.candidates if c.book_id == "gone-girl")
    assert gone_girl.source_strategy == "friend"
    assert gone_girl.signals["friend_ids"] == ["alice", "bob"]


@pytest.mark.asyncio
async def test_timed_out_strategy_contributes_nothing(stores, fantasy_catalog, follow, add_activity):
    follow("reader", "alice")
    add_activity("alice", "gone-girl")
    slow = replace(stores, social=SlowStore(stores.social, {"get_following"}, delay=1.0))

    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, slow, timeout=0.2, activity=UserActivity())

    assert batch.failures == {"friend": "timeout"}
    assert batch.counts["genre"] > 0
    gone_girl = next((c for c in batch.candidates if c.book_id == "gone-girl"), None)
    # still reachable through trending/backfill, but never via friends
    assert gone_girl is None or "friend" not in gone_girl.sources


@pytest.mark.asyncio
async def test_shortfall_is_backfilled_from_popular_books(stores, add_book):
    add_book("popular-1", genres=["Business"], rating=4.4, ratings_count=900)
    add_book("popular-2", genres=["Business"], rating=4.0, ratings_count=400)
    add_book("too-few-ratings", genres=["Business"], rating=4.9, ratings_count=1)
    horror_fan = UserPreferenceProfile(user_id="reader", top_genres=[GenreWeight(genre="Horror", weight=1.0)])

    batch = await generate_candidates("reader", horror_fan, DEFAULT_CONFIG, stores, timeout=5, activity=UserActivity())

    assert [c.book_id for c in batch.candidates] == ["popular-1", "popular-2"]
    assert batch.backfilled == 2
    for candidate in batch.candidates:
        assert candidate.source_strategy == "trending"
        assert candidate.signals == {"backfill": True}


@pytest.mark.asyncio
async def test_unreachable_catalog_is_reported(stores):
    down = replace(stores, catalog=FailingStore(stores.catalog, {"query", "get", "get_many"}))

    batch = await generate_candidates("reader", FANTASY_FAN, DEFAULT_CONFIG, down, timeout=5, activity=UserActivity())

    assert batch.candidates == []
    assert batch.backfill_failed
    assert batch.catalog_unreachable
    assert {"genre", "author", "trending"} <= set(batch.failures)
