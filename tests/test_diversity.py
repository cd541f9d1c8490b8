import random
from collections import Counter

import pytest

from shelfrank.schemas.recommendation import (
    CatalogEntry,
    GenreWeight,
    ScoredRecommendation,
    UserPreferenceProfile,
)
from shelfrank.services.diversity import genre_entropy, inject_diversity
from shelfrank.services.recommendation_config import DEFAULT_CONFIG, apply_overrides


FANTASY_FAN = UserPreferenceProfile(
    user_id="reader",
    top_genres=[GenreWeight(genre="Fantasy", weight=0.9)],
)


def _pool(rows):
    """rows: (book_id, score, genres, author) tuples."""
    scored = [ScoredRecommendation(book_id=b, final_score=s) for b, s, _, _ in rows]
    entries = {b: CatalogEntry(id=b, title=b, genres=g, authors=[a]) for b, _, g, a in rows}
    return scored, entries


def _fantasy_heavy_pool():
    rows = [(f"fan-{i:02d}", 0.95 - i * 0.01, ["Fantasy"], f"Author {i}") for i in range(20)]
    rows.append(("scifi", 0.15, ["Science Fiction"], "Other Author"))
    rows.append(("romance", 0.10, ["Romance"], "Third Author"))
    return _pool(rows)


def test_entropy_bounds():
    assert genre_entropy([]) == 0.0
    assert genre_entropy(["Fantasy", "Epic Fantasy", "fantasy"]) == 0.0
    assert genre_entropy(["Fantasy", "Romance"]) == pytest.approx(1.0)
    skewed = genre_entropy(["Fantasy"] * 8 + ["Romance", "Horror"])
    assert 0.0 < skewed < 1.0


def test_small_pool_returned_in_score_order():
    scored, entries = _pool([
        ("a", 0.2, ["Fantasy"], "x"),
        ("b", 0.9, ["Fantasy"], "x"),
        ("c", 0.5, ["Fantasy"], "x"),
    ])
    result = inject_diversity(scored, entries, FANTASY_FAN, [], DEFAULT_CONFIG, n=10)
    assert [r.book_id for r in result] == ["b", "c", "a"]
    assert [r.position for r in result] == [1, 2, 3]


def test_disabled_injection_is_plain_top_n():
    config = apply_overrides(DEFAULT_CONFIG, {"features": {"enable_diversity_injection": False}})
    scored, entries = _fantasy_heavy_pool()
    result = inject_diversity(scored, entries, FANTASY_FAN, [], config, n=10)
    assert [r.book_id for r in result] == [f"fan-{i:02d}" for i in range(10)]


def test_quality_slice_comes_first_unchanged():
    scored, entries = _fantasy_heavy_pool()
    result = inject_diversity(scored, entries, FANTASY_FAN, ["Fantasy"] * 5, DEFAULT_CONFIG, n=10)
    assert [r.book_id for r in result[:7]] == [f"fan-{i:02d}" for i in range(7)]
    assert len(result) == 10
    assert [r.position for r in result] == list(range(1, 11))


def test_diverse_ratio_widens_the_diversity_slice():
    config = apply_overrides(DEFAULT_CONFIG, {"diversity": {"diverse_ratio": 0.5}})
    scored, entries = _fantasy_heavy_pool()

    result = inject_diversity(scored, entries, FANTASY_FAN, ["Fantasy"] * 5, config, n=10)

    ids = [r.book_id for r in result]
    assert ids[:5] == [f"fan-{i:02d}" for i in range(5)]
    # two Fantasy picks fill the cap, so the slice ends one short
    assert len(ids) == 9
    assert ids[-2:] == ["scifi", "romance"]


def test_narrow_reader_explores_adjacent_genres_only():
    scored, entries = _fantasy_heavy_pool()
    result = inject_diversity(scored, entries, FANTASY_FAN, ["Fantasy"] * 5, DEFAULT_CONFIG, n=10)
    ids = [r.book_id for r in result]
    # Science Fiction is adjacent to Fantasy; Romance is not
    assert "scifi" in ids
    assert "romance" not in ids


def test_diverse_reader_explores_any_genre_outside_top():
    scored, entries = _fantasy_heavy_pool()
    shelf = ["Fantasy", "Romance", "Mystery", "Biography", "Horror", "Thriller"]
    result = inject_diversity(scored, entries, FANTASY_FAN, shelf, DEFAULT_CONFIG, n=10)
    ids = [r.book_id for r in result]
    assert "scifi" in ids
    assert "romance" in ids


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_diversity_slice_respects_per_genre_cap(seed):
    rng = random.Random(seed)
    genres = ["Fantasy", "Romance", "Mystery", "Horror", "Biography", "Business"]
    rows = [
        (f"book-{i}", round(rng.random(), 4), rng.sample(genres, rng.randint(1, 2)), f"Author {rng.randint(1, 8)}")
        for i in range(60)
    ]
    scored, entries = _pool(rows)
    n = 20

    result = inject_diversity(scored, entries, FANTASY_FAN, genres, DEFAULT_CONFIG, n=n)

    quality_count = 14
    top = sorted(scored, key=lambda r: (-r.final_score, r.book_id))[:quality_count]
    assert [r.book_id for r in result[:quality_count]] == [r.book_id for r in top]
    assert len(result) <= n
    assert len({r.book_id for r in result}) == len(result)

    per_genre = Counter()
    for rec in result[quality_count:]:
        per_genre.update(g.lower() for g in entries[rec.book_id].genres)
    assert all(count <= DEFAULT_CONFIG.diversity.max_per_genre for count in per_genre.values())
