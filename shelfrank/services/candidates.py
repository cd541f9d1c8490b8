"""
Candidate generation.

Five named strategies each pull a bounded pool of books from the external
stores. `generate_candidates` runs the enabled strategies concurrently, each
under its own timeout, then dedupes the union in strategy order, drops books
the user already has, and backfills any shortfall from popular
quality-eligible books.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Set

from shelfrank.schemas.recommendation import (
    CandidateRecord,
    CatalogEntry,
    UserActivity,
    UserPreferenceProfile,
)
from shelfrank.services.recommendation_config import RecommendationConfig, genre_search_terms
from shelfrank.services.stores import CatalogFilter, StoreBundle
from shelfrank.utils.timing import timed_phase

logger = logging.getLogger(__name__)

BACKFILL_SOURCE = "trending"


@dataclass
class StrategyContext:
    user_id: str
    profile: UserPreferenceProfile
    activity: UserActivity
    config: RecommendationConfig
    stores: StoreBundle
    timeout: float

    @property
    def owned_ids(self) -> Set[str]:
        return self.activity.book_ids()

    def top_genre_terms(self) -> List[str]:
        terms: List[str] = []
        for genre in self.profile.top_genre_names(self.config.candidates.top_genre_count):
            for term in genre_search_terms(genre, self.config):
                if term.lower() not in {t.lower() for t in terms}:
                    terms.append(term)
        return terms


@dataclass
class CandidateBatch:
    """Deduped candidates plus per-strategy bookkeeping."""
    candidates: List[CandidateRecord] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    backfilled: int = 0
    backfill_failed: bool = False

    @property
    def catalog_unreachable(self) -> bool:
        """The backfill query failed and no strategy produced anything."""
        return self.backfill_failed and not self.candidates


class CandidateStrategy(ABC):
    """A named source of candidate books."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Strategy tag recorded on every candidate it produces."""
        ...

    @abstractmethod
    async def generate(self, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
        """Return at most `quota` candidates for ctx.user_id."""
        ...

    def _record(self, entry_id: str, **signals) -> CandidateRecord:
        return CandidateRecord(
            book_id=entry_id,
            source_strategy=self.name,
            sources=[self.name],
            signals=signals,
        )


class GenreStrategy(CandidateStrategy):
    name = "genre"

    async def generate(self, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
        terms = ctx.top_genre_terms()
        if not terms:
            return []
        entries = await ctx.stores.catalog.query(
            CatalogFilter(
                genres_any=terms,
                require_cover=True,
                min_pages=ctx.config.quality.min_page_count,
                exclude_ids=sorted(ctx.owned_ids),
            ),
            sort=[("average_rating", True), ("published_year", True)],
            limit=quota,
        )
        return [self._record(e.id) for e in entries]


class AuthorStrategy(CandidateStrategy):
    name = "author"

    async def generate(self, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
        authors = ctx.profile.favorite_authors[: ctx.config.candidates.top_author_count]
        if not authors:
            return []
        entries = await ctx.stores.catalog.query(
            CatalogFilter(authors_any=authors, exclude_ids=sorted(ctx.owned_ids)),
            sort=[("average_rating", True), ("ratings_count", True)],
            limit=quota,
        )
        return [self._record(e.id) for e in entries]


def is_positive_signal(kind: str, rating: Optional[int], config: RecommendationConfig) -> bool:
    """Likes always count; a shelved book counts unless its rating tier is non-positive."""
    if kind == "liked":
        return True
    return rating is None or config.signals.for_rating(rating) > 0


class FriendActivityStrategy(CandidateStrategy):
    name = "friend"

    async def generate(self, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
        following = await ctx.stores.social.get_following(ctx.user_id)
        if not following:
            return []

        results = await asyncio.gather(
            *(ctx.stores.social.get_activity(friend_id) for friend_id in following),
            return_exceptions=True,
        )

        owned = ctx.owned_ids
        friends_by_book: Dict[str, List[str]] = {}
        for friend_id, activity in zip(following, results):
            if isinstance(activity, BaseException):
                logger.warning("Skipping friend %s activity for user %s: %s", friend_id, ctx.user_id, activity)
                continue
            for kind, items in (("liked", activity.liked), ("shelved", activity.shelved)):
                for item in items:
                    if item.book_id in owned or not is_positive_signal(kind, item.rating, ctx.config):
                        continue
                    contributors = friends_by_book.setdefault(item.book_id, [])
                    if friend_id not in contributors:
                        contributors.append(friend_id)

        ranked = sorted(friends_by_book.items(), key=lambda kv: (-len(kv[1]), kv[0]))
        return [self._record(book_id, friend_ids=friend_ids) for book_id, friend_ids in ranked[:quota]]


def rank_seed_books(activity: UserActivity, config: RecommendationConfig) -> List[str]:
    """
    Order the user's own books by preference-signal weight, strongest first.

    Weight is the rating tier plus the like/shelve weight; ties go to the most
    recent activity. Only books with a positive weight are returned.
    """
    weights: Dict[str, float] = {}
    latest: Dict[str, datetime] = {}
    for item in activity.liked:
        weights[item.book_id] = weights.get(item.book_id, 0.0) + config.signals.liked
        if item.at and (item.book_id not in latest or item.at > latest[item.book_id]):
            latest[item.book_id] = item.at
    for item in activity.shelved:
        weights[item.book_id] = (
            weights.get(item.book_id, 0.0) + config.signals.shelved + config.signals.for_rating(item.rating)
        )
        if item.at and (item.book_id not in latest or item.at > latest[item.book_id]):
            latest[item.book_id] = item.at

    def sort_key(book_id: str):
        at = latest.get(book_id)
        return (-weights[book_id], -(at.timestamp() if at else 0.0), book_id)

    return [b for b in sorted(weights, key=sort_key) if weights[b] > 0]


class SimilarToLikedStrategy(CandidateStrategy):
    name = "similar"

    async def generate(self, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
        seed_ids = rank_seed_books(ctx.activity, ctx.config)[: ctx.config.candidates.similar_seed_count]
        if not seed_ids:
            return []
        seeds = await ctx.stores.catalog.get_many(seed_ids)
        if not seeds:
            return []

        genre_terms: List[str] = []
        authors: List[str] = []
        for seed in seeds:
            for genre in seed.genres:
                for term in genre_search_terms(genre, ctx.config):
                    if term not in genre_terms:
                        genre_terms.append(term)
            for author in seed.authors:
                if author not in authors:
                    authors.append(author)
        if not genre_terms and not authors:
            return []

        entries = await ctx.stores.catalog.query(
            CatalogFilter(
                genres_any=genre_terms,
                authors_any=authors,
                genres_or_authors=True,
                exclude_ids=sorted(ctx.owned_ids | set(seed_ids)),
            ),
            sort=[("average_rating", True), ("ratings_count", True)],
            limit=quota,
        )
        best_seed = seeds[0]
        return [
            self._record(e.id, seed_title=best_seed.title, seed_book_id=best_seed.id)
            for e in entries
        ]


class TrendingStrategy(CandidateStrategy):
    name = "trending"

    async def generate(self, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
        entries = await ctx.stores.catalog.query(
            CatalogFilter(
                genres_any=ctx.top_genre_terms(),
                min_rating=ctx.config.quality.trending_min_rating,
                exclude_ids=sorted(ctx.owned_ids),
            ),
            sort=[("ratings_count", True), ("average_rating", True)],
            limit=quota,
        )
        return [self._record(e.id) for e in entries]


STRATEGIES: List[CandidateStrategy] = [
    GenreStrategy(),
    AuthorStrategy(),
    FriendActivityStrategy(),
    SimilarToLikedStrategy(),
    TrendingStrategy(),
]


def strategy_quota(name: str, config: RecommendationConfig) -> int:
    quotas = config.candidates
    return {
        "genre": quotas.genre_based,
        "author": quotas.author_based,
        "friend": quotas.friend_activity,
        "similar": quotas.similar_to_liked,
        "trending": quotas.trending,
    }[name]


def enabled_strategies(profile: UserPreferenceProfile, config: RecommendationConfig) -> List[CandidateStrategy]:
    """An empty profile only gets trending; the friend strategy follows its feature flag."""
    if profile.is_empty:
        return [s for s in STRATEGIES if s.name == "trending"]
    return [
        s for s in STRATEGIES
        if s.name != "friend" or config.features.enable_friend_recommendations
    ]


def _merge(existing: CandidateRecord, incoming: CandidateRecord) -> None:
    for source in incoming.sources:
        if source not in existing.sources:
            existing.sources.append(source)
    for key, value in incoming.signals.items():
        current = existing.signals.get(key)
        if isinstance(current, list) and isinstance(value, list):
            existing.signals[key] = current + [v for v in value if v not in current]
        elif key not in existing.signals:
            existing.signals[key] = value


async def _run_strategy(strategy: CandidateStrategy, ctx: StrategyContext, quota: int) -> List[CandidateRecord]:
    with timed_phase(f"user={ctx.user_id} strategy={strategy.name}"):
        return await asyncio.wait_for(strategy.generate(ctx, quota), timeout=ctx.timeout)


async def _backfill(ctx: StrategyContext, shortfall: int, exclude: Set[str]) -> List[CatalogEntry]:
    quality = ctx.config.quality
    return await asyncio.wait_for(
        ctx.stores.catalog.query(
            CatalogFilter(
                min_rating=quality.min_rating,
                min_ratings_count=quality.min_rating_count,
                min_pages=quality.min_page_count,
                max_pages=quality.max_page_count,
                exclude_ids=sorted(exclude),
            ),
            sort=[("ratings_count", True), ("average_rating", True)],
            limit=shortfall,
        ),
        timeout=ctx.timeout,
    )


async def generate_candidates(
    user_id: str,
    profile: UserPreferenceProfile,
    config: RecommendationConfig,
    stores: StoreBundle,
    timeout: float,
    activity: Optional[UserActivity] = None,
) -> CandidateBatch:
    """
    Build the deduped candidate pool for one request. Never raises on store
    failures: a failed or timed-out strategy contributes nothing.
    """
    if activity is None:
        try:
            activity = await asyncio.wait_for(stores.social.get_activity(user_id), timeout=timeout)
        except Exception as e:
            logger.warning("Could not load activity for user %s, assuming none: %r", user_id, e)
            activity = UserActivity()

    ctx = StrategyContext(
        user_id=user_id,
        profile=profile,
        activity=activity,
        config=config,
        stores=stores,
        timeout=timeout,
    )
    strategies = enabled_strategies(profile, config)
    quotas = [strategy_quota(s.name, config) for s in strategies]

    results = await asyncio.gather(
        *(_run_strategy(s, ctx, q) for s, q in zip(strategies, quotas)),
        return_exceptions=True,
    )

    batch = CandidateBatch()
    owned = ctx.owned_ids
    collected: Dict[str, CandidateRecord] = {}
    shortfall = 0
    for strategy, quota, result in zip(strategies, quotas, results):
        if isinstance(result, BaseException):
            reason = "timeout" if isinstance(result, asyncio.TimeoutError) else repr(result)
            logger.warning("Candidate strategy %s failed for user %s: %s", strategy.name, user_id, reason)
            batch.failures[strategy.name] = reason
            shortfall += quota
            continue

        result = result[:quota]
        batch.counts[strategy.name] = len(result)
        shortfall += quota - len(result)
        for record in result:
            if record.book_id in owned:
                continue
            if record.book_id in collected:
                _merge(collected[record.book_id], record)
            else:
                collected[record.book_id] = record

    if shortfall > 0:
        try:
            entries = await _backfill(ctx, shortfall, set(collected) | owned)
        except Exception as e:
            reason = "timeout" if isinstance(e, asyncio.TimeoutError) else repr(e)
            logger.warning("Candidate backfill failed for user %s: %s", user_id, reason)
            batch.backfill_failed = True
            entries = []
        for entry in entries:
            if entry.id in collected or entry.id in owned:
                continue
            collected[entry.id] = CandidateRecord(
                book_id=entry.id,
                source_strategy=BACKFILL_SOURCE,
                sources=[BACKFILL_SOURCE],
                signals={"backfill": True},
            )
            batch.backfilled += 1

    batch.candidates = list(collected.values())
    logger.info(
        "Generated %d candidates for user %s (counts=%s failures=%s backfilled=%d)",
        len(batch.candidates),
        user_id,
        batch.counts,
        list(batch.failures),
        batch.backfilled,
    )
    return batch
