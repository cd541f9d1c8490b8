"""
Recommendation orchestration.

Serves a fresh cache hit when there is one; otherwise resolves the user's
config, builds the list for the requested surface, and schedules the cache
write and impression logging in the background so the caller never waits on
(or sees failures from) either.
"""
import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from shelfrank.core.config import settings
from shelfrank.models import Surface
from shelfrank.schemas.recommendation import (
    CatalogEntry,
    RecommendationRequest,
    RecommendationsResponse,
    ScoredRecommendation,
    UserActivity,
    UserPreferenceProfile,
)
from shelfrank.services.candidates import generate_candidates
from shelfrank.services.diversity import inject_diversity
from shelfrank.services.feedback_tracker import FeedbackTracker
from shelfrank.services.friend_signals import FRIEND_ALGORITHM, FriendSignalAggregator
from shelfrank.services.recommendation_cache import RecommendationCache
from shelfrank.services.recommendation_config import (
    ConfigurationRegistry,
    RecommendationConfig,
    algorithm_tag,
    genre_search_terms,
)
from shelfrank.services.scoring import ScoringContext, rank_candidates
from shelfrank.services.stores import CatalogFilter, StoreBundle
from shelfrank.utils.timing import timed_phase, utcnow

logger = logging.getLogger(__name__)

SIMILAR_ALGORITHM = "similar-books"


class RecommendationUnavailableError(Exception):
    """The preference or catalog store could not be reached at all. Safe to retry."""
    retryable = True


class RecommendationService:
    def __init__(
        self,
        stores: StoreBundle,
        registry: Optional[ConfigurationRegistry] = None,
        timeout: Optional[float] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.stores = stores
        self.registry = registry or ConfigurationRegistry()
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.clock = clock
        self.cache = RecommendationCache(stores.cache, clock=clock, timeout=self.timeout)
        self.tracker = FeedbackTracker(stores.feedback, clock=clock, timeout=self.timeout)
        self.friends = FriendSignalAggregator(stores, timeout=self.timeout)
        self._background: Set[asyncio.Task] = set()

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------

    def _schedule(self, work: Awaitable, label: str) -> None:
        task = asyncio.create_task(self._guard(work, label))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    async def _guard(work: Awaitable, label: str) -> None:
        try:
            await work
        except Exception:
            logger.warning("Background %s failed", label, exc_info=True)

    async def wait_for_background_tasks(self) -> None:
        """Wait for pending cache writes and impression logs."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Surfaces
    # ------------------------------------------------------------------

    async def _read_profile(self, user_id: str) -> UserPreferenceProfile:
        try:
            profile = await self._call(self.stores.preferences.read(user_id))
        except Exception as e:
            logger.error("Preference store unreachable for user %s: %r", user_id, e)
            raise RecommendationUnavailableError("preference store unreachable") from e
        return profile or UserPreferenceProfile.empty(user_id)

    async def _read_activity(self, user_id: str) -> UserActivity:
        try:
            return await self._call(self.stores.social.get_activity(user_id))
        except Exception as e:
            logger.warning("Could not load activity for user %s, assuming none: %r", user_id, e)
            return UserActivity()

    async def _shelf_genres(self, activity: UserActivity) -> List[str]:
        shelved = [item.book_id for item in activity.shelved]
        if not shelved:
            return []
        try:
            entries = await self._call(self.stores.catalog.get_many(shelved))
        except Exception as e:
            logger.warning("Could not load shelf genres, treating reader as narrow: %r", e)
            return []
        return [g for e in entries for g in e.genres]

    async def _home(
        self,
        user_id: str,
        n: int,
        config: RecommendationConfig,
    ) -> Tuple[List[ScoredRecommendation], bool]:
        """Returns (items, degraded). Degraded lists are served but not cached."""
        profile = await self._read_profile(user_id)
        activity = await self._read_activity(user_id)

        with timed_phase(f"user={user_id} phase=candidates", logger.debug):
            batch = await generate_candidates(user_id, profile, config, self.stores, self.timeout, activity)
        if batch.catalog_unreachable:
            raise RecommendationUnavailableError("catalog store unreachable")
        if not batch.candidates:
            return [], bool(batch.failures)

        try:
            found = await self._call(self.stores.catalog.get_many([c.book_id for c in batch.candidates]))
        except Exception as e:
            logger.error("Catalog lookup failed for user %s: %r", user_id, e)
            raise RecommendationUnavailableError("catalog store unreachable") from e
        entries: Dict[str, CatalogEntry] = {e.id: e for e in found}

        with timed_phase(f"user={user_id} phase=scoring", logger.debug):
            scored = rank_candidates(
                batch.candidates,
                entries,
                profile,
                config,
                ScoringContext(now=self.clock()),
                algorithm=algorithm_tag(config),
            )
        shelf_genres = await self._shelf_genres(activity)
        items = inject_diversity(scored, entries, profile, shelf_genres, config, n)
        return items, bool(batch.failures)

    async def _friends(self, user_id: str, n: int, config: RecommendationConfig) -> Tuple[List[ScoredRecommendation], bool]:
        if not config.features.enable_friend_recommendations:
            return [], False
        try:
            return await self.friends.get_friend_recommendations(user_id, n, config), False
        except Exception as e:
            logger.warning("Friend recommendations degraded to empty for user %s: %r", user_id, e)
            return [], True

    async def get_recommendations(self, request: RecommendationRequest) -> RecommendationsResponse:
        user_id = request.user_id
        surface = request.surface

        if not request.force_refresh:
            try:
                cached = await self.cache.get_fresh_recommendations(user_id, surface, request.limit)
            except Exception as e:
                logger.warning("Cache read failed for user=%s surface=%s, regenerating: %r", user_id, surface.value, e)
                cached = None
            if cached is not None:
                logger.info("Serving %d cached recommendations for user=%s surface=%s", len(cached), user_id, surface.value)
                return RecommendationsResponse(
                    recommendations=cached,
                    source="cache",
                    algorithm=cached[0].algorithm if cached else None,
                )

        config = self.registry.resolve_config(user_id)
        # Diversity is rebalanced over exactly the list served
        n = request.limit

        with timed_phase(f"user={user_id} surface={surface.value} generate", logger.info):
            if surface == Surface.FRIENDS:
                items, degraded = await self._friends(user_id, n, config)
                algorithm = FRIEND_ALGORITHM
            else:
                items, degraded = await self._home(user_id, n, config)
                algorithm = algorithm_tag(config)

        served = items[:n]
        if degraded:
            logger.info("Not caching degraded %s list for user=%s", surface.value, user_id)
        else:
            surface_items = {"friend_items" if surface == Surface.FRIENDS else "home_items": items}
            self._schedule(
                self.cache.cache_recommendations(
                    user_id,
                    ttl_hours=config.cache.ttl_hours,
                    algorithm=algorithm,
                    list_size=n,
                    **surface_items,
                ),
                f"cache write user={user_id} surface={surface.value}",
            )
        if served:
            self._schedule(
                self.tracker.log_recommendations(user_id, served, surface, request.session_id),
                f"impression log user={user_id}",
            )

        return RecommendationsResponse(recommendations=served, source="fresh", algorithm=algorithm)

    async def get_similar_books(self, book_id: str, limit: int = 20) -> List[ScoredRecommendation]:
        """Books sharing a genre or an author with book_id, one per (title, first author)."""
        try:
            book = await self._call(self.stores.catalog.get(book_id))
        except Exception as e:
            raise RecommendationUnavailableError("catalog store unreachable") from e
        if book is None or (not book.genres and not book.authors):
            return []

        terms: List[str] = []
        for genre in book.genres:
            for term in genre_search_terms(genre, self.registry.base):
                if term not in terms:
                    terms.append(term)
        try:
            similar = await self._call(self.stores.catalog.query(
                CatalogFilter(
                    genres_any=terms,
                    authors_any=list(book.authors),
                    genres_or_authors=True,
                    exclude_ids=[book.id],
                ),
                sort=[("average_rating", True), ("ratings_count", True)],
                limit=limit * 2,  # room for duplicate editions
            ))
        except Exception as e:
            raise RecommendationUnavailableError("catalog store unreachable") from e

        source_key = (book.title.lower().strip(), (book.authors[0] if book.authors else "").lower().strip())
        seen = {source_key}
        results: List[ScoredRecommendation] = []
        for entry in similar:
            key = (entry.title.lower().strip(), (entry.authors[0] if entry.authors else "").lower().strip())
            if key in seen:
                continue
            seen.add(key)
            results.append(ScoredRecommendation(
                book_id=entry.id,
                final_score=round(1 - len(results) * 0.01, 4),
                reason=self.registry.base.explanations.similar_books,
                algorithm=SIMILAR_ALGORITHM,
                position=len(results) + 1,
            ))
            if len(results) >= limit:
                break
        return results
