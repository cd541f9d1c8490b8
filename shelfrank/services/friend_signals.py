"""
Friend-based recommendations for the "friends" surface.

Each followed user contributes the books they loved, weighted by how strong
the friendship is. Strength is a capped linear combination of interaction
count, mutual follows and genre-taste overlap.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set, Tuple

from shelfrank.core.config import settings
from shelfrank.schemas.recommendation import ScoredRecommendation, UserActivity
from shelfrank.services.candidates import is_positive_signal
from shelfrank.services.recommendation_config import (
    DEFAULT_CONFIG,
    FriendshipParams,
    RecommendationConfig,
    normalize_genre,
)
from shelfrank.services.stores import StoreBundle

logger = logging.getLogger(__name__)

FRIEND_ALGORITHM = "friend-activity"
MIN_SHARED_FRIENDS = 2


def friendship_strength(
    interaction_count: int,
    mutual_friend_count: int,
    genre_overlap: float,
    params: FriendshipParams,
) -> float:
    strength = (
        params.base_strength
        + min(params.interaction_weight * interaction_count, params.max_interaction_bonus)
        + min(params.mutual_friend_weight * mutual_friend_count, params.max_mutual_friend_bonus)
        + params.taste_similarity_weight * max(0.0, min(1.0, genre_overlap))
    )
    return min(params.max_strength, strength)


def genre_overlap_ratio(
    genres_a: Iterable[str],
    genres_b: Iterable[str],
    config: RecommendationConfig = DEFAULT_CONFIG,
) -> float:
    """Jaccard similarity of two normalized genre sets; 0 when either is empty."""
    a = {normalize_genre(g, config).lower() for g in genres_a if g}
    b = {normalize_genre(g, config).lower() for g in genres_b if g}
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


@dataclass
class FriendContribution:
    friend_id: str
    strength: float
    activity: UserActivity


@dataclass
class FriendBook:
    book_id: str
    total_strength: float
    # (friend_id, strength), strongest first once ranked
    friends: List[Tuple[str, float]]


class FriendSignalAggregator:
    def __init__(self, stores: StoreBundle, timeout: Optional[float] = None):
        self.stores = stores
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def _user_genres(self, user_id: str) -> List[str]:
        profile = await self._call(self.stores.preferences.read(user_id))
        return [g.genre for g in profile.top_genres] if profile else []

    async def _owned_ids(self, user_id: str) -> Set[str]:
        try:
            activity = await self._call(self.stores.social.get_activity(user_id))
        except Exception as e:
            logger.warning("Could not load activity for user %s, not filtering owned books: %r", user_id, e)
            return set()
        return activity.book_ids()

    async def _contribution(
        self,
        user_id: str,
        friend_id: str,
        user_following: Set[str],
        user_genres: List[str],
        config: RecommendationConfig,
    ) -> FriendContribution:
        interactions, friend_following, friend_genres, activity = await asyncio.gather(
            self._call(self.stores.social.get_interaction_count(user_id, friend_id)),
            self._call(self.stores.social.get_following(friend_id)),
            self._user_genres(friend_id),
            self._call(self.stores.social.get_activity(friend_id)),
        )
        mutual = len((set(friend_following) & user_following) - {user_id, friend_id})
        strength = friendship_strength(
            interactions,
            mutual,
            genre_overlap_ratio(user_genres, friend_genres, config),
            config.friendship,
        )
        return FriendContribution(friend_id=friend_id, strength=strength, activity=activity)

    @staticmethod
    def _aggregate(
        contributions: List[FriendContribution],
        owned: Set[str],
        config: RecommendationConfig,
    ) -> List[FriendBook]:
        books: Dict[str, FriendBook] = {}
        for c in contributions:
            loved: Set[str] = set()
            for item in c.activity.liked:
                loved.add(item.book_id)
            for item in c.activity.shelved:
                if is_positive_signal("shelved", item.rating, config):
                    loved.add(item.book_id)
            for book_id in loved - owned:
                book = books.setdefault(book_id, FriendBook(book_id=book_id, total_strength=0.0, friends=[]))
                book.total_strength += c.strength
                book.friends.append((c.friend_id, c.strength))

        for book in books.values():
            book.friends.sort(key=lambda f: (-f[1], f[0]))
        return sorted(books.values(), key=lambda b: (-b.total_strength, b.book_id))

    async def _reason(self, book: FriendBook, config: RecommendationConfig, names: Dict[str, Optional[str]]) -> str:
        templates = config.explanations
        if not book.friends:
            return templates.friends_fallback
        top_id = book.friends[0][0]
        if top_id not in names:
            try:
                names[top_id] = await self._call(self.stores.social.get_display_name(top_id))
            except Exception as e:
                logger.warning("Display name lookup failed for user %s: %r", top_id, e)
                names[top_id] = None
        name = names[top_id]
        others = len(book.friends) - 1
        if not name:
            if len(book.friends) == 1:
                return templates.friend_count_single
            return templates.friend_count.format(count=len(book.friends))
        if others == 0:
            return templates.friend_named_single.format(friend_name=name)
        if others == 1:
            return templates.friend_named_one_other.format(friend_name=name)
        return templates.friend_named.format(friend_name=name, count=others)

    async def _emit(
        self,
        ranked: List[FriendBook],
        limit: int,
        config: RecommendationConfig,
    ) -> List[ScoredRecommendation]:
        if not ranked or limit <= 0:
            return []
        # Books missing from the catalog are dropped; catalog errors propagate
        known = {e.id for e in await self._call(self.stores.catalog.get_many([b.book_id for b in ranked]))}
        names: Dict[str, Optional[str]] = {}
        results: List[ScoredRecommendation] = []
        for book in ranked:
            if book.book_id not in known:
                continue
            results.append(ScoredRecommendation(
                book_id=book.book_id,
                final_score=book.total_strength,
                score_breakdown={"friend_activity": book.total_strength},
                reason=await self._reason(book, config, names),
                algorithm=FRIEND_ALGORITHM,
                position=len(results) + 1,
            ))
            if len(results) >= limit:
                break
        return results

    async def get_friend_recommendations(
        self,
        user_id: str,
        limit: int,
        config: RecommendationConfig = DEFAULT_CONFIG,
    ) -> List[ScoredRecommendation]:
        following = await self._call(self.stores.social.get_following(user_id))
        if not following:
            return []

        try:
            user_genres = await self._user_genres(user_id)
        except Exception as e:
            logger.warning("Could not load genres for user %s, ignoring taste overlap: %r", user_id, e)
            user_genres = []
        owned = await self._owned_ids(user_id)

        user_following = set(following)
        results = await asyncio.gather(
            *(self._contribution(user_id, f, user_following, user_genres, config) for f in following),
            return_exceptions=True,
        )
        contributions: List[FriendContribution] = []
        for friend_id, result in zip(following, results):
            if isinstance(result, BaseException):
                logger.warning("Skipping friend %s for user %s: %r", friend_id, user_id, result)
                continue
            contributions.append(result)

        ranked = self._aggregate(contributions, owned, config)
        recs = await self._emit(ranked, limit, config)
        logger.info(
            "Friend recommendations for user %s: %d friends, %d used, %d books",
            user_id,
            len(following),
            len(contributions),
            len(recs),
        )
        return recs

    async def get_books_friends_loved(
        self,
        user_id: str,
        friend_ids: List[str],
        limit: int = 10,
        config: RecommendationConfig = DEFAULT_CONFIG,
    ) -> List[ScoredRecommendation]:
        """Books at least two of the given friends loved. Explicitly chosen friends all count fully."""
        friend_ids = list(dict.fromkeys(friend_ids))
        if len(friend_ids) < MIN_SHARED_FRIENDS:
            return []

        owned = await self._owned_ids(user_id)
        results = await asyncio.gather(
            *(self._call(self.stores.social.get_activity(f)) for f in friend_ids),
            return_exceptions=True,
        )
        contributions = []
        for friend_id, result in zip(friend_ids, results):
            if isinstance(result, BaseException):
                logger.warning("Skipping friend %s for user %s: %r", friend_id, user_id, result)
                continue
            contributions.append(FriendContribution(friend_id=friend_id, strength=1.0, activity=result))

        shared = [b for b in self._aggregate(contributions, owned, config) if len(b.friends) >= MIN_SHARED_FRIENDS]
        return await self._emit(shared, limit, config)
