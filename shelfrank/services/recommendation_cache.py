"""
TTL cache of ranked recommendation lists, one entry per (user, surface).

Concurrent misses for the same key may both regenerate and both write; the
last write wins. Recomputation within a TTL window is idempotent, so no lock
is taken.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from shelfrank.core.config import settings
from shelfrank.models import Surface
from shelfrank.schemas.recommendation import ScoredRecommendation
from shelfrank.services.stores import CacheStore, CachedEntry
from shelfrank.utils.timing import utcnow

logger = logging.getLogger(__name__)

DEFAULT_TTL_HOURS = 1.0
DEFAULT_RETENTION_DAYS = 7


class CacheStats(BaseModel):
    total: int = 0
    fresh: int = 0
    stale: int = 0  # invalidated explicitly or on an expired read
    expired: int = 0  # past expires_at, not yet marked stale
    avg_age_minutes: float = 0.0


def _surface_value(surface) -> str:
    return surface.value if isinstance(surface, Surface) else str(surface)


class RecommendationCache:
    def __init__(
        self,
        store: CacheStore,
        clock: Callable[[], datetime] = utcnow,
        timeout: Optional[float] = None,
        ttl_hours: float = DEFAULT_TTL_HOURS,
    ):
        self.store = store
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS
        self.ttl_hours = ttl_hours

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    def _is_expired(self, entry: CachedEntry, now: datetime) -> bool:
        return entry.expires_at is None or now > entry.expires_at

    async def get_fresh_recommendations(
        self,
        user_id: str,
        surface: Surface = Surface.HOME,
        limit: Optional[int] = None,
        accept_stale: bool = False,
    ) -> Optional[List[ScoredRecommendation]]:
        """
        Cached items for (user, surface), or None on a miss.

        Expired or invalidated entries are a miss unless accept_stale is set.
        An expired entry found here is marked stale. With a limit, an entry
        built for a different list size is also a miss.
        """
        surface_key = _surface_value(surface)
        entry = await self._call(self.store.get((user_id, surface_key)))
        if entry is None:
            return None

        expired = self._is_expired(entry, self.clock())
        if expired and not entry.is_stale:
            try:
                await self._call(self.store.mark_stale([user_id], surface_key))
            except Exception as e:
                logger.warning("Failed to mark cache entry stale for user=%s surface=%s: %r", user_id, surface_key, e)

        if (expired or entry.is_stale) and not accept_stale:
            logger.debug(
                "Cache miss for user=%s surface=%s (expired=%s stale=%s)",
                user_id,
                surface_key,
                expired,
                entry.is_stale,
            )
            return None

        if limit is not None and entry.list_size is not None and entry.list_size != limit:
            logger.debug(
                "Cache miss for user=%s surface=%s (built for %d, asked for %d)",
                user_id,
                surface_key,
                entry.list_size,
                limit,
            )
            return None

        items = entry.items
        return items[:limit] if limit is not None else items

    async def cache_recommendations(
        self,
        user_id: str,
        home_items: Optional[List[ScoredRecommendation]] = None,
        friend_items: Optional[List[ScoredRecommendation]] = None,
        ttl_hours: Optional[float] = None,
        algorithm: str = "hybrid",
        list_size: Optional[int] = None,
    ) -> None:
        """
        Write the surfaces whose item lists are given; the other surface is left as is.

        list_size is the limit the lists were built for. It defaults to the
        length of each list; pass it when the pool ran short of the limit.
        """
        now = self.clock()
        ttl = timedelta(hours=ttl_hours if ttl_hours is not None else self.ttl_hours)
        for surface, items in ((Surface.HOME, home_items), (Surface.FRIENDS, friend_items)):
            if items is None:
                continue
            entry = CachedEntry(
                user_id=user_id,
                surface=surface.value,
                items=list(items),
                list_size=list_size if list_size is not None else len(items),
                algorithm=algorithm,
                generated_at=now,
            )
            await self._call(self.store.upsert((user_id, surface.value), entry, ttl))
            logger.debug("Cached %d items for user=%s surface=%s", len(items), user_id, surface.value)

    async def invalidate(self, user_id: str) -> int:
        return await self.invalidate_many([user_id])

    async def invalidate_many(self, user_ids: Sequence[str]) -> int:
        user_ids = list(dict.fromkeys(user_ids))
        if not user_ids:
            return 0
        count = await self._call(self.store.mark_stale(user_ids))
        logger.info("Invalidated %d cache entries for %d users", count, len(user_ids))
        return count

    async def users_needing_refresh(
        self,
        active_user_ids: Iterable[str],
        limit: Optional[int] = None,
        surface: Surface = Surface.HOME,
    ) -> List[str]:
        """Active users with no fresh entry for the surface, in input order."""
        now = self.clock()
        surface_key = _surface_value(surface)
        fresh = {
            e.user_id
            for e in await self._call(self.store.all_entries())
            if e.surface == surface_key and not e.is_stale and not self._is_expired(e, now)
        }
        needing = [u for u in dict.fromkeys(active_user_ids) if u not in fresh]
        return needing[:limit] if limit is not None else needing

    async def clean_expired(self, retention_days: int = DEFAULT_RETENTION_DAYS) -> int:
        """Delete entries not written within the retention window."""
        cutoff = self.clock() - timedelta(days=retention_days)
        deleted = await self._call(self.store.delete_older_than(cutoff))
        logger.info("Cache cleanup removed %d entries older than %s", deleted, cutoff.isoformat())
        return deleted

    async def stats(self) -> CacheStats:
        now = self.clock()
        entries = await self._call(self.store.all_entries())
        if not entries:
            return CacheStats()
        stats = CacheStats(total=len(entries))
        for e in entries:
            if e.is_stale:
                stats.stale += 1
            elif self._is_expired(e, now):
                stats.expired += 1
            else:
                stats.fresh += 1
        ages = [(now - e.generated_at).total_seconds() / 60 for e in entries]
        stats.avg_age_minutes = round(sum(ages) / len(ages), 2)
        return stats
