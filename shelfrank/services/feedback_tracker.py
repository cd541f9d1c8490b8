"""
Feedback tracking for recommendation evaluation.

Raw events are appended as they arrive; one funnel row per
(user, book, algorithm) accumulates shown/clicked/converted/dismissed flags.
The shown -> clicked -> converted order is not enforced: a conversion with no
prior click is stored, flagged and counted as out-of-order.
"""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from shelfrank.core.config import settings
from shelfrank.models import ConvertedAction, FeedbackAction, Surface
from shelfrank.schemas.feedback import (
    AlgorithmComparison,
    AlgorithmMetrics,
    BookPerformance,
    FeedbackEvent,
    FeedbackResponse,
)
from shelfrank.schemas.recommendation import ScoredRecommendation
from shelfrank.services.stores import FeedbackStore, FunnelRow
from shelfrank.utils.timing import utcnow

logger = logging.getLogger(__name__)

UNTRACKED_ALGORITHM = "untracked"
ATTRIBUTION_WINDOW_DAYS = 7
WINNER_MARGIN = 1.1  # a winner's conversion rate must beat the other's by more than 10%


def _ratio(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator else 0.0


def summarize(rows: List[FunnelRow]) -> AlgorithmMetrics:
    if not rows:
        return AlgorithmMetrics()
    shown = sum(1 for r in rows if r.shown)
    clicked = sum(1 for r in rows if r.clicked)
    converted = sum(1 for r in rows if r.converted)
    scores = [r.score for r in rows if r.score is not None]
    positions = [r.position for r in rows if r.position is not None]
    return AlgorithmMetrics(
        total=len(rows),
        shown=shown,
        clicked=clicked,
        converted=converted,
        dismissed=sum(1 for r in rows if r.dismissed),
        out_of_order=sum(1 for r in rows if r.funnel_violation),
        ctr=_ratio(clicked, shown),
        conversion_rate=_ratio(converted, clicked),
        avg_score=round(sum(scores) / len(scores), 4) if scores else 0.0,
        avg_position=round(sum(positions) / len(positions), 2) if positions else 0.0,
    )


class FeedbackTracker:
    def __init__(
        self,
        store: FeedbackStore,
        clock: Callable[[], datetime] = utcnow,
        timeout: Optional[float] = None,
    ):
        self.store = store
        self.clock = clock
        self.timeout = timeout if timeout is not None else settings.STORE_TIMEOUT_SECONDS

    async def _call(self, awaitable):
        return await asyncio.wait_for(awaitable, timeout=self.timeout)

    async def log_recommendations(
        self,
        user_id: str,
        items: List[ScoredRecommendation],
        surface: Surface = Surface.HOME,
        session_id: Optional[str] = None,
    ) -> int:
        """
        Record an impression row per served item, all flags False.

        Re-serving the same (user, book, algorithm) refreshes the row's score
        and position instead of adding a new one. Returns how many were written.
        """
        now = self.clock()
        surface_value = surface.value if isinstance(surface, Surface) else str(surface)
        written = 0
        for item in items:
            await self._call(self.store.upsert_funnel(
                user_id,
                item.book_id,
                item.algorithm,
                now,
                impression=item,
                surface=surface_value,
                session_id=session_id,
            ))
            written += 1
        logger.debug("Logged %d recommendation impressions for user=%s surface=%s", written, user_id, surface_value)
        return written

    async def record_status(
        self,
        user_id: str,
        book_id: str,
        action: FeedbackAction,
        algorithm: Optional[str] = None,
        converted_action: Optional[ConvertedAction] = None,
    ) -> FeedbackResponse:
        """
        Record one feedback action.

        Without an explicit algorithm, the most recent recommendation of this
        book to this user within the attribution window supplies it; otherwise
        the event is filed under "untracked". Never raises: store failures are
        logged and reported as success=False.
        """
        now = self.clock()
        try:
            if algorithm is None:
                since = now - timedelta(days=ATTRIBUTION_WINDOW_DAYS)
                algorithm = await self._call(self.store.latest_algorithm(user_id, book_id, since)) or UNTRACKED_ALGORITHM

            await self._call(self.store.append(FeedbackEvent(
                user_id=user_id,
                book_id=book_id,
                action=action,
                algorithm=algorithm,
                converted_action=converted_action,
                timestamp=now,
            )))
            row = await self._call(self.store.upsert_funnel(
                user_id,
                book_id,
                algorithm,
                now,
                action=action,
                converted_action=converted_action.value if converted_action else None,
            ))
        except Exception as e:
            logger.warning(
                "Failed to record feedback: user_id=%s book_id=%s action=%s algorithm=%s error=%r",
                user_id,
                book_id,
                action.value,
                algorithm,
                e,
                exc_info=True,
            )
            return FeedbackResponse(success=False)

        violation = action == FeedbackAction.CONVERTED and row.funnel_violation
        if violation:
            logger.warning(
                "Funnel violation: converted without a prior click (user_id=%s book_id=%s algorithm=%s)",
                user_id,
                book_id,
                algorithm,
            )
        return FeedbackResponse(success=True, funnel_violation=violation)

    async def get_algorithm_metrics(self, algorithm: str, days: int = 7) -> AlgorithmMetrics:
        since = self.clock() - timedelta(days=days)
        rows = await self._call(self.store.query_window(algorithm, since))
        return summarize(rows)

    async def compare_algorithms(self, algorithm_a: str, algorithm_b: str, days: int = 7) -> AlgorithmComparison:
        metrics_a, metrics_b = await asyncio.gather(
            self.get_algorithm_metrics(algorithm_a, days),
            self.get_algorithm_metrics(algorithm_b, days),
        )
        winner = None
        if metrics_a.conversion_rate > metrics_b.conversion_rate * WINNER_MARGIN:
            winner = algorithm_a
        elif metrics_b.conversion_rate > metrics_a.conversion_rate * WINNER_MARGIN:
            winner = algorithm_b
        return AlgorithmComparison(
            algorithm_a=algorithm_a,
            algorithm_b=algorithm_b,
            metrics_a=metrics_a,
            metrics_b=metrics_b,
            winner=winner,
        )

    async def get_top_performers(
        self,
        limit: int = 10,
        days: int = 7,
        min_impressions: int = 10,
    ) -> List[BookPerformance]:
        """Books ranked by conversion rate then CTR, across all algorithms."""
        since = self.clock() - timedelta(days=days)
        rows = await self._call(self.store.query_window(None, since))

        counts: Dict[str, Dict[str, int]] = defaultdict(lambda: {"shown": 0, "clicked": 0, "converted": 0})
        for r in rows:
            c = counts[r.book_id]
            c["shown"] += int(r.shown)
            c["clicked"] += int(r.clicked)
            c["converted"] += int(r.converted)

        performers = [
            BookPerformance(
                book_id=book_id,
                shown=c["shown"],
                clicked=c["clicked"],
                converted=c["converted"],
                ctr=_ratio(c["clicked"], c["shown"]),
                conversion_rate=_ratio(c["converted"], c["clicked"]),
            )
            for book_id, c in counts.items()
            if c["shown"] >= min_impressions
        ]
        performers.sort(key=lambda p: (-p.conversion_rate, -p.ctr, p.book_id))
        return performers[:limit]

    async def was_recently_recommended(self, user_id: str, book_id: str, days: int = 7) -> bool:
        since = self.clock() - timedelta(days=days)
        return await self._call(self.store.count_recent(user_id, book_id, since)) > 0
