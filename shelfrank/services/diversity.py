"""
Diversity injection: blend a strict-score quality slice with a greedy,
overlap-penalized diversity slice.
"""
import logging
import math
from collections import Counter
from typing import Dict, List, Optional, Sequence, Set

from shelfrank.schemas.recommendation import CatalogEntry, ScoredRecommendation, UserPreferenceProfile
from shelfrank.services.recommendation_config import RecommendationConfig, DEFAULT_CONFIG, normalize_genre

logger = logging.getLogger(__name__)


def genre_entropy(genres: Sequence[str], config: RecommendationConfig = DEFAULT_CONFIG) -> float:
    """Normalized Shannon entropy (0-1) of a genre distribution. One genre or none gives 0."""
    counts = Counter(normalize_genre(g, config).lower() for g in genres if g and g.strip())
    if len(counts) <= 1:
        return 0.0
    total = sum(counts.values())
    entropy = -sum((c / total) * math.log2(c / total) for c in counts.values())
    return max(0.0, min(1.0, entropy / math.log2(len(counts))))


def _jaccard(a: Set[str], b: Set[str]) -> float:
    if not a and not b:
        return 0.0
    return len(a & b) / len(a | b)


class _Item:
    __slots__ = ("rec", "genres", "authors")

    def __init__(self, rec: ScoredRecommendation, entry: Optional[CatalogEntry], config: RecommendationConfig):
        self.rec = rec
        self.genres: Set[str] = {normalize_genre(g, config).lower() for g in (entry.genres if entry else []) if g.strip()}
        self.authors: Set[str] = {a.strip().lower() for a in (entry.authors if entry else []) if a.strip()}

    def overlap(self, other: "_Item") -> float:
        return (_jaccard(self.genres, other.genres) + _jaccard(self.authors, other.authors)) / 2


def _with_positions(items: List[ScoredRecommendation]) -> List[ScoredRecommendation]:
    return [item.model_copy(update={"position": i}) for i, item in enumerate(items, start=1)]


def inject_diversity(
    scored: List[ScoredRecommendation],
    entries: Dict[str, CatalogEntry],
    profile: UserPreferenceProfile,
    shelf_genres: Sequence[str],
    config: RecommendationConfig,
    n: int,
) -> List[ScoredRecommendation]:
    """
    Pick the final n recommendations.

    Up to floor(n * pure_quality_ratio) items are taken in score order, fewer
    when the diversity slice needs room for its ceil(n * diverse_ratio) share.
    The rest are picked greedily, each pick maximizing score * (1 - penalty * overlap)
    against everything already selected. While the injection budget lasts,
    picks come from exploration genres when any are available: any non-top
    genre for diverse readers, only genres adjacent to their top genres for
    narrow readers. No genre may appear more than max_per_genre times in the
    diversity slice.
    """
    if n <= 0:
        return []
    ordered = sorted(scored, key=lambda r: (-r.final_score, r.book_id))
    settings = config.diversity
    if not config.features.enable_diversity_injection or len(ordered) <= n:
        return _with_positions(ordered[:n])

    items = [_Item(r, entries.get(r.book_id), config) for r in ordered]
    quality_count = min(
        math.floor(round(n * settings.pure_quality_ratio, 9)),
        n - math.ceil(round(n * settings.diverse_ratio, 9)),
    )
    quality_count = max(0, quality_count)
    quality = items[:quality_count]
    pool = items[quality_count:]
    slice_size = n - quality_count

    top_genres = {normalize_genre(g.genre, config).lower() for g in profile.top_genres}
    entropy = genre_entropy(shelf_genres, config)
    if entropy > settings.high_diversity_user_threshold:
        injection_ratio = settings.high_diversity_injection
        exploration = None  # any genre outside the user's top genres
    else:
        injection_ratio = settings.low_diversity_injection
        exploration = set()
        adjacency = {k.lower(): v for k, v in settings.adjacent_genres.items()}
        for genre in top_genres:
            exploration |= {normalize_genre(a, config).lower() for a in adjacency.get(genre, [])}
        exploration -= top_genres
    injection_picks = math.ceil(n * injection_ratio)

    def explores(item: _Item) -> bool:
        if exploration is None:
            return bool(item.genres - top_genres)
        return bool(item.genres & exploration)

    genre_counts: Counter = Counter()

    def within_cap(item: _Item) -> bool:
        return all(genre_counts[g] < settings.max_per_genre for g in item.genres)

    selected: List[_Item] = list(quality)

    def adjusted(item: _Item) -> float:
        if not selected:
            return item.rec.final_score
        overlap = sum(item.overlap(s) for s in selected) / len(selected)
        return item.rec.final_score * (1 - settings.overlap_penalty * overlap)

    picks: List[_Item] = []
    remaining = list(pool)
    while len(picks) < slice_size:
        allowed = [i for i in remaining if within_cap(i)]
        if not allowed:
            break
        if len(picks) < injection_picks:
            exploring = [i for i in allowed if explores(i)]
            if exploring:
                allowed = exploring

        best = min(allowed, key=lambda i: (-adjusted(i), -i.rec.final_score, i.rec.book_id))
        picks.append(best)
        selected.append(best)
        remaining.remove(best)
        genre_counts.update(best.genres)

    if len(picks) < slice_size:
        logger.debug(
            "Diversity slice for user %s ended short (%d of %d) to respect the per-genre cap",
            profile.user_id,
            len(picks),
            slice_size,
        )

    diverse = sorted((i.rec for i in picks), key=lambda r: (-r.final_score, r.book_id))
    return _with_positions([i.rec for i in quality] + diverse)
