"""
Candidate scoring.

Everything here is pure: a candidate, its catalog entry, the user's profile,
the resolved config and a ScoringContext go in, a ScoredRecommendation (or
None for an ineligible candidate) comes out. Identical inputs always give
identical scores and ordering.
"""
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Callable, Dict, List, NamedTuple, Optional, Set

from shelfrank.schemas.recommendation import (
    CandidateRecord,
    CatalogEntry,
    ScoredRecommendation,
    UserPreferenceProfile,
)
from shelfrank.services.recommendation_config import RecommendationConfig, normalize_genre
from shelfrank.utils.timing import utcnow

logger = logging.getLogger(__name__)

MIN_AUTHOR_TOKEN_LENGTH = 3  # name tokens of 1-2 chars ("J.", "de") never count as a partial match


@dataclass(frozen=True)
class ScoringContext:
    """Request-time inputs to the context multipliers."""
    now: datetime

    @property
    def hour(self) -> int:
        return self.now.hour

    @property
    def year(self) -> int:
        return self.now.year

    @classmethod
    def current(cls) -> "ScoringContext":
        return cls(now=utcnow())


@dataclass
class ScoreFactors:
    """Unweighted factor values, each in [0, 1]."""
    genre_match: float = 0.0
    author_match: float = 0.0
    quality_score: float = 0.0
    friend_activity: float = 0.0
    trending_bonus: float = 0.0
    recency_bonus: float = 0.0
    diversity_bonus: float = 0.0


def normalized_genres(genres: List[str], config: RecommendationConfig) -> Set[str]:
    return {normalize_genre(g, config).lower() for g in genres if g and g.strip()}


def genre_match_factor(entry: CatalogEntry, profile: UserPreferenceProfile, config: RecommendationConfig) -> float:
    """Share of the user's top-genre weight that this book's genres cover."""
    total = sum(g.weight for g in profile.top_genres)
    if total <= 0 or not entry.genres:
        return 0.0
    book_genres = normalized_genres(entry.genres, config)
    matched = sum(
        g.weight for g in profile.top_genres
        if normalize_genre(g.genre, config).lower() in book_genres
    )
    return min(1.0, matched / total)


def matched_favorite_author(entry: CatalogEntry, profile: UserPreferenceProfile) -> Optional[str]:
    """The book's author that is exactly one of the user's favorites, if any."""
    favorites = {a.strip().lower() for a in profile.favorite_authors if a and a.strip()}
    for author in entry.authors:
        if author.strip().lower() in favorites:
            return author.strip()
    return None


def _name_tokens(name: str) -> Set[str]:
    return {t for t in name.lower().replace(".", " ").split() if len(t) >= MIN_AUTHOR_TOKEN_LENGTH}


def author_match_factor(entry: CatalogEntry, profile: UserPreferenceProfile, config: RecommendationConfig) -> float:
    if not entry.authors or not profile.favorite_authors:
        return 0.0
    if matched_favorite_author(entry, profile):
        return 1.0
    favorite_tokens: Set[str] = set()
    for favorite in profile.favorite_authors:
        favorite_tokens |= _name_tokens(favorite)
    for author in entry.authors:
        if _name_tokens(author) & favorite_tokens:
            return config.scoring.partial_author_match
    return 0.0


def quality_factor(entry: CatalogEntry, config: RecommendationConfig) -> float:
    """Normalized rating, zeroed when the rating sample is too small to trust."""
    if entry.average_rating is None or entry.ratings_count < config.quality.min_rating_count:
        return 0.0
    return max(0.0, min(1.0, entry.average_rating / 5.0))


def friend_ids(candidate: CandidateRecord) -> List[str]:
    return list(dict.fromkeys(candidate.signals.get("friend_ids") or []))


def friend_activity_factor(candidate: CandidateRecord, config: RecommendationConfig) -> float:
    saturation = max(1, config.scoring.friend_saturation)
    return min(len(friend_ids(candidate)) / saturation, 1.0)


def trending_factor(candidate: CandidateRecord, entry: CatalogEntry, config: RecommendationConfig) -> float:
    if not config.features.enable_trending_boost or "trending" not in candidate.sources:
        return 0.0
    if entry.average_rating is None or entry.average_rating < config.quality.trending_min_rating:
        return 0.0
    return 1.0


def recency_factor(entry: CatalogEntry, config: RecommendationConfig, context: ScoringContext) -> float:
    """Linear decay from 1.0 for this year's books to 0 at the horizon. Unknown or future years get 0."""
    if not config.features.enable_recency_boost:
        return 0.0
    year = entry.published_year
    if year is None or year > context.year:
        return 0.0
    horizon = max(1, config.scoring.recency_horizon_years)
    return max(0.0, 1.0 - (context.year - year) / horizon)


def diversity_factor(config: RecommendationConfig) -> float:
    # Real diversity is applied by the diversity injector after ranking
    if not config.features.enable_diversity_injection:
        return 0.0
    return config.scoring.diversity_placeholder


def compute_factors(
    candidate: CandidateRecord,
    entry: CatalogEntry,
    profile: UserPreferenceProfile,
    config: RecommendationConfig,
    context: ScoringContext,
) -> ScoreFactors:
    return ScoreFactors(
        genre_match=genre_match_factor(entry, profile, config),
        author_match=author_match_factor(entry, profile, config),
        quality_score=quality_factor(entry, config),
        friend_activity=friend_activity_factor(candidate, config),
        trending_bonus=trending_factor(candidate, entry, config),
        recency_bonus=recency_factor(entry, config, context),
        diversity_bonus=diversity_factor(config),
    )


def is_eligible(entry: CatalogEntry, profile: UserPreferenceProfile, config: RecommendationConfig) -> bool:
    """Slow readers never see books above the page ceiling."""
    if not config.features.enable_contextual_filters:
        return True
    ctx = config.context
    if profile.reading_pace is None or profile.reading_pace >= ctx.slow_reader_threshold:
        return True
    return entry.page_count is None or entry.page_count <= ctx.slow_reader_page_limit


def context_multiplier(
    entry: CatalogEntry,
    profile: UserPreferenceProfile,
    config: RecommendationConfig,
    context: ScoringContext,
) -> float:
    if not config.features.enable_contextual_filters:
        return 1.0
    ctx = config.context
    multiplier = 1.0
    if (
        ctx.morning_start_hour <= context.hour < ctx.morning_end_hour
        and entry.page_count is not None
        and entry.page_count < ctx.morning_light_book_threshold
    ):
        multiplier *= ctx.morning_boost
    if profile.recent_genres and normalized_genres(entry.genres, config) & normalized_genres(profile.recent_genres, config):
        multiplier *= ctx.recent_activity_boost_multiplier
    return multiplier


# ---------------------------------------------------------------------------
# Explanations
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExplanationInput:
    candidate: CandidateRecord
    entry: CatalogEntry
    profile: UserPreferenceProfile
    config: RecommendationConfig
    factors: ScoreFactors


class ExplanationRule(NamedTuple):
    name: str
    predicate: Callable[[ExplanationInput], bool]
    render: Callable[[ExplanationInput], str]


def _primary_genre(x: ExplanationInput) -> str:
    """The book genre that best matches the user's top genres, else its first genre."""
    book = {normalize_genre(g, x.config).lower(): g for g in x.entry.genres}
    for top in sorted(x.profile.top_genres, key=lambda g: g.weight, reverse=True):
        canonical = normalize_genre(top.genre, x.config)
        if canonical.lower() in book:
            return canonical
    return normalize_genre(x.entry.genres[0], x.config) if x.entry.genres else "your favorite genres"


def _render_friends(x: ExplanationInput) -> str:
    count = len(friend_ids(x.candidate))
    templates = x.config.explanations
    if count == 1:
        return templates.friend_count_single
    return templates.friend_count.format(count=count)


# Evaluated in order; the first matching rule supplies the reason.
EXPLANATION_RULES: List[ExplanationRule] = [
    ExplanationRule(
        "favorite_author",
        lambda x: matched_favorite_author(x.entry, x.profile) is not None,
        lambda x: x.config.explanations.author_match.format(author=matched_favorite_author(x.entry, x.profile)),
    ),
    ExplanationRule(
        "similar_to_high_rated",
        lambda x: "similar" in x.candidate.sources and bool(x.candidate.signals.get("seed_title")),
        lambda x: x.config.explanations.high_rated.format(book=x.candidate.signals["seed_title"]),
    ),
    ExplanationRule(
        "friend_activity",
        lambda x: len(friend_ids(x.candidate)) > 0,
        _render_friends,
    ),
    ExplanationRule(
        "genre_match",
        lambda x: x.factors.genre_match > 0,
        lambda x: x.config.explanations.genre_match.format(genre=_primary_genre(x)),
    ),
    ExplanationRule(
        "trending",
        lambda x: x.factors.trending_bonus > 0,
        lambda x: x.config.explanations.trending.format(genre=_primary_genre(x)),
    ),
    ExplanationRule(
        "recency",
        lambda x: x.factors.recency_bonus > 0,
        lambda x: x.config.explanations.recently_published.format(genre=_primary_genre(x)),
    ),
    ExplanationRule(
        "fallback",
        lambda x: True,
        lambda x: x.config.explanations.fallback,
    ),
]


def explain(x: ExplanationInput, rules: List[ExplanationRule] = EXPLANATION_RULES) -> str:
    for rule in rules:
        if rule.predicate(x):
            return rule.render(x)
    return x.config.explanations.fallback


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

def score_candidate(
    candidate: CandidateRecord,
    entry: CatalogEntry,
    profile: UserPreferenceProfile,
    config: RecommendationConfig,
    context: ScoringContext,
    algorithm: str = "hybrid",
) -> Optional[ScoredRecommendation]:
    """
    Score one candidate. Returns None when the candidate is ineligible.

    final_score is the weighted factor sum times the context multiplier;
    score_breakdown holds each factor's weighted contribution.
    """
    if not is_eligible(entry, profile, config):
        return None

    factors = compute_factors(candidate, entry, profile, config, context)
    weights = config.scoring.weights()
    breakdown: Dict[str, float] = {
        factor: weights[factor] * value for factor, value in asdict(factors).items()
    }
    final_score = sum(breakdown.values()) * context_multiplier(entry, profile, config, context)

    reason = explain(ExplanationInput(
        candidate=candidate,
        entry=entry,
        profile=profile,
        config=config,
        factors=factors,
    ))
    return ScoredRecommendation(
        book_id=candidate.book_id,
        final_score=final_score,
        score_breakdown=breakdown,
        reason=reason,
        algorithm=algorithm,
    )


def rank_candidates(
    candidates: List[CandidateRecord],
    entries: Dict[str, CatalogEntry],
    profile: UserPreferenceProfile,
    config: RecommendationConfig,
    context: ScoringContext,
    algorithm: str = "hybrid",
) -> List[ScoredRecommendation]:
    """Score a batch, drop ineligible or unknown books, sort by score desc then book id."""
    scored: List[ScoredRecommendation] = []
    dropped = 0
    for candidate in candidates:
        entry = entries.get(candidate.book_id)
        if entry is None:
            dropped += 1
            continue
        result = score_candidate(candidate, entry, profile, config, context, algorithm)
        if result is None:
            dropped += 1
            continue
        scored.append(result)

    scored.sort(key=lambda r: (-r.final_score, r.book_id))
    for position, item in enumerate(scored, start=1):
        item.position = position
    if dropped:
        logger.debug("Dropped %d ineligible or unknown candidates for user %s", dropped, profile.user_id)
    return scored
