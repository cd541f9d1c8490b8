"""
Recommendation engine configuration.

All tunable weights, quotas and thresholds live in one immutable
RecommendationConfig. A config is resolved once per request (optionally
varied by experiment bucket) and passed explicitly to every pipeline stage.
"""
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class ScoringWeights(_Frozen):
    """Weights of each factor in the final score. Should sum to ~1.0."""
    genre_match: float = 0.40
    author_match: float = 0.20
    quality_score: float = 0.15
    friend_activity: float = 0.10
    trending_bonus: float = 0.08
    recency_bonus: float = 0.05
    diversity_bonus: float = 0.02
    # Factor values (not weights)
    diversity_placeholder: float = 0.5
    partial_author_match: float = 0.3
    friend_saturation: int = 3
    recency_horizon_years: int = 10

    def weights(self) -> Dict[str, float]:
        return {
            "genre_match": self.genre_match,
            "author_match": self.author_match,
            "quality_score": self.quality_score,
            "friend_activity": self.friend_activity,
            "trending_bonus": self.trending_bonus,
            "recency_bonus": self.recency_bonus,
            "diversity_bonus": self.diversity_bonus,
        }


class SignalWeights(_Frozen):
    """How much each user action says about their taste."""
    rating_5_star: float = 2.0
    rating_4_star: float = 1.0
    rating_3_star: float = 0.5
    rating_2_star: float = -0.5
    rating_1_star: float = -1.0
    liked: float = 1.5
    shelved: float = 1.0
    tbr_added: float = 0.7
    currently_reading: float = 0.8
    favorite_book: float = 1.8
    top_book: float = 2.0

    def for_rating(self, rating: Optional[int]) -> float:
        if rating is None:
            return 0.0
        tiers = {
            5: self.rating_5_star,
            4: self.rating_4_star,
            3: self.rating_3_star,
            2: self.rating_2_star,
            1: self.rating_1_star,
        }
        return tiers.get(max(1, min(5, int(rating))), 0.0)


class FriendshipParams(_Frozen):
    base_strength: float = 0.3
    interaction_weight: float = 0.05
    max_interaction_bonus: float = 0.4
    mutual_friend_weight: float = 0.03
    max_mutual_friend_bonus: float = 0.3
    taste_similarity_weight: float = 0.2
    max_strength: float = 1.0


class DiversitySettings(_Frozen):
    pure_quality_ratio: float = Field(0.7, ge=0.0, le=1.0)
    diverse_ratio: float = Field(0.3, ge=0.0, le=1.0)
    high_diversity_user_threshold: float = 0.6
    high_diversity_injection: float = 0.20
    low_diversity_injection: float = 0.10
    max_per_genre: int = Field(2, ge=1)
    overlap_penalty: float = 1.0
    adjacent_genres: Dict[str, List[str]] = Field(default_factory=lambda: {
        "Fantasy": ["Science Fiction", "Young Adult", "Horror"],
        "Science Fiction": ["Fantasy", "Thriller"],
        "Mystery": ["Thriller", "Historical Fiction"],
        "Thriller": ["Mystery", "Horror", "Science Fiction"],
        "Romance": ["Historical Fiction", "Fiction", "Young Adult"],
        "Horror": ["Thriller", "Fantasy"],
        "Historical Fiction": ["Fiction", "Biography", "Mystery"],
        "Biography": ["Historical Fiction", "Non-Fiction"],
        "Self-Help": ["Business", "Non-Fiction"],
        "Business": ["Self-Help", "Biography"],
        "Fiction": ["Historical Fiction", "Romance", "Mystery"],
        "Non-Fiction": ["Biography", "Self-Help"],
        "Young Adult": ["Fantasy", "Romance", "Children"],
        "Children": ["Young Adult"],
    })


class CandidateQuotas(_Frozen):
    genre_based: int = 50
    author_based: int = 30
    friend_activity: int = 30
    similar_to_liked: int = 30
    trending: int = 20
    top_genre_count: int = 5
    top_author_count: int = 5
    similar_seed_count: int = 10


class QualityThresholds(_Frozen):
    min_rating: float = 3.5
    min_rating_count: int = 5
    max_page_count: int = 1000
    min_page_count: int = 50
    trending_min_rating: float = 4.0


class ContextAdjustments(_Frozen):
    morning_light_book_threshold: int = 300
    morning_start_hour: int = 6
    morning_end_hour: int = 12
    morning_boost: float = 1.1
    recent_activity_boost_days: int = 7
    recent_activity_boost_multiplier: float = 1.5
    slow_reader_threshold: float = 1.0  # books per month
    slow_reader_page_limit: int = 400


class CacheSettings(_Frozen):
    ttl_hours: float = 1.0
    retention_days: int = 7


class FeatureFlags(_Frozen):
    enable_friend_recommendations: bool = True
    enable_trending_boost: bool = True
    enable_recency_boost: bool = True
    enable_diversity_injection: bool = True
    enable_contextual_filters: bool = True
    enable_collaborative_filtering: bool = False  # not implemented
    enable_ml_predictions: bool = False  # not implemented


class ExplanationTemplates(_Frozen):
    author_match: str = "By {author}, one of your favorite authors"
    high_rated: str = "Because you loved '{book}'"
    friend_count_single: str = "1 friend loved this"
    friend_count: str = "{count} friends loved this"
    friend_named_single: str = "{friend_name} loved this"
    friend_named_one_other: str = "{friend_name} and 1 other loved this"
    friend_named: str = "{friend_name} and {count} others loved this"
    friends_fallback: str = "Popular with your friends"
    genre_match: str = "Popular in {genre}"
    trending: str = "Trending in {genre}"
    recently_published: str = "New release in {genre}"
    similar_books: str = "Readers also enjoyed"
    fallback: str = "Recommended for you"


class ExperimentVariant(_Frozen):
    name: str
    percentage: int = Field(ge=0, le=100)
    overrides: Dict[str, Any] = Field(default_factory=dict)


class ABTestingSettings(_Frozen):
    enabled: bool = False
    variants: List[ExperimentVariant] = Field(default_factory=lambda: [
        ExperimentVariant(name="control", percentage=50),
        ExperimentVariant(
            name="high_friend_weight",
            percentage=25,
            overrides={"scoring": {"friend_activity": 0.20, "genre_match": 0.30}},
        ),
        ExperimentVariant(
            name="high_diversity",
            percentage=25,
            overrides={"diversity": {"pure_quality_ratio": 0.5, "diverse_ratio": 0.5}},
        ),
    ])

    @model_validator(mode="after")
    def _check_variants(self):
        total = sum(v.percentage for v in self.variants)
        if total > 100:
            raise ValueError(f"experiment percentages sum to {total}, must be <= 100")
        names = [v.name for v in self.variants]
        if len(set(names)) != len(names):
            raise ValueError("experiment variant names must be unique")
        return self


DEFAULT_GENRE_MAPPING: Dict[str, List[str]] = {
    "Science Fiction": ["Sci-Fi", "SciFi", "Science Fiction & Fantasy", "SF"],
    "Fantasy": ["Fantasy", "Epic Fantasy", "Urban Fantasy", "High Fantasy"],
    "Mystery": ["Mystery", "Detective", "Crime", "Whodunit"],
    "Thriller": ["Thriller", "Suspense", "Psychological Thriller"],
    "Romance": ["Romance", "Contemporary Romance", "Historical Romance"],
    "Horror": ["Horror", "Gothic", "Supernatural Horror"],
    "Historical Fiction": ["Historical", "Historical Fiction"],
    "Biography": ["Biography", "Memoir", "Autobiography"],
    "Self-Help": ["Self-Help", "Personal Development", "Self Improvement"],
    "Business": ["Business", "Economics", "Management"],
    "Fiction": ["Literary Fiction", "Contemporary Fiction", "General Fiction"],
    "Non-Fiction": ["Nonfiction", "Non-Fiction"],
    "Young Adult": ["YA", "Young Adult", "Teen"],
    "Children": ["Children", "Kids", "Juvenile"],
}


class RecommendationConfig(_Frozen):
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    signals: SignalWeights = Field(default_factory=SignalWeights)
    friendship: FriendshipParams = Field(default_factory=FriendshipParams)
    diversity: DiversitySettings = Field(default_factory=DiversitySettings)
    candidates: CandidateQuotas = Field(default_factory=CandidateQuotas)
    quality: QualityThresholds = Field(default_factory=QualityThresholds)
    context: ContextAdjustments = Field(default_factory=ContextAdjustments)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    explanations: ExplanationTemplates = Field(default_factory=ExplanationTemplates)
    genre_mapping: Dict[str, List[str]] = Field(default_factory=lambda: dict(DEFAULT_GENRE_MAPPING))
    ab_testing: ABTestingSettings = Field(default_factory=ABTestingSettings)
    active_variant: str = "default"


DEFAULT_CONFIG = RecommendationConfig()


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge overrides onto base field by field; nested dicts merge, everything else replaces."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_overrides(config: RecommendationConfig, overrides: Dict[str, Any]) -> RecommendationConfig:
    """Return a new config with partial overrides deep-merged onto config."""
    if not overrides:
        return config
    return RecommendationConfig.model_validate(_deep_merge(config.model_dump(), overrides))


def experiment_bucket(user_id: str) -> int:
    """Stable bucket in [0, 100): sum of character codes mod 100."""
    return sum(ord(ch) for ch in str(user_id)) % 100


def resolve_config(user_id: str, base: RecommendationConfig = DEFAULT_CONFIG) -> RecommendationConfig:
    """
    Resolve the config for a user.

    Pure and deterministic: with experimentation enabled, the user's bucket
    selects a variant through cumulative percentage ranges and the variant's
    partial overrides are deep-merged onto base. Users outside every range get
    the base config tagged as control.
    """
    if not base.ab_testing.enabled:
        return base

    bucket = experiment_bucket(user_id)
    cumulative = 0
    for variant in base.ab_testing.variants:
        cumulative += variant.percentage
        if bucket < cumulative:
            merged = _deep_merge(base.model_dump(), variant.overrides)
            # The experiment definition itself is never overridden by a variant
            merged["ab_testing"] = base.ab_testing.model_dump()
            merged["active_variant"] = variant.name
            return RecommendationConfig.model_validate(merged)

    return base.model_copy(update={"active_variant": "control"})


def algorithm_tag(config: RecommendationConfig, base: str = "hybrid") -> str:
    """Algorithm label used for caching and feedback metrics; variants get their own tag."""
    if config.active_variant in ("default", "control"):
        return base
    return f"{base}:{config.active_variant}"


def normalize_genre(genre: str, config: RecommendationConfig = DEFAULT_CONFIG) -> str:
    """Map a raw genre to its canonical name (case-insensitive substring match on synonyms)."""
    lowered = genre.lower()
    for canonical, synonyms in config.genre_mapping.items():
        if any(s.lower() in lowered for s in synonyms):
            return canonical
    return genre


def genre_search_terms(genre: str, config: RecommendationConfig = DEFAULT_CONFIG) -> List[str]:
    """Terms to substring-match in the catalog for a user genre: canonical name plus synonyms."""
    canonical = normalize_genre(genre, config)
    terms = [canonical, *config.genre_mapping.get(canonical, [])]
    if genre not in terms:
        terms.append(genre)
    seen = set()
    unique = []
    for term in terms:
        key = term.lower()
        if key not in seen:
            seen.add(key)
            unique.append(term)
    return unique


def validate_weights(config: RecommendationConfig, tolerance: float = 0.05) -> bool:
    """Soft check that scoring weights sum to ~1.0. Logs a warning, never raises."""
    total = sum(config.scoring.weights().values())
    if abs(total - 1.0) > tolerance:
        logger.warning(
            "Scoring weights sum to %.3f (variant=%s); expected ~1.0",
            total,
            config.active_variant,
        )
        return False
    return True


class ConfigurationRegistry:
    """
    Holds the process-wide base config and resolves per-user configs.

    Resolution never raises: any failure falls back to the embedded defaults.
    """

    def __init__(
        self,
        base: Optional[RecommendationConfig] = None,
        overrides_path: Optional[str] = None,
        experiments_enabled: Optional[bool] = None,
    ):
        self._base = self._load_base(base or DEFAULT_CONFIG, overrides_path, experiments_enabled)
        validate_weights(self._base)

    @classmethod
    def from_settings(cls, settings) -> "ConfigurationRegistry":
        return cls(
            overrides_path=settings.RECS_CONFIG_PATH,
            experiments_enabled=settings.RECS_EXPERIMENTS_ENABLED,
        )

    @property
    def base(self) -> RecommendationConfig:
        return self._base

    @staticmethod
    def _load_base(
        base: RecommendationConfig,
        overrides_path: Optional[str],
        experiments_enabled: Optional[bool],
    ) -> RecommendationConfig:
        config = base
        if overrides_path:
            try:
                overrides = json.loads(Path(overrides_path).read_text(encoding="utf-8"))
                if not isinstance(overrides, dict):
                    raise ValueError("config overrides must be a JSON object")
                config = apply_overrides(config, overrides)
                logger.info("Loaded recommendation config overrides from %s", overrides_path)
            except (OSError, ValueError, ValidationError) as e:
                logger.warning(
                    "Failed to load recommendation config overrides from %s, using defaults: %s",
                    overrides_path,
                    e,
                )
                config = DEFAULT_CONFIG

        if experiments_enabled is not None:
            config = config.model_copy(update={
                "ab_testing": config.ab_testing.model_copy(update={"enabled": experiments_enabled}),
            })
        return config

    def resolve_config(self, user_id: str) -> RecommendationConfig:
        try:
            config = resolve_config(user_id, self._base)
        except Exception:
            logger.exception("Config resolution failed for user %s, using defaults", user_id)
            return DEFAULT_CONFIG
        if config is not self._base:
            validate_weights(config)
        return config
