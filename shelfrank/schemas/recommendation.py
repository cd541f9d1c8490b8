from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime
from shelfrank.models import Surface


class GenreWeight(BaseModel):
    genre: str
    weight: float = Field(ge=0.0, le=1.0)


class UserPreferenceProfile(BaseModel):
    user_id: str
    top_genres: List[GenreWeight] = Field(default_factory=list)  # ranked, highest weight first
    favorite_authors: List[str] = Field(default_factory=list)
    genre_weights: Dict[str, float] = Field(default_factory=dict)
    reading_pace: Optional[float] = None  # books per month
    recent_genres: List[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        """No explicit taste signal to personalise on."""
        return not self.top_genres and not self.favorite_authors

    def top_genre_names(self, limit: int) -> List[str]:
        ranked = sorted(self.top_genres, key=lambda g: g.weight, reverse=True)
        return [g.genre for g in ranked[:limit]]

    @classmethod
    def empty(cls, user_id: str) -> "UserPreferenceProfile":
        return cls(user_id=user_id)


class CatalogEntry(BaseModel):
    id: str
    title: str = ""
    authors: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    average_rating: Optional[float] = None
    ratings_count: int = 0
    page_count: Optional[int] = None
    published_date: Optional[str] = None
    cover_image_url: Optional[str] = None
    thumbnail_url: Optional[str] = None

    @property
    def published_year(self) -> Optional[int]:
        if not self.published_date:
            return None
        head = self.published_date.strip()[:4]
        return int(head) if head.isdigit() else None

    @property
    def has_cover(self) -> bool:
        return bool(self.cover_image_url or self.thumbnail_url)


class ActivityItem(BaseModel):
    book_id: str
    rating: Optional[int] = None
    at: Optional[datetime] = None


class UserActivity(BaseModel):
    liked: List[ActivityItem] = Field(default_factory=list)
    shelved: List[ActivityItem] = Field(default_factory=list)

    def book_ids(self) -> set[str]:
        return {item.book_id for item in self.liked} | {item.book_id for item in self.shelved}


class CandidateRecord(BaseModel):
    """A book under consideration, tagged with the strategy that produced it."""
    book_id: str
    source_strategy: str  # genre | author | friend | similar | trending
    sources: List[str] = Field(default_factory=list)
    signals: Dict[str, Any] = Field(default_factory=dict)


class ScoredRecommendation(BaseModel):
    book_id: str
    final_score: float
    score_breakdown: Dict[str, float] = Field(default_factory=dict)
    reason: str = ""
    algorithm: str = "hybrid"
    position: int = 0


class RecommendationRequest(BaseModel):
    user_id: str
    surface: Surface = Surface.HOME
    limit: int = Field(20, ge=1, le=100)
    force_refresh: bool = False
    session_id: Optional[str] = None


class RecommendationsResponse(BaseModel):
    recommendations: List[ScoredRecommendation]
    source: str  # cache | fresh
    algorithm: Optional[str] = None
