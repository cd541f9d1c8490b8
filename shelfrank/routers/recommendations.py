from typing import List
import logging

from fastapi import APIRouter, Depends, Query

from shelfrank.core.auth import get_current_user_id
from shelfrank.core.deps import get_recommendation_service
from shelfrank.models import Surface
from shelfrank.schemas.recommendation import (
    RecommendationRequest,
    RecommendationsResponse,
    ScoredRecommendation,
)
from shelfrank.services.recommendation_service import RecommendationService
from shelfrank.utils.timing import now_ms

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recommendations", tags=["recommendations"])


async def _serve(
    service: RecommendationService,
    user_id: str,
    surface: Surface,
    limit: int,
    refresh: bool,
    session_id: str | None,
) -> RecommendationsResponse:
    t0 = now_ms()
    # RecommendationUnavailableError is mapped to 503 by the app-level handler
    response = await service.get_recommendations(RecommendationRequest(
        user_id=user_id,
        surface=surface,
        limit=limit,
        force_refresh=refresh,
        session_id=session_id,
    ))

    logger.info(
        "user=%s surface=%s source=%s count=%d total=%.2fms",
        user_id,
        surface.value,
        response.source,
        len(response.recommendations),
        now_ms() - t0,
    )
    return response


@router.get("/home", response_model=RecommendationsResponse)
async def get_home_recommendations(
    limit: int = Query(20, ge=1, le=100),
    refresh: bool = Query(False, description="Bypass the cache and regenerate"),
    session_id: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: RecommendationService = Depends(get_recommendation_service),
):
    return await _serve(service, user_id, Surface.HOME, limit, refresh, session_id)


@router.get("/friends", response_model=RecommendationsResponse)
async def get_friend_recommendations(
    limit: int = Query(20, ge=1, le=100),
    refresh: bool = Query(False, description="Bypass the cache and regenerate"),
    session_id: str | None = Query(None),
    user_id: str = Depends(get_current_user_id),
    service: RecommendationService = Depends(get_recommendation_service),
):
    return await _serve(service, user_id, Surface.FRIENDS, limit, refresh, session_id)


@router.get("/similar/{book_id}", response_model=List[ScoredRecommendation])
async def get_similar_books(
    book_id: str,
    limit: int = Query(20, ge=1, le=100),
    user_id: str = Depends(get_current_user_id),
    service: RecommendationService = Depends(get_recommendation_service),
):
    """Books like this one, for book detail pages. Not personalized or cached."""
    return await service.get_similar_books(book_id, limit)
