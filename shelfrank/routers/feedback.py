"""
Feedback on served recommendations, and the per-algorithm metrics built from it.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from shelfrank.core.auth import get_current_user_id
from shelfrank.core.deps import get_recommendation_service
from shelfrank.models import ConvertedAction, FeedbackAction
from shelfrank.schemas.feedback import (
    AlgorithmComparison,
    AlgorithmMetrics,
    FeedbackRequest,
    FeedbackResponse,
)
from shelfrank.services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recommendations/feedback", tags=["feedback"])


@router.post("", response_model=FeedbackResponse)
async def post_feedback(
    request: FeedbackRequest,
    user_id: str = Depends(get_current_user_id),
    service: RecommendationService = Depends(get_recommendation_service),
):
    """
    Record a shown/clicked/converted/dismissed action.

    Unknown actions are rejected with 400. Store failures are not: they come
    back as {"success": false} so the UI never breaks on feedback.
    """
    try:
        action = FeedbackAction(request.action)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid action '{request.action}'. Expected one of: {', '.join(a.value for a in FeedbackAction)}",
        )

    converted_action = None
    if request.converted_action is not None:
        try:
            converted_action = ConvertedAction(request.converted_action)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Invalid converted_action '{request.converted_action}'",
            )

    return await service.tracker.record_status(
        user_id,
        request.book_id,
        action,
        algorithm=request.algorithm,
        converted_action=converted_action,
    )


@router.get("/metrics", response_model=AlgorithmMetrics)
async def get_metrics(
    algorithm: str = Query("hybrid"),
    days: int = Query(7, ge=1, le=90),
    user_id: str = Depends(get_current_user_id),
    service: RecommendationService = Depends(get_recommendation_service),
):
    return await service.tracker.get_algorithm_metrics(algorithm, days)


@router.get("/compare", response_model=AlgorithmComparison)
async def compare(
    a: str = Query(...),
    b: str = Query(...),
    days: int = Query(7, ge=1, le=90),
    user_id: str = Depends(get_current_user_id),
    service: RecommendationService = Depends(get_recommendation_service),
):
    return await service.tracker.compare_algorithms(a, b, days)
