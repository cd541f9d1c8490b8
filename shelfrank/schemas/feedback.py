from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from shelfrank.models import FeedbackAction, ConvertedAction


class FeedbackEvent(BaseModel):
    user_id: str
    book_id: str
    action: FeedbackAction
    algorithm: str
    converted_action: Optional[ConvertedAction] = None
    timestamp: datetime


class FeedbackRequest(BaseModel):
    book_id: str
    action: str  # one of FeedbackAction; validated by the router (400 on unknown)
    algorithm: Optional[str] = None
    converted_action: Optional[str] = None


class FeedbackResponse(BaseModel):
    success: bool
    funnel_violation: bool = False


class AlgorithmMetrics(BaseModel):
    total: int = 0
    shown: int = 0
    clicked: int = 0
    converted: int = 0
    dismissed: int = 0
    out_of_order: int = 0  # converted without a prior click
    ctr: float = 0.0  # clicked / shown
    conversion_rate: float = 0.0  # converted / clicked
    avg_score: float = 0.0
    avg_position: float = 0.0


class AlgorithmComparison(BaseModel):
    algorithm_a: str
    algorithm_b: str
    metrics_a: AlgorithmMetrics
    metrics_b: AlgorithmMetrics
    winner: Optional[str] = None


class BookPerformance(BaseModel):
    book_id: str
    shown: int
    clicked: int
    converted: int
    ctr: float
    conversion_rate: float
