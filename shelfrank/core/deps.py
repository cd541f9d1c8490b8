"""Process-wide service instances for FastAPI dependencies."""
from typing import Optional

from shelfrank.core.config import settings
from shelfrank.database import SessionLocal
from shelfrank.services.recommendation_config import ConfigurationRegistry
from shelfrank.services.recommendation_service import RecommendationService
from shelfrank.services.stores import StoreBundle

_service: Optional[RecommendationService] = None


def get_recommendation_service() -> RecommendationService:
    global _service
    if _service is None:
        _service = RecommendationService(
            stores=StoreBundle.sql(SessionLocal),
            registry=ConfigurationRegistry.from_settings(settings),
            timeout=settings.STORE_TIMEOUT_SECONDS,
        )
    return _service
