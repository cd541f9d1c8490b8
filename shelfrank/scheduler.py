"""
Background scheduler for cache maintenance.

Uses APScheduler to prune recommendation cache entries that have not been
rewritten within the retention window.
"""
import asyncio
import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from shelfrank.core.config import settings
from shelfrank.database import SessionLocal
from shelfrank.services.recommendation_cache import RecommendationCache
from shelfrank.services.recommendation_config import DEFAULT_CONFIG
from shelfrank.services.stores import SqlCacheStore

logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler: Optional[BackgroundScheduler] = None


def clean_cache_job(retention_days: int = DEFAULT_CONFIG.cache.retention_days) -> int:
    """
    Scheduled job that deletes old cache entries.
    Runs daily at CACHE_CLEANUP_HOUR_UTC.
    """
    logger.info("Running recommendation cache cleanup job")
    cache = RecommendationCache(SqlCacheStore(SessionLocal))
    try:
        deleted = asyncio.run(cache.clean_expired(retention_days))
        logger.info("Cache cleanup job completed: deleted=%d", deleted)
        return deleted
    except Exception as e:
        logger.exception("Cache cleanup job failed: %s", e)
        return 0


def start_scheduler():
    """
    Start the background scheduler with the cache cleanup job.
    Call this from the FastAPI startup event.
    """
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already running")
        return

    logger.info("Starting background scheduler")
    scheduler = BackgroundScheduler(timezone="UTC")

    scheduler.add_job(
        clean_cache_job,
        trigger=CronTrigger(hour=settings.CACHE_CLEANUP_HOUR_UTC, minute=0, timezone="UTC"),
        id="recommendation_cache_cleanup",
        name="Prune old recommendation cache entries",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Background scheduler started with cache cleanup at %02d:00 UTC", settings.CACHE_CLEANUP_HOUR_UTC)


def stop_scheduler():
    """
    Stop the background scheduler.
    Call this from the FastAPI shutdown event.
    """
    global scheduler

    if scheduler is not None:
        logger.info("Stopping background scheduler")
        scheduler.shutdown()
        scheduler = None
