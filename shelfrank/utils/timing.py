"""Clock and timing helpers shared by the recommendation pipeline."""
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional, Callable
import logging

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC now; all persisted timestamps are naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def now_ms() -> float:
    """Return current time in milliseconds using high-resolution timer."""
    return time.perf_counter() * 1000


@contextmanager
def timed_phase(label: str, log_fn: Optional[Callable[[str], None]] = None, min_ms: float = 0.0):
    """
    Time one pipeline phase and log the elapsed milliseconds.

    Example:
        with timed_phase(f"user={user_id} phase=candidates"):
            batch = await generate_candidates(...)
    """
    start = now_ms()
    try:
        yield
    finally:
        elapsed = now_ms() - start
        if elapsed >= min_ms:
            (log_fn or logger.debug)(f"{label}: {elapsed:.2f}ms")
