from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from shelfrank.core.config import settings
import logging
import time

logger = logging.getLogger(__name__)

SLOW_QUERY_THRESHOLD_MS = 200.0


def build_engine(database_url: str, debug: bool = False) -> Engine:
    """
    Create an engine for the given URL.

    SQLite connections are shared with worker threads (stores run their
    blocking queries through asyncio.to_thread), so same-thread checking is
    disabled for SQLite.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    new_engine = create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using them
        echo=False,  # Keep echo off - slow queries are logged separately
        connect_args=connect_args,
    )

    if debug:
        @event.listens_for(new_engine, "before_cursor_execute")
        def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            """Store query start time before execution."""
            context._query_start_time = time.perf_counter()

        @event.listens_for(new_engine, "after_cursor_execute")
        def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            """Log slow queries after execution."""
            if hasattr(context, "_query_start_time"):
                elapsed_ms = (time.perf_counter() - context._query_start_time) * 1000
                if elapsed_ms >= SLOW_QUERY_THRESHOLD_MS:
                    statement_first_line = statement.split("\n")[0].strip()[:100]
                    logger.warning("SLOW_QUERY: %.2fms - %s", elapsed_ms, statement_first_line)

    return new_engine


logger.info("shelfrank DATABASE_URL = %s", settings.get_masked_database_url())

engine = build_engine(settings.DATABASE_URL, debug=settings.DEBUG)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db(bind: Engine | None = None) -> None:
    """
    Ensure all tables exist.

    This imports all models so that Base.metadata includes all table definitions.
    create_all() only creates missing tables; it never alters existing ones.
    """
    from shelfrank import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
