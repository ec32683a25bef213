"""
Engine and session factory for the subscription ledger database.

The entitlement resolver and the subscription synchronizer open their own
short-lived sessions from get_session_factory(); jobs use job_session().

Usage:
    with job_session() as session:
        WebhookEventRetention(session).run()
"""

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from thirsty.config.settings import get_settings

logger = logging.getLogger(__name__)

_engine = None
_SessionLocal = None


def _get_database_url() -> str:
    """Read DATABASE_URL and pin PostgreSQL URLs to the psycopg 3 driver."""
    database_url = get_settings().database_url
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is not set")

    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+psycopg://" + database_url[len(prefix):]
    return database_url


def _build_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite"):
        # Local development only; the synchronizer's row locks are no-ops here
        return create_engine(database_url, connect_args={"check_same_thread": False})

    settings = get_settings()
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


def get_engine() -> Engine:
    """Get or create the engine singleton."""
    global _engine
    if _engine is None:
        try:
            _engine = _build_engine(_get_database_url())
        except ValueError as e:
            logger.error("Failed to create database engine", extra={"error": str(e)})
            raise
        logger.info("Database engine created", extra={"dialect": _engine.dialect.name})
    return _engine


def get_session_factory() -> sessionmaker:
    """
    Get or create the session factory singleton.

    Sessions keep loaded attributes after commit so callers can read the
    committed record without another round trip.
    """
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autoflush=False,
            expire_on_commit=False,
        )
    return _SessionLocal


def reset_session_factory() -> None:
    """
    Dispose the engine and drop the singletons (for testing).

    WARNING: Only use in tests!
    """
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


@contextmanager
def job_session() -> Iterator[Session]:
    """
    Session for jobs and other non-request contexts.

    Uncommitted work is rolled back if the job raises.
    """
    try:
        SessionLocal = get_session_factory()
    except ValueError as e:
        raise RuntimeError(f"Database not configured: {e}") from e

    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
