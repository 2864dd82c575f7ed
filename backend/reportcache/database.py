"""Database engine and session configuration.

WHAT:
    Builds the SQLAlchemy engine and session factory from DATABASE_URL.

WHY:
    - The cache store, platform fetcher and workers all share one
      session factory
    - Each store call and credential lookup opens its own short-lived
      session, so refresh worker threads never share transaction state

USAGE:
    from reportcache.database import SessionLocal

    store = SqlCacheStore(SessionLocal)

REFERENCES:
    - reportcache/services/cache_store.py (SqlCacheStore)
    - reportcache/services/platform_fetcher.py (client credential lookup)
"""

import logging
import os

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Local .env for developers; exported variables are never overwritten
        if load_dotenv(override=False):
            logger.info("Loaded local .env file (existing variables were NOT overwritten)")
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# NOTE: SQLite engines (used in tests/dev) do not support pool_size/max_overflow.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,           # One connection per refresh worker plus API headroom
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# Base is defined in reportcache.models to ensure a single registry
from .models import Base  # noqa: E402,F401
