"""
Database connection and session management.
Provides SQLAlchemy engine, session factory, and base class.
"""
import os
import logging
from typing import Any, Dict
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from core.config import settings

logger = logging.getLogger(__name__)

# Connection pool settings (ignored for SQLite)
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "10"))
DB_POOL_PRE_PING = os.getenv("DB_POOL_PRE_PING", "true").lower() == "true"
DB_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "3600"))


def engine_options(database_url: str) -> Dict[str, Any]:
    """
    Build create_engine keyword arguments for a database URL.

    SQLite uses a single-file or in-memory pool that rejects sizing options,
    so only the thread check is relaxed there.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Keyword arguments for create_engine
    """
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": DB_POOL_SIZE,
        "max_overflow": DB_MAX_OVERFLOW,
        "pool_pre_ping": DB_POOL_PRE_PING,
        "pool_recycle": DB_POOL_RECYCLE,
    }


engine = create_engine(
    settings.database_url,
    echo=settings.log_level == "DEBUG",
    **engine_options(settings.database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def init_db() -> None:
    """
    Create all tables.
    Called once during application startup.
    """
    from db import models  # noqa: F401 - registers models with Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")
