"""
Database engine and session factory helpers.

The guard never holds a session across requests. Request handlers receive a
session from the factory, and detached tasks (lazy expiry, audit writes)
open their own so they never share a session with the request that spawned
them.
"""

import logging
import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from giftguard.db_base import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    """
    Create a SQLAlchemy engine.

    In-memory SQLite URLs get a StaticPool so every session (including those
    opened from background threads) sees the same database.
    """
    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(url, pool_pre_ping=True)


def create_session_factory(
    database_url: Optional[str] = None,
    create_tables: bool = False,
) -> sessionmaker:
    """Build a sessionmaker bound to a fresh engine."""
    engine = create_db_engine(database_url)
    if create_tables:
        # Import models so they register on Base.metadata.
        import giftguard.models  # noqa: F401
        Base.metadata.create_all(engine)
        logger.info("Database tables ensured", extra={"dialect": engine.dialect.name})
    return sessionmaker(bind=engine, expire_on_commit=False)
