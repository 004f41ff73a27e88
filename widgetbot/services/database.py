"""Async SQLAlchemy engine and session factory for the shared PostgreSQL."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from widgetbot.config import DATABASE_URL

logger = logging.getLogger(__name__)


def create_engine(url: str = DATABASE_URL) -> AsyncEngine:
    """Create the engine; no connection is opened until first use."""
    engine = create_async_engine(url, pool_pre_ping=True, pool_size=5, max_overflow=10)
    logger.debug("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
