"""Async SQLAlchemy engine, session factory and unit of work.

When DATABASE_URL is configured, provides:
- async engine for PostgreSQL via asyncpg
- async session factory
- unit_of_work(): one transaction shared by every Pg repository call made
  inside it (bound to the current task through a ContextVar)
- repo_session(): what a Pg repository uses for a single call.  It joins
  the surrounding unit of work when there is one, otherwise it opens a
  short transaction of its own and commits on exit.
- FastAPI lifespan hook for startup/shutdown

When DATABASE_URL is None, the session exports are None, unit_of_work()
is a no-op and the service wires in-memory repositories instead.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from entitlements.core.config import SETTINGS

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all table models."""


# --- Engine and session factory (None when no DATABASE_URL) ---

if SETTINGS.database_url:
    engine = create_async_engine(
        SETTINGS.database_url,
        echo=SETTINGS.is_dev,  # log SQL in dev only
        pool_size=5,
        max_overflow=10,
    )
    async_session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
else:
    engine = None
    async_session_factory = None

_current_session: ContextVar[AsyncSession | None] = ContextVar(
    "current_session", default=None
)


@asynccontextmanager
async def unit_of_work() -> AsyncIterator[AsyncSession | None]:
    """Run the enclosed repository calls in one transaction.

    Nested use joins the outer unit.  Commits on success, rolls back on
    exception.  Yields None when no database is configured.
    """
    outer = _current_session.get()
    if outer is not None or async_session_factory is None:
        yield outer
        return

    async with async_session_factory() as session:
        token = _current_session.set(session)
        try:
            async with session.begin():
                yield session
        finally:
            _current_session.reset(token)


@asynccontextmanager
async def repo_session() -> AsyncIterator[AsyncSession]:
    """Session for one repository call (see module docstring)."""
    bound = _current_session.get()
    if bound is not None:
        yield bound
        return
    if async_session_factory is None:
        raise RuntimeError(
            "DATABASE_URL is not configured, cannot create a database session"
        )
    async with async_session_factory() as session, session.begin():
        yield session


@asynccontextmanager
async def lifespan_db():
    """Startup/shutdown hook for the database engine."""
    if engine is None:
        logger.info("No DATABASE_URL configured, using in-memory repositories")
        yield
        return

    logger.info("Database engine created: %s", engine.url)
    yield
    await engine.dispose()
    logger.info("Database engine disposed")
