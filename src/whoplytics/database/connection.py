"""Async database engine and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ..config import get_settings

logger = logging.getLogger(__name__)


def _async_url(url: str) -> str:
    """Map a plain driver URL onto its async driver."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + url[len("sqlite://"):]
    return url


class DatabaseManager:
    """Owns the process-wide async engine and session factory."""

    def __init__(self):
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    def initialize(self, database_url: Optional[str] = None) -> None:
        """Create the engine and session factory."""
        settings = get_settings()
        url = _async_url(database_url or settings.database_url)

        kwargs = {"echo": False}
        if url.startswith("sqlite+aiosqlite://"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url:
                # One shared connection, otherwise every checkout sees an empty DB
                kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True

        self.engine = create_async_engine(url, **kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database engine initialized (%s)", url.split("://", 1)[0])

    async def close(self) -> None:
        """Dispose of the engine and its pooled connections."""
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None


db_manager = DatabaseManager()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    if db_manager.session_factory is None:
        db_manager.initialize()
    async with db_manager.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Session context manager for use outside request handlers."""
    if db_manager.session_factory is None:
        db_manager.initialize()
    async with db_manager.session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
